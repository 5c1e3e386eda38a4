"""Host-side install records and the attribute sink they are enriched through.

The host application owns the install list; ForgeSync only writes a fixed
set of catalog attributes back onto each record. :class:`JsonInstallRegistry`
is the file-backed sink used by the CLI: a JSON array of records rewritten
atomically under a store lock.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, runtime_checkable

from .errors import ConfigError
from .io_utils import write_json_atomic
from .locks import store_lock

__all__ = ["AttributeSink", "InstallRecord", "JsonInstallRegistry", "records_from_folders"]

LOGGER = logging.getLogger(__name__)


@dataclass
class InstallRecord:
    """One locally installed package as the host knows it."""

    install_id: str
    name: Optional[str] = None
    folder_name: Optional[str] = None
    author: Optional[str] = None
    version: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "install_id": self.install_id,
            "name": self.name,
            "folder_name": self.folder_name,
            "author": self.author,
            "version": self.version,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "InstallRecord":
        install_id = payload.get("install_id") or payload.get("id") or payload.get("folder_name")
        if not install_id:
            raise ValueError("install record requires install_id")
        attributes = payload.get("attributes") or {}
        return cls(
            install_id=str(install_id),
            name=payload.get("name"),
            folder_name=payload.get("folder_name"),
            author=payload.get("author"),
            version=payload.get("version"),
            attributes=dict(attributes) if isinstance(attributes, Mapping) else {},
        )


@runtime_checkable
class AttributeSink(Protocol):
    """Receives the attributes written for a matched install."""

    def set_attributes(self, install_id: str, attributes: Mapping[str, Any]) -> None:
        ...


def records_from_folders(folder_names: Iterable[str]) -> List[InstallRecord]:
    """Build bare records for folders the host has no record of."""
    return [InstallRecord(install_id=name, folder_name=name) for name in folder_names]


class JsonInstallRegistry:
    """Install records persisted as a JSON array."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._records: Dict[str, InstallRecord] = {}
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot read install registry {self.path}: {exc}") from exc
        if not isinstance(payload, list):
            raise ConfigError(f"Install registry {self.path} must hold a JSON array")
        for item in payload:
            if not isinstance(item, Mapping):
                continue
            try:
                record = InstallRecord.from_dict(item)
            except ValueError:
                LOGGER.warning("skipping registry item without install_id", extra={"stage": "registry"})
                continue
            self._records[record.install_id] = record

    def __len__(self) -> int:
        return len(self._records)

    def records(self) -> List[InstallRecord]:
        return list(self._records.values())

    def get(self, install_id: str) -> Optional[InstallRecord]:
        return self._records.get(install_id)

    def upsert(self, record: InstallRecord) -> None:
        self._records[record.install_id] = record

    def set_attributes(self, install_id: str, attributes: Mapping[str, Any]) -> None:
        """Merge non-empty ``attributes`` into a record and persist the registry."""
        record = self._records.get(install_id)
        if record is None:
            record = InstallRecord(install_id=install_id)
            self._records[install_id] = record
        for key, value in attributes.items():
            if value is None:
                continue
            record.attributes[key] = value
        self.save()

    def save(self) -> Path:
        with store_lock(self.path):
            write_json_atomic(self.path, [r.to_dict() for r in self._records.values()])
        return self.path
