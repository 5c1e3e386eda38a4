# === NAVMAP v1 ===
# {
#   "module": "ForgeSync.overrides",
#   "purpose": "User-supplied install-to-catalog overrides: parsing, persistence, lookup",
#   "sections": [
#     {"id": "keys", "name": "Key Normalisation", "anchor": "KEY", "kind": "helpers"},
#     {"id": "entry", "name": "OverrideEntry", "anchor": "ENT", "kind": "api"},
#     {"id": "parse", "name": "parse_override_content", "anchor": "PRS", "kind": "api"},
#     {"id": "table", "name": "OverrideTable", "anchor": "TBL", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Override table mapping local install names to catalog identifiers or slugs.

Overrides are the escape hatch for installs the heuristics cannot identify:
a user states that ``DynamicMaps`` is ``com.mpstark.dynamicmaps`` and every
later enrichment pass honours that ahead of any computed score.

Keys are normalised so that ``DynamicMaps``, ``dynamic-maps`` and
``DynamicMapsServer`` collide. Reverse-domain identifiers are only
lower-cased. The persisted store is a JSON array of
``{key, keyRaw, target, targetType, raw}`` objects; the legacy flat
``{"name": "target"}`` map is converted on load.

Accepted import formats:

* a JSON array of strings or objects (``guid``/``key``/``name``/``id``/``slug``
  for the key and ``target``/``slug``/``guid``/``name``/``id`` for the target);
* a legacy JSON object map;
* line text with ``key -> value``, ``key => value``, ``key: value`` or
  ``key = value``; ``#`` and ``//`` comment lines are skipped and a bare token
  maps to itself.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import OverrideImportError
from .evidence import LocalInstallEvidence
from .folder_names import folder_base_name
from .io_utils import write_json_atomic
from .locks import store_lock
from .naming import COMPONENT_SUFFIXES

__all__ = [
    "OverrideEntry",
    "OverrideTable",
    "TARGET_GUID",
    "TARGET_SLUG",
    "entries_from_legacy_map",
    "is_reverse_domain",
    "normalize_override_key",
    "parse_override_content",
]

LOGGER = logging.getLogger(__name__)

TARGET_GUID = "guid"
TARGET_SLUG = "slug"

_REVERSE_DOMAIN_RE = re.compile(r"^[a-z][a-z0-9_-]*(?:\.[a-z][a-z0-9_-]*){2,}$", re.IGNORECASE)
_KEY_SEPARATORS_RE = re.compile(r"[-_. ]+")
_LINE_RE = re.compile(r"^(.+?)\s*(?:->|=>|:|=)\s*(.+)$")
_OBJECT_KEY_FIELDS = ("guid", "key", "name", "id", "slug")
_OBJECT_TARGET_FIELDS = ("target", "slug", "guid", "name", "id")


def is_reverse_domain(value: Optional[str]) -> bool:
    """Return True for ``a.b.c``-shaped identifiers whose segments start with a letter."""
    return bool(value) and bool(_REVERSE_DOMAIN_RE.match(value.strip()))


def normalize_override_key(value: Optional[str]) -> str:
    """Normalise an override key; applying it twice gives the same result.

    >>> normalize_override_key("Com.MPStark.DynamicMaps")
    'com.mpstark.dynamicmaps'
    >>> normalize_override_key("Dynamic Maps Server")
    'dynamicmaps'
    """
    if not value:
        return ""
    text = str(value).strip().lower()
    if is_reverse_domain(text):
        return text
    suffixes = [s.lower() for s in COMPONENT_SUFFIXES]
    out = text
    previous = None
    while out != previous:
        previous = out
        out = _KEY_SEPARATORS_RE.sub("", out).strip()
        for suffix in suffixes:
            if out.endswith(suffix) and len(out) > len(suffix):
                out = out[: -len(suffix)]
    return out


def _target_type(target: str) -> str:
    return TARGET_GUID if is_reverse_domain(target) else TARGET_SLUG


@dataclass(frozen=True)
class OverrideEntry:
    """Canonical override: normalised ``key`` resolving to ``target``."""

    key: str
    key_raw: str
    target: str
    target_type: str
    raw: Any = None

    @classmethod
    def build(cls, key_raw: str, target: str, raw: Any = None) -> "OverrideEntry":
        key_raw = str(key_raw).strip()
        target = str(target).strip()
        return cls(
            key=normalize_override_key(key_raw) or key_raw.lower(),
            key_raw=key_raw,
            target=target,
            target_type=_target_type(target),
            raw=raw,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "keyRaw": self.key_raw,
            "target": self.target,
            "targetType": self.target_type,
            "raw": self.raw,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "OverrideEntry":
        """Rebuild an entry from its persisted form, re-deriving missing fields."""
        target = str(payload.get("target") or "").strip()
        key_raw = str(payload.get("keyRaw") or payload.get("key") or target).strip()
        key = normalize_override_key(str(payload.get("key") or key_raw)) or key_raw.lower()
        target_type = payload.get("targetType")
        if target_type not in (TARGET_GUID, TARGET_SLUG):
            target_type = _target_type(target)
        return cls(
            key=key,
            key_raw=key_raw,
            target=target,
            target_type=target_type,
            raw=payload.get("raw"),
        )


def entries_from_legacy_map(mapping: Mapping[str, Any]) -> List[OverrideEntry]:
    """Convert a legacy ``{name: target}`` object into canonical entries."""
    entries: List[OverrideEntry] = []
    for key_raw, value in mapping.items():
        target = str(value or "").strip()
        if not target or not str(key_raw).strip():
            continue
        entries.append(OverrideEntry.build(str(key_raw), target, raw=value))
    return entries


def _entries_from_structured_list(items: Sequence[Any]) -> List[OverrideEntry]:
    entries: List[OverrideEntry] = []
    for item in items:
        if isinstance(item, str):
            if item.strip():
                entries.append(OverrideEntry.build(item, item, raw=item))
        elif isinstance(item, Mapping):
            key_raw = next((str(item[f]) for f in _OBJECT_KEY_FIELDS if item.get(f)), "")
            target = next((str(item[f]) for f in _OBJECT_TARGET_FIELDS if item.get(f)), "")
            target = target or key_raw
            key_raw = key_raw or target
            if target.strip():
                entries.append(OverrideEntry.build(key_raw, target, raw=dict(item)))
        else:
            LOGGER.debug("skipping override item of type %s", type(item).__name__)
    return entries


def _entries_from_lines(text: str) -> List[OverrideEntry]:
    entries: List[OverrideEntry] = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or line.startswith("//"):
            continue
        match = _LINE_RE.match(line)
        if match:
            key_raw, target = match.group(1).strip(), match.group(2).strip()
            if key_raw and target:
                entries.append(OverrideEntry.build(key_raw, target, raw=line))
                continue
        entries.append(OverrideEntry.build(line, line, raw=line))
    return entries


def parse_override_content(text: Optional[str]) -> List[OverrideEntry]:
    """Parse free-form override content into canonical entries.

    Args:
        text: JSON (array or legacy object) or line-oriented override text.

    Returns:
        Parsed entries in input order; empty for blank input.
    """
    if not text or not text.strip():
        return []
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, list):
        return _entries_from_structured_list(payload)
    if isinstance(payload, dict):
        return entries_from_legacy_map(payload)
    return _entries_from_lines(text)


class OverrideTable:
    """In-memory override entries, optionally backed by a JSON store file."""

    def __init__(self, entries: Iterable[OverrideEntry] = (), path: Optional[Path] = None) -> None:
        self._entries: List[OverrideEntry] = list(entries)
        self.path = Path(path) if path is not None else None

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> List[OverrideEntry]:
        return list(self._entries)

    @classmethod
    def load(cls, path: Path) -> "OverrideTable":
        """Load the store at ``path``; a missing file yields an empty table.

        Raises:
            OverrideImportError: If the store exists but is not valid JSON or
                has an unexpected shape.
        """
        store = Path(path)
        if not store.exists():
            return cls(path=store)
        try:
            payload = json.loads(store.read_text(encoding="utf-8") or "[]")
        except (OSError, json.JSONDecodeError) as exc:
            raise OverrideImportError(f"Cannot read override store {store}: {exc}") from exc

        if isinstance(payload, list):
            entries = [
                OverrideEntry.from_dict(item)
                for item in payload
                if isinstance(item, Mapping) and item.get("target")
            ]
        elif isinstance(payload, dict):
            entries = entries_from_legacy_map(payload)
            LOGGER.info(
                "converted legacy override map",
                extra={"stage": "overrides", "extra_fields": {"path": str(store), "entries": len(entries)}},
            )
        else:
            raise OverrideImportError(f"Override store {store} must hold a JSON array")
        return cls(entries, path=store)

    def save(self, path: Optional[Path] = None) -> Path:
        """Persist entries as a JSON array, atomically and under a store lock."""
        target = Path(path) if path is not None else self.path
        if target is None:
            raise OverrideImportError("Override table has no store path")
        with store_lock(target):
            write_json_atomic(target, [entry.to_dict() for entry in self._entries])
        self.path = target
        return target

    def import_content(self, text: str, *, merge: bool = False, persist: bool = True) -> int:
        """Import override content, replacing or merging into current entries.

        When merging, an imported entry replaces an existing one with the same
        normalised key.

        Returns:
            Number of entries parsed from ``text``.
        """
        imported = parse_override_content(text)
        if merge:
            by_key: Dict[str, OverrideEntry] = {e.key.lower(): e for e in self._entries}
            for entry in imported:
                by_key[entry.key.lower()] = entry
            self._entries = list(by_key.values())
        else:
            self._entries = list(imported)
        if persist and self.path is not None:
            self.save()
        LOGGER.info(
            "imported overrides",
            extra={
                "stage": "overrides",
                "extra_fields": {"imported": len(imported), "total": len(self._entries), "merge": merge},
            },
        )
        return len(imported)

    def find(self, keys: Iterable[Optional[str]]) -> Optional[OverrideEntry]:
        """Return the first entry whose key equals one of ``keys`` after normalisation."""
        for raw_key in keys:
            key = normalize_override_key(raw_key)
            if not key:
                continue
            lowered = key.lower()
            for entry in self._entries:
                if entry.key.lower() == lowered:
                    return entry
        return None

    def find_for_evidence(
        self,
        evidence: Optional[LocalInstallEvidence],
        folder_name: Optional[str] = None,
    ) -> Optional[OverrideEntry]:
        """Look up an override for an install.

        Candidate keys, in order: evidence identifier, evidence display name,
        the folder name without archive extension and version suffix, and the
        display names reported by binary modules.
        """
        keys: List[Optional[str]] = []
        if evidence is not None:
            keys.append(evidence.guid)
            keys.append(evidence.display_name)
        if folder_name:
            keys.append(folder_base_name(folder_name))
        if evidence is not None:
            keys.extend(evidence.module_display_names())
        return self.find(keys)
