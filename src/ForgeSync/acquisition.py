# === NAVMAP v1 ===
# {
#   "module": "ForgeSync.acquisition",
#   "purpose": "Wire catalog lookups, resilient downloads, verification and import together",
#   "sections": [
#     {"id": "importer", "name": "Importer", "anchor": "IMP", "kind": "api"},
#     {"id": "results", "name": "Acquisition Results", "anchor": "RES", "kind": "api"},
#     {"id": "orchestrator", "name": "AcquisitionOrchestrator", "anchor": "ORC", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Acquisition orchestration: catalog asset -> download -> verify -> import.

:class:`AcquisitionOrchestrator` resolves a catalog package, picks its best
asset, hands it to :class:`~ForgeSync.downloader.ResilientDownloader`, verifies
the transfer and passes the archive to an :class:`Importer`. Batch operations
run on a bounded thread pool and report every item separately; one failed
item never aborts the others.
"""

from __future__ import annotations

import logging
import re
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple, Union
from urllib.parse import urlparse

from .cancellation import CancellationToken, CancellationTokenGroup
from .catalog import (
    Asset,
    CatalogClient,
    CatalogEntry,
    UpdateInfo,
    UpdateStatus,
    pick_asset,
    pick_asset_from_detail,
)
from .config.models import ForgeSyncConfig
from .downloader import DownloadPolicy, ResilientDownloader, verify_download
from .errors import CatalogError, DownloadFailure, VerificationFailure
from .locks import destination_lock
from .registry import InstallRecord

__all__ = [
    "AcquisitionOrchestrator",
    "AcquisitionResult",
    "BatchReport",
    "CopyImporter",
    "ImportResult",
    "Importer",
]

LOGGER = logging.getLogger(__name__)

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


# --- Importer ---


@dataclass(frozen=True)
class ImportResult:
    source: Path
    imported_to: Optional[Path] = None
    details: Dict[str, Any] = field(default_factory=dict)


class Importer(Protocol):
    """Installs a downloaded archive into the host application."""

    def import_archive(self, path: Path, *, entry: Optional[CatalogEntry] = None) -> ImportResult:
        ...


class CopyImporter:
    """Fallback importer that copies archives into an import directory."""

    def __init__(self, import_dir: Path) -> None:
        self.import_dir = Path(import_dir)

    def import_archive(self, path: Path, *, entry: Optional[CatalogEntry] = None) -> ImportResult:
        self.import_dir.mkdir(parents=True, exist_ok=True)
        target = self.import_dir / Path(path).name
        shutil.copy2(path, target)
        LOGGER.info(
            "archive imported",
            extra={
                "stage": "import",
                "catalog_guid": entry.guid if entry else None,
                "extra_fields": {"source": str(path), "imported_to": str(target)},
            },
        )
        return ImportResult(source=Path(path), imported_to=target)


# --- Results ---


@dataclass
class AcquisitionResult:
    """Outcome of acquiring one package."""

    reference: str
    ok: bool
    guid: Optional[str] = None
    asset_url: Optional[str] = None
    path: Optional[Path] = None
    imported_to: Optional[Path] = None
    error: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class BatchReport:
    results: List[AcquisitionResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)


def _safe_filename(value: str) -> str:
    cleaned = _UNSAFE_FILENAME_RE.sub("_", value).strip("._")
    return cleaned or "download"


def _failure_reason(exc: BaseException) -> str:
    if isinstance(exc, VerificationFailure):
        return exc.reason
    return type(exc).__name__


UpdateSource = Union[UpdateStatus, Sequence[UpdateInfo], Sequence[InstallRecord]]


# --- Orchestrator ---


class AcquisitionOrchestrator:
    """Acquire catalog packages and their updates.

    Args:
        catalog: Catalog capability used to resolve packages.
        downloader: Downloader performing the transfers.
        importer: Import capability receiving verified archives.
        config: Root configuration; download and catalog sections are read.
    """

    def __init__(
        self,
        catalog: CatalogClient,
        downloader: ResilientDownloader,
        importer: Importer,
        config: Optional[ForgeSyncConfig] = None,
    ) -> None:
        self.catalog = catalog
        self.downloader = downloader
        self.importer = importer
        self.config = config or ForgeSyncConfig()
        self.policy = DownloadPolicy.from_config(self.config.download)
        self.download_dir = Path(self.config.download.download_dir)
        self._active_batches: Set[CancellationTokenGroup] = set()
        self._batches_lock = threading.Lock()

    def cancel(self) -> None:
        """Stop further attempts of every batch currently running.

        Batches started afterwards are unaffected.
        """
        with self._batches_lock:
            groups = list(self._active_batches)
        for group in groups:
            group.cancel_all()

    # -- updates -------------------------------------------------------------

    def check_updates(self, records: Iterable[InstallRecord]) -> UpdateStatus:
        """Query update status for every enriched record with a known version."""
        pairs: List[Tuple[str, str]] = []
        for record in records:
            guid = record.attributes.get("catalog_guid")
            version = record.attributes.get("version") or record.version
            if guid and version:
                pairs.append((str(guid), str(version)))
        if not pairs:
            return UpdateStatus()
        status = self.catalog.get_update_status(pairs, self.config.catalog.target_platform_version)
        LOGGER.info(
            "update status",
            extra={
                "stage": "updates",
                "extra_fields": {
                    "queried": len(pairs),
                    "updates": len(status.updates),
                    "blocked": len(status.blocked),
                    "incompatible": len(status.incompatible),
                },
            },
        )
        return status

    # -- single acquisition --------------------------------------------------

    def download_verify_and_import(
        self,
        id_or_slug: str,
        asset_url: Optional[str] = None,
        *,
        asset: Optional[Asset] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AcquisitionResult:
        """Download, verify and import the best (or given) asset of a package.

        Args:
            id_or_slug: Catalog id or slug of the package.
            asset_url: Asset to fetch instead of the best asset of the detail.
            asset: Asset metadata known to the caller (e.g. from an update
                listing). Its size and checksums are verified even when the
                detail does not list the asset; detail values win on conflict.
            cancel_token: Token checked between attempts and chunks.

        Raises:
            CatalogError: If the package cannot be resolved.
            DownloadFailure: If no asset exists or the transfer fails.
            VerificationFailure: If the transfer does not match the asset metadata.
        """
        detail = self.catalog.get_detail(id_or_slug)
        if detail is None:
            raise CatalogError(f"Catalog package {id_or_slug!r} not found")
        if asset is not None and not asset_url:
            asset_url = asset.url
        chosen = self._select_asset(detail, asset_url, asset)
        if chosen is None:
            raise DownloadFailure(f"Catalog package {id_or_slug!r} has no downloadable asset")

        folder = _safe_filename(detail.guid or detail.reference or id_or_slug)
        destination = self.download_dir / folder / _safe_filename(chosen.filename)
        # Held until import so no other task rewrites the file in between.
        with destination_lock(destination, lock_dir=self.downloader.lock_dir):
            task = self.downloader.download(
                chosen.url, destination, self.policy, cancel_token=cancel_token
            )
            try:
                verify_download(
                    task.destination, expected_size=chosen.size, checksums=chosen.checksums
                )
            except VerificationFailure:
                task.destination.unlink(missing_ok=True)
                raise
            imported = self.importer.import_archive(task.destination, entry=detail)
        return AcquisitionResult(
            reference=str(id_or_slug),
            ok=True,
            guid=detail.guid,
            asset_url=chosen.url,
            path=task.destination,
            imported_to=imported.imported_to,
        )

    def download_update_for(self, identifier: str) -> AcquisitionResult:
        """Resolve ``identifier`` in the catalog and acquire its best asset."""
        entry = self.catalog.lookup_by_identifier(identifier)
        if entry is None:
            raise CatalogError(f"No catalog package with identifier {identifier!r}")
        return self.download_verify_and_import(entry.reference or identifier)

    @staticmethod
    def _select_asset(
        detail: CatalogEntry, asset_url: Optional[str], known: Optional[Asset] = None
    ) -> Optional[Asset]:
        if not asset_url:
            return pick_asset_from_detail(detail)
        if known is not None and known.url != asset_url:
            known = None
        listed = next((a for a in detail.assets if a.url == asset_url), None)
        if listed is not None and known is not None:
            return replace(
                listed,
                size=listed.size if listed.size is not None else known.size,
                checksums={**known.checksums, **listed.checksums},
            )
        if listed is not None or known is not None:
            return listed or known
        return Asset(url=asset_url, filename=PurePosixPath(urlparse(asset_url).path).name)

    # -- batch ---------------------------------------------------------------

    def _resolve_updates(self, source: UpdateSource) -> List[UpdateInfo]:
        if isinstance(source, UpdateStatus):
            return list(source.updates)
        items = list(source)
        if items and all(isinstance(i, InstallRecord) for i in items):
            return list(self.check_updates(items).updates)
        return [i for i in items if isinstance(i, UpdateInfo)]

    def _acquire_update(self, update: UpdateInfo, token: CancellationToken) -> AcquisitionResult:
        reference = update.catalog_id or update.identifier
        asset = pick_asset(update.assets)
        try:
            result = self.download_verify_and_import(
                reference, asset.url if asset else None, asset=asset, cancel_token=token
            )
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning(
                "update acquisition failed",
                extra={
                    "stage": "acquire",
                    "catalog_guid": update.identifier,
                    "extra_fields": {
                        "reference": reference,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                },
            )
            return AcquisitionResult(
                reference=str(reference),
                ok=False,
                guid=update.identifier or None,
                asset_url=asset.url if asset else None,
                error=str(exc),
                reason=_failure_reason(exc),
            )
        if not result.guid:
            result.guid = update.identifier or None
        return result

    def download_and_import_updates(self, source: UpdateSource) -> BatchReport:
        """Acquire every available update concurrently.

        Args:
            source: An :class:`UpdateStatus`, a list of :class:`UpdateInfo`, or
                enriched install records (update status is queried first).

        Returns:
            A :class:`BatchReport` with one result per update, in input order.
        """
        updates = self._resolve_updates(source)
        if not updates:
            return BatchReport()
        workers = max(1, min(self.config.download.max_workers, len(updates)))
        group = CancellationTokenGroup()
        with self._batches_lock:
            self._active_batches.add(group)
        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="forgesync-dl") as pool:
                futures = [
                    pool.submit(self._acquire_update, update, group.create_token())
                    for update in updates
                ]
                report = BatchReport(results=[future.result() for future in futures])
        finally:
            with self._batches_lock:
                self._active_batches.discard(group)
        LOGGER.info(
            "update batch finished",
            extra={
                "stage": "acquire",
                "extra_fields": {"succeeded": report.succeeded, "failed": report.failed},
            },
        )
        return report
