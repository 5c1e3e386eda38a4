# === NAVMAP v1 ===
# {
#   "module": "ForgeSync.errors",
#   "purpose": "Exception hierarchy shared by matching, catalog access, and artifact acquisition",
#   "sections": [
#     {"id": "base", "name": "Base Exceptions", "anchor": "BAS", "kind": "api"},
#     {"id": "catalog", "name": "Catalog Errors", "anchor": "CAT", "kind": "api"},
#     {"id": "download", "name": "Download Errors", "anchor": "DWN", "kind": "api"},
#     {"id": "verification", "name": "Verification Errors", "anchor": "VER", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Exception hierarchy shared across matching, catalog access, and acquisition.

ForgeSync spans local evidence extraction, remote catalog queries, resumable
HTTP transfers, and post-transfer verification. This module groups those
failure modes so callers can react to high-level categories (a single search
failing vs. a download that must never be retried) while still having access
to the specialised subclasses when finer-grained handling is required.

Extraction is best-effort: :class:`ExtractionFailure` exists for callers that
want to surface a diagnostic, but the extractor itself returns empty evidence
instead of raising it.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "ForgeSyncError",
    "ConfigError",
    "ExtractionFailure",
    "OverrideImportError",
    "CatalogError",
    "SearchFailure",
    "DownloadFailure",
    "TerminalClientError",
    "TransportFailure",
    "DownloadCancelled",
    "RetriesExhausted",
    "VerificationFailure",
]


class ForgeSyncError(RuntimeError):
    """Base exception for matching, catalog, download, or verification failures."""


class ConfigError(ForgeSyncError):
    """Raised when configuration files, environment overrides, or CLI inputs are invalid."""


class ExtractionFailure(ForgeSyncError):
    """Raised when local evidence cannot be read; never escapes the extractor."""


class OverrideImportError(ForgeSyncError):
    """Raised when override content or the persisted override store cannot be parsed."""


class CatalogError(ForgeSyncError):
    """Raised when a catalog request fails after retries."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SearchFailure(CatalogError):
    """Raised when a single catalog search query fails."""

    def __init__(self, message: str, *, query: str, status_code: Optional[int] = None) -> None:
        super().__init__(message, status_code=status_code)
        self.query = query


class DownloadFailure(ForgeSyncError):
    """Raised when an HTTP download attempt fails."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class TerminalClientError(DownloadFailure):
    """4xx response from the origin; the request is never repeated."""

    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message, status_code=status_code, retryable=False)


class TransportFailure(DownloadFailure):
    """Connection, timeout, or server-side failure that the retry policy may repeat."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message, status_code=status_code, retryable=True)


class DownloadCancelled(DownloadFailure):
    """Raised when a cancellation token stops further attempts."""

    def __init__(self, message: str = "Download was cancelled") -> None:
        super().__init__(message, retryable=False)


class RetriesExhausted(DownloadFailure):
    """Raised after the final attempt failed; wraps the last underlying error."""

    def __init__(self, message: str, *, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            message,
            status_code=getattr(last_error, "status_code", None),
            retryable=False,
        )
        self.attempts = attempts
        self.last_error = last_error


class VerificationFailure(ForgeSyncError):
    """Raised when a completed transfer does not match its expected size or checksum."""

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.expected = expected
        self.actual = actual
