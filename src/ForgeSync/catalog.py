# === NAVMAP v1 ===
# {
#   "module": "ForgeSync.catalog",
#   "purpose": "Remote catalog data model, client protocol, and the Forge HTTP client",
#   "sections": [
#     {"id": "model", "name": "Catalog Data Model", "anchor": "MDL", "kind": "api"},
#     {"id": "assets", "name": "Asset Selection", "anchor": "AST", "kind": "api"},
#     {"id": "protocol", "name": "CatalogClient", "anchor": "PRT", "kind": "api"},
#     {"id": "forge", "name": "ForgeCatalogClient", "anchor": "FRG", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Catalog access for ForgeSync.

The catalog is the authoritative registry of published packages. Matching
needs identifier/slug lookups and free-text search; acquisition needs package
details (release assets) and batch update status.

:class:`CatalogClient` is the capability the matcher and orchestrator depend
on. :class:`ForgeCatalogClient` implements it over the Forge v0 HTTP API with
:mod:`httpx` and retries throttled (429), server-side (5xx), and transport
failures through a :mod:`tenacity` controller. Every response body is the
envelope ``{"success": bool, "data": ...}``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple
from urllib.parse import quote, urlparse

import httpx
import tenacity
from tenacity import RetryCallState, retry_if_exception, retry_if_result

from .checksums import checksums_from_payload
from .config.models import CatalogConfig
from .errors import CatalogError, SearchFailure

__all__ = [
    "ARCHIVE_SUFFIXES",
    "Asset",
    "CatalogClient",
    "CatalogEntry",
    "ForgeCatalogClient",
    "UpdateInfo",
    "UpdateStatus",
    "collect_assets",
    "pick_asset",
    "pick_asset_from_detail",
]

LOGGER = logging.getLogger(__name__)

ARCHIVE_SUFFIXES: Tuple[str, ...] = (".zip", ".7z", ".rar", ".tar.gz", ".tar")
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})

# --- Catalog Data Model ---


@dataclass(frozen=True)
class Asset:
    """A downloadable release artifact."""

    url: str
    filename: str
    size: Optional[int] = None
    checksums: Mapping[str, str] = field(default_factory=dict, hash=False)

    @property
    def is_archive(self) -> bool:
        name = (self.filename or "").lower()
        return name.endswith(ARCHIVE_SUFFIXES)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Optional["Asset"]:
        url = payload.get("url") or payload.get("download_url") or payload.get("link")
        if not url or not isinstance(url, str):
            return None
        filename = payload.get("filename") or payload.get("name") or payload.get("file_name")
        if not filename:
            filename = PurePosixPath(urlparse(url).path).name
        size_raw = payload.get("size", payload.get("filesize"))
        try:
            size = int(size_raw) if size_raw is not None else None
        except (TypeError, ValueError):
            size = None
        return cls(
            url=url,
            filename=str(filename or ""),
            size=size,
            checksums=checksums_from_payload(payload),
        )


def collect_assets(detail: Mapping[str, Any]) -> List[Asset]:
    """Gather assets from ``releases[].assets``, ``releases[].files``, ``versions[]`` and top-level ``assets``/``files``."""
    payloads: List[Mapping[str, Any]] = []
    for release in detail.get("releases") or []:
        if not isinstance(release, Mapping):
            continue
        for key in ("assets", "files"):
            payloads.extend(p for p in release.get(key) or [] if isinstance(p, Mapping))
    for version in detail.get("versions") or []:
        if isinstance(version, Mapping) and version.get("link"):
            payloads.append(version)
    for key in ("assets", "files"):
        payloads.extend(p for p in detail.get(key) or [] if isinstance(p, Mapping))

    assets: List[Asset] = []
    seen: set[str] = set()
    for payload in payloads:
        asset = Asset.from_payload(payload)
        if asset is None or asset.url in seen:
            continue
        seen.add(asset.url)
        assets.append(asset)
    return assets


def _owner_name(value: Any) -> Optional[str]:
    if isinstance(value, Mapping):
        name = value.get("name")
        return str(name) if name else None
    return str(value) if value else None


@dataclass(frozen=True)
class CatalogEntry:
    """Read-only view of one catalog package."""

    id: Optional[str]
    guid: Optional[str]
    slug: Optional[str] = None
    name: Optional[str] = None
    owner: Optional[str] = None
    thumbnail_url: Optional[str] = None
    teaser: Optional[str] = None
    detail_url: Optional[str] = None
    assets: Tuple[Asset, ...] = ()

    @property
    def reference(self) -> Optional[str]:
        """Identifier accepted by :meth:`CatalogClient.get_detail`."""
        return self.id or self.slug

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CatalogEntry":
        raw_id = payload.get("id")
        return cls(
            id=str(raw_id) if raw_id is not None and raw_id != "" else None,
            guid=payload.get("guid") or None,
            slug=payload.get("slug") or None,
            name=payload.get("name") or None,
            owner=_owner_name(payload.get("owner")),
            thumbnail_url=payload.get("thumbnail") or payload.get("thumbnail_url") or None,
            teaser=payload.get("teaser") or None,
            detail_url=payload.get("detail_url") or None,
            assets=tuple(collect_assets(payload)),
        )


@dataclass(frozen=True)
class UpdateInfo:
    """One installed package with a newer catalog release."""

    identifier: str
    name: Optional[str]
    current_version: Optional[str]
    latest_version: Optional[str]
    catalog_id: Optional[str] = None
    assets: Tuple[Asset, ...] = ()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "UpdateInfo":
        mod = payload.get("mod") if isinstance(payload.get("mod"), Mapping) else {}
        catalog_id = mod.get("id", payload.get("id"))
        return cls(
            identifier=str(payload.get("guid") or mod.get("guid") or ""),
            name=payload.get("name") or mod.get("name"),
            current_version=payload.get("current_version") or payload.get("installed_version"),
            latest_version=payload.get("latest_version") or payload.get("version"),
            catalog_id=str(catalog_id) if catalog_id is not None else None,
            assets=tuple(collect_assets(payload)),
        )


@dataclass(frozen=True)
class UpdateStatus:
    """Batch update status returned by the catalog."""

    updates: Tuple[UpdateInfo, ...] = ()
    blocked: Tuple[Mapping[str, Any], ...] = ()
    incompatible: Tuple[Mapping[str, Any], ...] = ()
    up_to_date: Tuple[Mapping[str, Any], ...] = ()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "UpdateStatus":
        def _items(key: str) -> Tuple[Mapping[str, Any], ...]:
            return tuple(i for i in payload.get(key) or [] if isinstance(i, Mapping))

        return cls(
            updates=tuple(UpdateInfo.from_payload(i) for i in _items("updates")),
            blocked=_items("blocked_updates"),
            incompatible=_items("incompatible_with_spt"),
            up_to_date=_items("up_to_date"),
        )


# --- Asset Selection ---


def pick_asset(assets: Sequence[Asset]) -> Optional[Asset]:
    """Prefer archives, then the largest declared size; ties keep catalog order."""
    if not assets:
        return None
    ranked = sorted(
        enumerate(assets),
        key=lambda pair: (not pair[1].is_archive, -(pair[1].size or 0), pair[0]),
    )
    return ranked[0][1]


def pick_asset_from_detail(detail: Mapping[str, Any] | CatalogEntry) -> Optional[Asset]:
    """Pick the best downloadable asset from a catalog detail payload or entry."""
    if isinstance(detail, CatalogEntry):
        return pick_asset(detail.assets)
    return pick_asset(collect_assets(detail))


# --- CatalogClient ---


class CatalogClient(Protocol):
    """Capability consumed by the matcher and the acquisition orchestrator."""

    def lookup_by_identifier(self, identifier: str) -> Optional[CatalogEntry]:
        ...

    def lookup_by_slug(self, slug: str) -> Optional[CatalogEntry]:
        ...

    def search(self, query: str, max_results: int = 100) -> List[CatalogEntry]:
        ...

    def get_detail(self, id_or_slug: str) -> Optional[CatalogEntry]:
        ...

    def get_update_status(
        self, items: Sequence[Tuple[str, str]], target_platform_version: Optional[str]
    ) -> UpdateStatus:
        ...


# --- ForgeCatalogClient ---


def _is_retryable_exception(exc: BaseException) -> bool:
    return isinstance(exc, httpx.TransportError)


def _is_retryable_response(response: Any) -> bool:
    status = getattr(response, "status_code", None)
    return status in RETRYABLE_STATUSES


def _log_before_sleep(retry_state: RetryCallState) -> None:
    next_action = retry_state.next_action
    wait_ms = int(next_action.sleep * 1000) if next_action is not None else 0
    outcome = retry_state.outcome
    detail: Dict[str, Any] = {"attempt": retry_state.attempt_number, "wait_ms": wait_ms}
    if outcome is not None:
        if outcome.failed:
            detail["error"] = repr(outcome.exception())
        else:
            detail["status"] = getattr(outcome.result(), "status_code", None)
    LOGGER.warning("catalog request retry", extra={"stage": "catalog", "extra_fields": detail})


class ForgeCatalogClient:
    """:class:`CatalogClient` for the Forge v0 HTTP API.

    Args:
        config: Endpoint, credentials, and retry settings.
        client: Optional pre-built :class:`httpx.Client` (tests inject one
            backed by :class:`httpx.MockTransport`).
        sleep: Sleep function used between retries.
    """

    def __init__(
        self,
        config: Optional[CatalogConfig] = None,
        *,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or CatalogConfig()
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=self.config.timeout_s,
            follow_redirects=True,
        )
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "ForgeCatalogClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- transport ---------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": self.config.user_agent}
        if self.config.api_key is not None:
            secret = self.config.api_key.get_secret_value()
            if secret:
                headers["Authorization"] = f"Bearer {secret}"
        return headers

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _send(self, path: str, params: Optional[Mapping[str, Any]]) -> httpx.Response:
        retrying = tenacity.Retrying(
            retry=retry_if_exception(_is_retryable_exception) | retry_if_result(_is_retryable_response),
            stop=tenacity.stop_after_attempt(self.config.max_attempts),
            wait=tenacity.wait_exponential(multiplier=self.config.backoff_base_s, max=30),
            sleep=self._sleep,
            before_sleep=_log_before_sleep,
            retry_error_callback=lambda state: state.outcome.result(),
            reraise=True,
        )
        return retrying(
            self._client.get, self._url(path), params=params, headers=self._headers()
        )

    def _get_data(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """Return the ``data`` member of a successful envelope, ``None`` on 404.

        Raises:
            CatalogError: On transport failure, non-2xx status, or a malformed
                or unsuccessful envelope.
        """
        try:
            response = self._send(path, params)
        except httpx.HTTPError as exc:
            raise CatalogError(f"Catalog request to {path} failed: {exc}") from exc

        if response.status_code == 404:
            return None
        if not response.is_success:
            raise CatalogError(
                f"Catalog returned HTTP {response.status_code} for {path}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CatalogError(f"Catalog returned invalid JSON for {path}") from exc
        if not isinstance(payload, Mapping) or payload.get("success") is not True:
            raise CatalogError(
                f"Catalog reported failure for {path}", status_code=response.status_code
            )
        return payload.get("data")

    def _first_entry(self, filter_key: str, value: str) -> Optional[CatalogEntry]:
        if not value:
            return None
        data = self._get_data("mods", {"per_page": 1, f"filter[{filter_key}]": value})
        if isinstance(data, list) and data and isinstance(data[0], Mapping):
            return CatalogEntry.from_payload(data[0])
        return None

    # -- CatalogClient -----------------------------------------------------

    def lookup_by_identifier(self, identifier: str) -> Optional[CatalogEntry]:
        return self._first_entry("guid", identifier)

    def lookup_by_slug(self, slug: str) -> Optional[CatalogEntry]:
        return self._first_entry("slug", slug)

    def search(self, query: str, max_results: int = 100) -> List[CatalogEntry]:
        """Search the catalog by name.

        Raises:
            SearchFailure: When this query could not be answered.
        """
        if not query:
            return []
        try:
            data = self._get_data("mods", {"per_page": max_results, "filter[name]": query})
        except CatalogError as exc:
            raise SearchFailure(str(exc), query=query, status_code=exc.status_code) from exc
        if not isinstance(data, list):
            return []
        return [CatalogEntry.from_payload(item) for item in data if isinstance(item, Mapping)]

    def get_detail(self, id_or_slug: str) -> Optional[CatalogEntry]:
        if id_or_slug is None or str(id_or_slug) == "":
            return None
        data = self._get_data(f"mods/{quote(str(id_or_slug), safe='')}")
        if not isinstance(data, Mapping):
            return None
        return CatalogEntry.from_payload(data)

    def get_update_status(
        self,
        items: Sequence[Tuple[str, str]],
        target_platform_version: Optional[str],
    ) -> UpdateStatus:
        pairs = [f"{identifier}:{version}" for identifier, version in items if identifier and version]
        if not pairs:
            return UpdateStatus()
        params: Dict[str, Any] = {"mods": ",".join(pairs)}
        version = target_platform_version or self.config.target_platform_version
        if version:
            params["spt_version"] = version
        data = self._get_data("mods/updates", params)
        if not isinstance(data, Mapping):
            return UpdateStatus()
        return UpdateStatus.from_payload(data)
