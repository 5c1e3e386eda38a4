# === NAVMAP v1 ===
# {
#   "module": "tests.conftest",
#   "purpose": "Shared test doubles for the suite",
#   "sections": [
#     {"id": "fakecatalog", "name": "FakeCatalog", "anchor": "class-fakecatalog", "kind": "class"},
#     {"id": "make-entry", "name": "make_entry", "anchor": "function-make-entry", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""
Pytest Configuration

Puts ``src`` on ``sys.path`` so the suite runs from a plain checkout, and
provides an in-memory catalog implementing the ``CatalogClient`` protocol.

Usage:
    pytest tests/forge_sync
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

SRC = Path(__file__).resolve().parents[1] / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from ForgeSync.catalog import CatalogEntry, UpdateStatus  # noqa: E402
from ForgeSync.errors import SearchFailure  # noqa: E402
from ForgeSync.similarity import normalize_for_compare  # noqa: E402


def make_entry(
    guid: Optional[str],
    name: str,
    *,
    id: Optional[str] = None,
    slug: Optional[str] = None,
    owner: Optional[str] = None,
    assets: Sequence = (),
) -> CatalogEntry:
    return CatalogEntry(
        id=id,
        guid=guid,
        slug=slug,
        name=name,
        owner=owner,
        detail_url=f"https://forge.example/mod/{id or slug or guid}",
        assets=tuple(assets),
    )


class FakeCatalog:
    """In-memory catalog recording every call.

    ``search`` behaves like the Forge name filter (normalised substring over
    name, slug and identifier) unless ``search_results`` pins the results of
    specific queries.
    """

    def __init__(
        self,
        entries: Iterable[CatalogEntry] = (),
        *,
        search_results: Optional[Mapping[str, List[CatalogEntry]]] = None,
        details: Optional[Mapping[str, CatalogEntry]] = None,
        failing_queries: Iterable[str] = (),
        update_status: Optional[UpdateStatus] = None,
    ) -> None:
        self.entries = list(entries)
        self.search_results = (
            {k.lower(): list(v) for k, v in search_results.items()} if search_results is not None else None
        )
        self.details: Dict[str, CatalogEntry] = dict(details or {})
        self.failing_queries = {q.lower() for q in failing_queries}
        self.update_status = update_status or UpdateStatus()
        self.calls: List[Tuple[str, object]] = []

    def calls_to(self, method: str) -> List[object]:
        return [arg for name, arg in self.calls if name == method]

    def lookup_by_identifier(self, identifier: str) -> Optional[CatalogEntry]:
        self.calls.append(("lookup_by_identifier", identifier))
        wanted = identifier.lower()
        return next((e for e in self.entries if e.guid and e.guid.lower() == wanted), None)

    def lookup_by_slug(self, slug: str) -> Optional[CatalogEntry]:
        self.calls.append(("lookup_by_slug", slug))
        return next((e for e in self.entries if e.slug == slug), None)

    def search(self, query: str, max_results: int = 100) -> List[CatalogEntry]:
        self.calls.append(("search", query))
        if query.lower() in self.failing_queries:
            raise SearchFailure(f"search for {query} failed", query=query, status_code=503)
        if self.search_results is not None:
            return self.search_results.get(query.lower(), [])[:max_results]
        needle = normalize_for_compare(query)
        hits = [
            e
            for e in self.entries
            if needle
            and any(needle in normalize_for_compare(v) for v in (e.name, e.slug, e.guid) if v)
        ]
        return hits[:max_results]

    def get_detail(self, id_or_slug: str) -> Optional[CatalogEntry]:
        self.calls.append(("get_detail", id_or_slug))
        if id_or_slug in self.details:
            return self.details[id_or_slug]
        return next(
            (e for e in self.entries if id_or_slug in (e.id, e.slug, e.guid)),
            None,
        )

    def get_update_status(
        self, items: Sequence[Tuple[str, str]], target_platform_version: Optional[str]
    ) -> UpdateStatus:
        self.calls.append(("get_update_status", (list(items), target_platform_version)))
        return self.update_status
