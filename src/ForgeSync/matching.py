# === NAVMAP v1 ===
# {
#   "module": "ForgeSync.matching",
#   "purpose": "Resolve a local install to a catalog entry with explainable confidence",
#   "sections": [
#     {"id": "types", "name": "MatchResult", "anchor": "TYP", "kind": "api"},
#     {"id": "generic", "name": "is_generic_identifier", "anchor": "GEN", "kind": "helpers"},
#     {"id": "terms", "name": "build_search_terms", "anchor": "TRM", "kind": "api"},
#     {"id": "scoring", "name": "score_search_results", "anchor": "SCR", "kind": "api"},
#     {"id": "matcher", "name": "CandidateMatcher", "anchor": "MAT", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Candidate matching between local installs and catalog entries.

Each install is resolved through a fixed precedence, stopping at the first
success:

1. **Override**: a user override resolved by identifier or slug lookup.
2. **Identifier**: direct lookup of the extracted identifier.
3. **Folder guess**: direct lookup of each identifier guessed from the
   folder name.
4. **Term search**: ordered search terms scored in an exact tier (fixed
   confidences) and a fuzzy tier (similarity scaled by a weight, with a bonus
   when the candidate text carries the installed version).
5. **Fallback**: plain similarity over display names and the folder name.

Generic identifiers (shared runtime or engine identifiers, or anything too
short to be distinctive) never drive a direct lookup; they only take part in
the fallback tier. Every numeric constant lives on
:class:`~ForgeSync.config.models.MatchingConfig`.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

from .catalog import CatalogClient, CatalogEntry
from .config.models import MatchingConfig
from .errors import CatalogError, SearchFailure
from .evidence import LocalInstallEvidence
from .folder_names import extract_folder_version, folder_base_name
from .naming import (
    name_from_identifier,
    normalize_name,
    remove_component_suffix,
    slugify,
    split_camel_case,
)
from .overrides import TARGET_GUID, OverrideEntry, OverrideTable
from .similarity import similarity_score

__all__ = [
    "CandidateMatcher",
    "MatchResult",
    "ScoredCandidate",
    "build_search_terms",
    "is_generic_identifier",
    "score_search_results",
]

LOGGER = logging.getLogger(__name__)

METHOD_OVERRIDE = "override"
METHOD_IDENTIFIER = "identifier"
METHOD_FOLDER_GUESS = "folder_guess"
METHOD_EXACT_NAME = "exact_name"
METHOD_EXACT_SUFFIX = "exact_suffix"
METHOD_SLUG = "slug"
METHOD_OWNER_NAME = "owner_name"
METHOD_FUZZY = "fuzzy"
METHOD_FALLBACK = "fallback"

_LETTER_RE = re.compile(r"[A-Za-z]")
_UNKNOWN_AUTHOR_RE = re.compile(r"unknown", re.IGNORECASE)


@dataclass(frozen=True)
class MatchResult:
    """A resolved catalog entry. Unmatched installs are represented by ``None``."""

    entry: CatalogEntry
    confidence: int
    method: str
    term: Optional[str] = None


@dataclass(frozen=True)
class ScoredCandidate:
    """Best candidate of one search term."""

    entry: CatalogEntry
    confidence: int
    score: int
    method: str


# --- Generic identifiers ---


@lru_cache(maxsize=16)
def _compile_patterns(patterns: Tuple[str, ...]) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(p) for p in patterns)


def is_generic_identifier(identifier: Optional[str], config: Optional[MatchingConfig] = None) -> bool:
    """Return True when ``identifier`` is too short or a shared platform identifier."""
    if not identifier:
        return False
    cfg = config or MatchingConfig()
    lowered = identifier.strip().lower()
    if len(lowered) < cfg.min_identifier_length:
        return True
    patterns = _compile_patterns(tuple(cfg.generic_identifier_patterns))
    return any(p.search(lowered) for p in patterns)


# --- Search terms ---


def _known_author(author: Optional[str]) -> Optional[str]:
    author = (author or "").strip()
    if not author or _UNKNOWN_AUTHOR_RE.search(author):
        return None
    return author


def build_search_terms(
    declared_name: Optional[str],
    evidence: Optional[LocalInstallEvidence],
    folder_name: Optional[str],
    *,
    author: Optional[str] = None,
    version: Optional[str] = None,
    config: Optional[MatchingConfig] = None,
) -> List[str]:
    """Build the ordered, de-duplicated search terms for one install.

    Terms come from the declared (or folder-derived) name, its suffix-stripped
    and camel-case-split forms, name fragments of non-generic identifiers,
    binary display names, slug forms, version-augmented forms and an
    ``"author name"`` combination. Every term contains a letter.
    """
    cfg = config or MatchingConfig()
    terms: List[str] = []
    seen: set[str] = set()

    def add(term: Optional[str]) -> None:
        if not term:
            return
        term = term.strip()
        if not term or not _LETTER_RE.search(term):
            return
        key = term.lower()
        if key in seen:
            return
        seen.add(key)
        terms.append(term)

    local_name = folder_base_name((declared_name or "").strip() or folder_name or "").strip()
    without_suffix = remove_component_suffix(local_name, cfg.component_suffixes)

    add(local_name)
    add(without_suffix)
    add(split_camel_case(local_name))
    add(split_camel_case(without_suffix))

    if evidence is not None:
        if evidence.guid and not is_generic_identifier(evidence.guid, cfg):
            add(name_from_identifier(evidence.guid))
        for guess in evidence.guesses:
            if not is_generic_identifier(guess, cfg):
                add(name_from_identifier(guess))
        for display_name in evidence.module_display_names():
            add(display_name)

    add(slugify(local_name))
    add(slugify(without_suffix))

    if version and local_name:
        add(f"{local_name} {version}")
        add(f"{local_name} v{version}")
        add(f"{local_name}-{version}")
        add(slugify(f"{local_name} {version}"))

    known_author = _known_author(author)
    if known_author and local_name:
        add(f"{known_author} {local_name}")

    return terms


# --- Scoring ---


def _mentions_version(entry: CatalogEntry, version: Optional[str]) -> bool:
    if not version or not any(ch.isdigit() for ch in version):
        return False
    text = f"{entry.name or ''}{entry.slug or ''}{entry.guid or ''}".lower()
    dotted = version.strip().lower()
    compacted = re.sub(r"[^0-9a-z]", "", dotted)
    return (dotted and dotted in text) or (bool(compacted) and compacted in text)


def _exact_tier(
    entry: CatalogEntry,
    term: str,
    author: Optional[str],
    cfg: MatchingConfig,
) -> Optional[Tuple[int, str]]:
    suffixes = cfg.component_suffixes
    term_norm = normalize_name(term)
    term_stripped = normalize_name(term, strip_suffixes=True, suffixes=suffixes)
    term_slug = slugify(term)

    name_norm = normalize_name(entry.name)
    if name_norm and name_norm == term_norm:
        return cfg.exact_name_confidence, METHOD_EXACT_NAME
    name_stripped = normalize_name(entry.name, strip_suffixes=True, suffixes=suffixes)
    if name_stripped and name_stripped == term_stripped:
        return cfg.suffix_stripped_confidence, METHOD_EXACT_SUFFIX
    if entry.slug and (
        normalize_name(entry.slug) == term_norm or entry.slug.lower() == term_slug
    ):
        return cfg.slug_confidence, METHOD_SLUG
    guid_name = name_from_identifier(entry.guid)
    if guid_name and guid_name.lower() == term_slug.replace("-", ""):
        return cfg.slug_confidence, METHOD_SLUG
    if (
        author
        and entry.owner
        and entry.name
        and entry.owner.lower() == author.lower()
        and term_norm == normalize_name(f"{entry.owner}{entry.name}")
    ):
        return cfg.owner_name_confidence, METHOD_OWNER_NAME
    return None


def score_search_results(
    term: str,
    results: Sequence[CatalogEntry],
    *,
    version: Optional[str] = None,
    author: Optional[str] = None,
    config: Optional[MatchingConfig] = None,
) -> Optional[ScoredCandidate]:
    """Score one term's search results.

    The exact tier wins when any result qualifies (highest confidence, first
    in catalog order on ties). Otherwise the fuzzy tier accepts results whose
    similarity to the term (against name or slug) reaches the threshold;
    confidence is ``floor(score * weight)``, boosted when the candidate text
    carries ``version`` and capped at 100.

    Returns:
        The best candidate, or ``None`` when nothing clears either tier.
    """
    cfg = config or MatchingConfig()
    author = _known_author(author)

    best: Optional[ScoredCandidate] = None
    for entry in results:
        exact = _exact_tier(entry, term, author, cfg)
        if exact is None:
            continue
        confidence, method = exact
        if best is None or confidence > best.confidence:
            best = ScoredCandidate(entry=entry, confidence=confidence, score=100, method=method)
    if best is not None:
        return best

    for entry in results:
        score = max(similarity_score(term, entry.name), similarity_score(term, entry.slug))
        if score < cfg.fuzzy_threshold:
            continue
        confidence = int(math.floor(score * cfg.fuzzy_weight))
        if _mentions_version(entry, version):
            confidence += cfg.version_boost
        confidence = max(0, min(100, confidence))
        if best is None or (confidence, score) > (best.confidence, best.score):
            best = ScoredCandidate(entry=entry, confidence=confidence, score=score, method=METHOD_FUZZY)
    return best


# --- CandidateMatcher ---


class CandidateMatcher:
    """Resolve installs against a catalog, one enrichment pass at a time.

    The matcher keeps a per-pass cache of catalog entries keyed by identifier;
    call :meth:`reset_cache` (or build a new matcher) for the next pass.
    """

    def __init__(
        self,
        catalog: CatalogClient,
        overrides: Optional[OverrideTable] = None,
        config: Optional[MatchingConfig] = None,
        *,
        max_results: int = 100,
    ) -> None:
        self.catalog = catalog
        self.overrides = overrides or OverrideTable()
        self.config = config or MatchingConfig()
        self.max_results = max_results
        self.cache: Dict[str, CatalogEntry] = {}

    def reset_cache(self) -> None:
        self.cache.clear()

    # -- catalog helpers -----------------------------------------------------

    def _remember(self, entry: Optional[CatalogEntry]) -> Optional[CatalogEntry]:
        if entry is not None and entry.guid:
            self.cache[entry.guid.lower()] = entry
        return entry

    def _lookup_identifier(self, identifier: str) -> Optional[CatalogEntry]:
        cached = self.cache.get(identifier.lower())
        if cached is not None:
            return cached
        try:
            return self._remember(self.catalog.lookup_by_identifier(identifier))
        except CatalogError as exc:
            LOGGER.warning(
                "identifier lookup failed",
                extra={"stage": "match", "extra_fields": {"identifier": identifier, "error": str(exc)}},
            )
            return None

    def _lookup_slug(self, slug: str) -> Optional[CatalogEntry]:
        try:
            return self._remember(self.catalog.lookup_by_slug(slug))
        except CatalogError as exc:
            LOGGER.warning(
                "slug lookup failed",
                extra={"stage": "match", "extra_fields": {"slug": slug, "error": str(exc)}},
            )
            return None

    def _search(self, query: str) -> List[CatalogEntry]:
        try:
            return list(self.catalog.search(query, self.max_results))
        except SearchFailure as exc:
            LOGGER.warning(
                "catalog search failed",
                extra={"stage": "match", "extra_fields": {"query": query, "error": str(exc)}},
            )
            return []

    def _complete(self, entry: CatalogEntry) -> Optional[CatalogEntry]:
        """Fetch the detail of a search hit that lacks an identifier."""
        if entry.guid:
            return entry
        reference = entry.reference
        if not reference:
            return None
        try:
            detail = self.catalog.get_detail(reference)
        except CatalogError as exc:
            LOGGER.warning(
                "detail lookup failed",
                extra={"stage": "match", "extra_fields": {"reference": reference, "error": str(exc)}},
            )
            return None
        if detail is None or not detail.guid:
            return None
        return self._remember(detail)

    def resolve_override(self, override: OverrideEntry) -> Optional[CatalogEntry]:
        if override.target_type == TARGET_GUID:
            return self._lookup_identifier(override.target)
        return self._lookup_slug(override.target)

    # -- precedence ----------------------------------------------------------

    def match(
        self,
        evidence: Optional[LocalInstallEvidence],
        folder_name: Optional[str],
        *,
        declared_name: Optional[str] = None,
        author: Optional[str] = None,
        version: Optional[str] = None,
    ) -> Optional[MatchResult]:
        """Resolve one install.

        Args:
            evidence: Local evidence collected for the install.
            folder_name: Install folder name.
            declared_name: Name recorded by the host for the install.
            author: Author recorded by the host, if any.
            version: Version recorded by the host, used when neither the
                evidence nor the folder name carries one.

        Returns:
            The resolved :class:`MatchResult`, or ``None`` when unmatched.
        """
        cfg = self.config
        evidence = evidence or LocalInstallEvidence()

        override = self.overrides.find_for_evidence(evidence, folder_name)
        if override is not None:
            entry = self.resolve_override(override)
            if entry is not None:
                return self._finish(
                    folder_name, MatchResult(entry, cfg.override_confidence, METHOD_OVERRIDE, override.key_raw)
                )
            LOGGER.info(
                "override target not found",
                extra={"stage": "match", "folder": folder_name, "extra_fields": {"target": override.target}},
            )

        if evidence.guid and not is_generic_identifier(evidence.guid, cfg):
            entry = self._lookup_identifier(evidence.guid)
            if entry is not None:
                return self._finish(
                    folder_name, MatchResult(entry, cfg.identifier_confidence, METHOD_IDENTIFIER, evidence.guid)
                )

        for guess in evidence.guesses:
            if is_generic_identifier(guess, cfg):
                continue
            entry = self._lookup_identifier(guess)
            if entry is not None:
                return self._finish(
                    folder_name, MatchResult(entry, cfg.identifier_confidence, METHOD_FOLDER_GUESS, guess)
                )

        known_version = evidence.version or extract_folder_version(folder_name) or version
        result = self._match_terms(evidence, folder_name, declared_name, author, known_version)
        if result is None:
            result = self._match_fallback(evidence, folder_name)
        if result is None:
            LOGGER.info("unmatched", extra={"stage": "match", "folder": folder_name})
            return None
        return self._finish(folder_name, result)

    def _match_terms(
        self,
        evidence: LocalInstallEvidence,
        folder_name: Optional[str],
        declared_name: Optional[str],
        author: Optional[str],
        version: Optional[str],
    ) -> Optional[MatchResult]:
        cfg = self.config
        terms = build_search_terms(
            declared_name, evidence, folder_name, author=author, version=version, config=cfg
        )
        LOGGER.debug(
            "search terms",
            extra={"stage": "match", "folder": folder_name, "extra_fields": {"terms": terms[:12]}},
        )
        best: Optional[MatchResult] = None
        best_score = 0
        for term in terms:
            candidate = score_search_results(
                term, self._search(term), version=version, author=author, config=cfg
            )
            if candidate is None:
                continue
            entry = self._complete(candidate.entry)
            if entry is None:
                continue
            if best is None or candidate.confidence > best.confidence:
                best = MatchResult(entry, candidate.confidence, candidate.method, term)
                best_score = max(best_score, candidate.score)
            if best.confidence >= cfg.stop_confidence or candidate.score >= cfg.fuzzy_threshold:
                break
        if best is not None and best_score >= cfg.fuzzy_threshold:
            return best
        return None

    def _match_fallback(
        self, evidence: LocalInstallEvidence, folder_name: Optional[str]
    ) -> Optional[MatchResult]:
        cfg = self.config
        candidates: List[str] = []
        for value in _fallback_names(evidence, folder_name, cfg):
            if value not in candidates:
                candidates.append(value)

        best_entry: Optional[CatalogEntry] = None
        best_score = 0
        best_term: Optional[str] = None
        for candidate in candidates:
            for entry in self._search(candidate):
                for text in (entry.name, entry.slug, entry.guid):
                    if not text:
                        continue
                    score = similarity_score(candidate, text)
                    if score > best_score:
                        best_entry, best_score, best_term = entry, score, candidate
            if best_score >= cfg.fuzzy_threshold:
                break

        if best_entry is None or best_score <= 0:
            return None
        entry = self._complete(best_entry)
        if entry is None:
            return None
        return MatchResult(entry, max(0, min(100, best_score)), METHOD_FALLBACK, best_term)

    def _finish(self, folder_name: Optional[str], result: MatchResult) -> MatchResult:
        self._remember(result.entry)
        LOGGER.info(
            "matched",
            extra={
                "stage": "match",
                "folder": folder_name,
                "catalog_guid": result.entry.guid,
                "extra_fields": {
                    "method": result.method,
                    "confidence": result.confidence,
                    "term": result.term,
                },
            },
        )
        return result


def _fallback_names(
    evidence: LocalInstallEvidence, folder_name: Optional[str], cfg: MatchingConfig
) -> Iterable[str]:
    if evidence.display_name:
        yield evidence.display_name
    if folder_name:
        yield folder_name
    yield from evidence.module_display_names()
    if evidence.guid and is_generic_identifier(evidence.guid, cfg):
        yield evidence.guid
