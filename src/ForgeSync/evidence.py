# === NAVMAP v1 ===
# {
#   "module": "ForgeSync.evidence",
#   "purpose": "Best-effort identity extraction from binary modules and install manifests",
#   "sections": [
#     {"id": "types", "name": "Evidence Types", "anchor": "TYP", "kind": "api"},
#     {"id": "patterns", "name": "Byte Patterns", "anchor": "PAT", "kind": "constants"},
#     {"id": "extract", "name": "extract_module_evidence", "anchor": "EXT", "kind": "api"},
#     {"id": "aggregate", "name": "aggregate_module_evidence", "anchor": "AGG", "kind": "api"},
#     {"id": "collect", "name": "collect_install_evidence", "anchor": "COL", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Evidence extraction from installed binary modules and manifests.

Installed packages rarely carry an explicit identifier. The most reliable
signal is the plugin declaration compiled into a module, e.g.
``BepInPlugin("com.author.mod", "Mod", "1.2.3")``. When that is missing the
extractor falls back to pattern matching over the raw bytes:

* dotted lowercase identifiers (``me.sol.sain``) that have a semantic version
  nearby;
* ``com.*`` tokens, paired with a nearby version or an ``AssemblyVersion``
  literal.

Bytes are decoded as latin-1 and scanned in two views: one where NUL padding
in front of ``.`` is removed (identifiers split across padded segments) and
one with every NUL removed (UTF-16 string heaps). Extraction never raises:
unreadable or unparsable input yields an empty :class:`ModuleEvidence`.
"""

from __future__ import annotations

import json
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from .config.models import ScanConfig
from .folder_names import guess_identifiers_from_folder
from .scanner import InstallScanner, walk_files

__all__ = [
    "EvidenceItem",
    "LocalInstallEvidence",
    "ModuleEvidence",
    "aggregate_module_evidence",
    "collect_install_evidence",
    "extract_module_evidence",
    "pick_best_identifier",
]

LOGGER = logging.getLogger(__name__)

MATCH_STRUCTURED = "structured"
MATCH_PATTERN = "pattern"

# --- Evidence Types ---


@dataclass(frozen=True)
class ModuleEvidence:
    """Per-module extractor output."""

    guid: Optional[str] = None
    version: Optional[str] = None
    display_name: Optional[str] = None
    match_type: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.guid is None and self.version is None and self.display_name is None


@dataclass(frozen=True)
class EvidenceItem:
    """One piece of local evidence tied to the file it came from."""

    source_kind: str
    origin_token: str
    guid: Optional[str] = None
    version: Optional[str] = None
    display_name: Optional[str] = None
    confidence_tag: Optional[str] = None


@dataclass
class LocalInstallEvidence:
    """Aggregated identity evidence for one install, rebuilt on every pass."""

    guid: Optional[str] = None
    version: Optional[str] = None
    display_name: Optional[str] = None
    evidence_items: List[EvidenceItem] = field(default_factory=list)
    guesses: List[str] = field(default_factory=list)

    def module_display_names(self) -> List[str]:
        """Display names reported by binary modules, in discovery order."""
        names = (
            item.display_name
            for item in self.evidence_items
            if item.source_kind == "module" and item.display_name
        )
        return list(dict.fromkeys(names))


# --- Byte Patterns ---

_PLUGIN_DECL_RE = re.compile(
    r"""BepInPlugin\s*\(\s*["']([^"']+)["']\s*,\s*["']([^"']+)["']\s*,\s*["']([^"']+)["']\s*\)"""
)
_ASSEMBLY_NAME_RE = re.compile(
    r"""\[assembly:\s*(?:AssemblyTitle|AssemblyProduct|AssemblyDescription)\s*\(\s*["']([^"']+)["']\s*\)\s*\]""",
    re.IGNORECASE,
)
_ASSEMBLY_VERSION_RE = re.compile(r"""AssemblyVersion\s*\(\s*["']([^"']+)["']\s*\)""", re.IGNORECASE)
_COM_TOKEN_RE = re.compile(r"\bcom\.[a-z0-9_.-]{3,}\b", re.IGNORECASE)
# Every segment starts with a letter so version strings like v4.7.1 never qualify.
_SLUG_TOKEN_RE = re.compile(
    r"(?<![A-Za-z0-9_.-])[a-z][a-z0-9_-]*(?:\.[a-z][a-z0-9_-]*){2,}(?![A-Za-z0-9_.-])"
)
_VERSION_RE = re.compile(r"\b\d+\.\d+\.\d+(?:\.\d+)?\b")
_REVERSE_DOMAIN_RE = re.compile(r"^[a-z][a-z0-9_-]*(?:\.[a-z0-9_-]+){2,}$")
_NUL_BEFORE_DOT_RE = re.compile(r"\x00+(?=\.)")

_MAX_DECLARATIONS = 10
_MAX_COM_TOKENS = 50
_VERSION_WINDOW = 200


def _normalize_identifier(value: str) -> str:
    return value.strip().strip(".").lower()


def _text_views(data: bytes) -> Tuple[str, ...]:
    text = data.decode("latin-1")
    if "\x00" not in text:
        return (text,)
    return (_NUL_BEFORE_DOT_RE.sub("", text), text.replace("\x00", ""))


def pick_best_identifier(candidates: Iterable[Optional[str]]) -> Optional[str]:
    """Pick the shortest reverse-domain identifier, falling back to any candidate.

    Ties on length resolve to the lexicographically smallest value.
    """
    unique = list(dict.fromkeys(c.strip() for c in candidates if c and c.strip()))
    if not unique:
        return None
    preferred = [c for c in unique if _REVERSE_DOMAIN_RE.match(c.lower())]
    pool = preferred or unique
    return min(pool, key=lambda c: (len(c), c))


def _version_near(text: str, start: int, end: int) -> Optional[str]:
    window = text[max(0, start - _VERSION_WINDOW) : end + _VERSION_WINDOW]
    match = _VERSION_RE.search(window)
    return match.group(0) if match else None


def _structured_evidence(views: Sequence[str]) -> Optional[ModuleEvidence]:
    declarations: List[Tuple[str, str, str]] = []
    for view in views:
        for match in _PLUGIN_DECL_RE.finditer(view):
            declarations.append(
                (_normalize_identifier(match.group(1)), match.group(2), match.group(3))
            )
            if len(declarations) >= _MAX_DECLARATIONS:
                break
        if len(declarations) >= _MAX_DECLARATIONS:
            break
    if not declarations:
        return None
    best = pick_best_identifier(decl[0] for decl in declarations)
    guid, name, version = next(
        (decl for decl in declarations if decl[0] == best), declarations[0]
    )
    return ModuleEvidence(
        guid=guid or None,
        version=version.strip() or None,
        display_name=name.strip() or None,
        match_type=MATCH_STRUCTURED,
    )


def _pattern_evidence(views: Sequence[str]) -> ModuleEvidence:
    display_name: Optional[str] = None
    for view in views:
        match = _ASSEMBLY_NAME_RE.search(view)
        if match:
            display_name = match.group(1).strip() or None
            break

    # Dotted slug tokens are only trusted with a version next to them.
    versioned_slugs: "OrderedDict[str, str]" = OrderedDict()
    for view in views:
        for match in _SLUG_TOKEN_RE.finditer(view):
            token = match.group(0)
            if token in versioned_slugs:
                continue
            version = _version_near(view, match.start(), match.end())
            if version:
                versioned_slugs[token] = version
                if len(versioned_slugs) >= _MAX_COM_TOKENS:
                    break
    if versioned_slugs:
        guid = pick_best_identifier(versioned_slugs)
        if guid is not None:
            return ModuleEvidence(
                guid=guid,
                version=versioned_slugs[guid],
                display_name=display_name,
                match_type=MATCH_PATTERN,
            )

    com_tokens: List[str] = []
    positions: dict[str, Tuple[str, int, int]] = {}
    for view in views:
        for match in _COM_TOKEN_RE.finditer(view):
            token = _normalize_identifier(match.group(0))
            com_tokens.append(token)
            positions.setdefault(token, (view, match.start(), match.end()))
            if len(com_tokens) >= _MAX_COM_TOKENS:
                break
        if len(com_tokens) >= _MAX_COM_TOKENS:
            break
    guid = pick_best_identifier(com_tokens)

    version: Optional[str] = None
    if guid is not None and guid in positions:
        view, start, end = positions[guid]
        version = _version_near(view, start, end)
    if version is None:
        for view in views:
            match = _ASSEMBLY_VERSION_RE.search(view)
            if match:
                version = match.group(1).strip() or None
                break

    if guid is None and version is None and display_name is None:
        return ModuleEvidence()
    return ModuleEvidence(
        guid=guid, version=version, display_name=display_name, match_type=MATCH_PATTERN
    )


def extract_module_evidence(data: bytes) -> ModuleEvidence:
    """Extract ``{guid, version, display_name, match_type}`` from module bytes.

    Args:
        data: Raw bytes of one binary module.

    Returns:
        The extracted evidence; an empty :class:`ModuleEvidence` when nothing
        usable was found or the input could not be scanned.
    """
    if not data:
        return ModuleEvidence()
    try:
        views = _text_views(bytes(data))
        structured = _structured_evidence(views)
        if structured is not None:
            return structured
        return _pattern_evidence(views)
    except (TypeError, ValueError, re.error) as exc:
        LOGGER.debug("module scan failed", extra={"stage": "extract", "extra_fields": {"error": str(exc)}})
        return ModuleEvidence()


# --- Aggregation ---


@dataclass
class _IdentifierStats:
    guid: str
    origin_token: str
    count: int = 0
    structured_count: int = 0
    version_count: int = 0
    version: Optional[str] = None
    version_is_structured: bool = False
    display_name: Optional[str] = None


def aggregate_module_evidence(items: Iterable[EvidenceItem]) -> Optional[EvidenceItem]:
    """Choose the winning identifier across all modules of one install.

    Identifiers are ranked by structured-hit count, then how often a version
    accompanied them, then total occurrences, then shorter identifier first.
    The version of a structured hit wins over a pattern-derived one.
    """
    stats: "OrderedDict[str, _IdentifierStats]" = OrderedDict()
    for item in items:
        if not item.guid:
            continue
        current = stats.get(item.guid)
        if current is None:
            current = _IdentifierStats(guid=item.guid, origin_token=item.origin_token)
            stats[item.guid] = current
        current.count += 1
        structured = item.confidence_tag == MATCH_STRUCTURED
        if structured:
            current.structured_count += 1
        if item.version:
            current.version_count += 1
            if current.version is None or (structured and not current.version_is_structured):
                current.version = item.version
                current.version_is_structured = structured
        if item.display_name and not current.display_name:
            current.display_name = item.display_name

    if not stats:
        return None
    best = min(
        stats.values(),
        key=lambda s: (-s.structured_count, -s.version_count, -s.count, len(s.guid), s.guid),
    )
    return EvidenceItem(
        source_kind="module",
        origin_token=best.origin_token,
        guid=best.guid,
        version=best.version,
        display_name=best.display_name,
        confidence_tag=MATCH_STRUCTURED if best.structured_count else MATCH_PATTERN,
    )


# --- Install Collection ---


def _read_manifest(path: Path) -> Optional[EvidenceItem]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        LOGGER.debug(
            "manifest unreadable",
            extra={"stage": "extract", "extra_fields": {"path": str(path), "error": str(exc)}},
        )
        return None
    if not isinstance(payload, dict):
        return None
    version = payload.get("version")
    name = payload.get("name")
    return EvidenceItem(
        source_kind="manifest",
        origin_token=str(path),
        version=str(version) if version else None,
        display_name=str(name) if name else None,
    )


def collect_install_evidence(
    install_dir: Path,
    folder_name: str,
    scanner: Optional[InstallScanner] = None,
    scan_config: Optional[ScanConfig] = None,
) -> LocalInstallEvidence:
    """Build :class:`LocalInstallEvidence` for one install folder.

    Binary modules are scanned first and aggregated; manifests only fill a
    version or display name the modules did not provide. Folder-name guesses
    are recorded separately and never become the evidence identifier.
    """
    config = scan_config or ScanConfig()
    walker = scanner.walk_files if scanner is not None else walk_files
    root = Path(install_dir)
    suffixes = tuple(s.lower() for s in config.module_suffixes)
    manifest_names = {n.lower() for n in config.manifest_names}
    evidence = LocalInstallEvidence()

    modules = walker(
        root,
        max_files=config.module_max_files,
        max_depth=config.module_max_depth,
        predicate=lambda p: p.name.lower().endswith(suffixes),
    )
    module_items: List[EvidenceItem] = []
    for module_path in modules:
        try:
            if module_path.stat().st_size > config.module_max_bytes:
                continue
            data = module_path.read_bytes()
        except OSError as exc:
            LOGGER.debug(
                "module unreadable",
                extra={"stage": "extract", "extra_fields": {"path": str(module_path), "error": str(exc)}},
            )
            continue
        found = extract_module_evidence(data)
        if not found.guid:
            continue
        item = EvidenceItem(
            source_kind="module",
            origin_token=str(module_path),
            guid=found.guid,
            version=found.version,
            display_name=found.display_name,
            confidence_tag=found.match_type,
        )
        module_items.append(item)
        evidence.evidence_items.append(item)

    best = aggregate_module_evidence(module_items)
    if best is not None:
        evidence.guid = best.guid
        evidence.version = best.version
        evidence.display_name = best.display_name

    manifests = walker(
        root,
        max_files=config.manifest_max_files,
        max_depth=config.manifest_max_depth,
        predicate=lambda p: p.name.lower() in manifest_names,
    )
    for manifest_path in manifests:
        item = _read_manifest(manifest_path)
        if item is None:
            continue
        evidence.evidence_items.append(item)
        if evidence.version is None and item.version:
            evidence.version = item.version
        if evidence.display_name is None and item.display_name:
            evidence.display_name = item.display_name

    evidence.guesses = guess_identifiers_from_folder(folder_name)
    LOGGER.debug(
        "collected evidence",
        extra={
            "stage": "extract",
            "folder": folder_name,
            "extra_fields": {
                "guid": evidence.guid,
                "version": evidence.version,
                "modules": len(modules),
                "guesses": evidence.guesses,
            },
        },
    )
    return evidence
