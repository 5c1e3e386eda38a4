"""Name normalisation helpers shared by matching, overrides, and folder heuristics."""

from __future__ import annotations

import re
from typing import Iterable, Optional, Sequence

__all__ = [
    "COMPONENT_SUFFIXES",
    "compact",
    "name_from_identifier",
    "normalize_name",
    "remove_component_suffix",
    "slugify",
    "split_camel_case",
]

COMPONENT_SUFFIXES: Sequence[str] = ("Server", "Client")

_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_NAME_SEPARATORS_RE = re.compile(r"[-_. ]+")
_IDENTIFIER_SPLIT_RE = re.compile(r"[.\-_]")


def split_camel_case(value: str) -> str:
    """Insert spaces at camel-case boundaries: ``"TaskAutomation"`` -> ``"Task Automation"``."""
    if not value:
        return ""
    return _CAMEL_BOUNDARY_RE.sub(" ", value)


def slugify(value: Optional[str]) -> str:
    """Return a lowercase hyphenated slug, splitting camel case first.

    >>> slugify("TaskAutomation")
    'task-automation'
    >>> slugify("Tyfon UI_Fixes")
    'tyfon-ui-fixes'
    """
    if not value:
        return ""
    spaced = split_camel_case(str(value)).lower()
    return _NON_ALNUM_RE.sub("-", spaced).strip("-")


def compact(value: Optional[str]) -> str:
    """Lowercase ``value`` and drop every non-alphanumeric character."""
    if not value:
        return ""
    return _NON_ALNUM_RE.sub("", str(value).lower())


def normalize_name(
    value: Optional[str],
    *,
    strip_suffixes: bool = False,
    suffixes: Iterable[str] = COMPONENT_SUFFIXES,
) -> str:
    """Lowercase and remove ``-``, ``_``, ``.`` and spaces.

    With ``strip_suffixes`` a single trailing component suffix (``server`` /
    ``client``) is removed as well.
    """
    if not value:
        return ""
    out = _NAME_SEPARATORS_RE.sub("", str(value).lower())
    if strip_suffixes:
        for suffix in suffixes:
            lowered = suffix.lower()
            if out.endswith(lowered) and len(out) > len(lowered):
                out = out[: -len(lowered)]
                break
    return out


def remove_component_suffix(name: str, suffixes: Iterable[str] = COMPONENT_SUFFIXES) -> str:
    """Strip one trailing ``Server``/``Client`` suffix when something remains."""
    if not name:
        return name
    for suffix in suffixes:
        if len(name) > len(suffix) and name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def name_from_identifier(identifier: Optional[str]) -> str:
    """Return the last non-empty segment of a dotted identifier.

    >>> name_from_identifier("com.knotscripts.taskautomation")
    'taskautomation'
    """
    if not identifier:
        return ""
    parts = [part for part in _IDENTIFIER_SPLIT_RE.split(str(identifier)) if part]
    if not parts:
        return str(identifier)
    return parts[-1]
