"""Heuristics that derive identifier guesses and versions from install folder names.

Folder names are the weakest evidence available: typically an archive name
such as ``DrakiaXYZ-GildedKeyStorage-2.0.4.zip`` that survived extraction.
These helpers peel off the archive extension and version suffix and turn an
``AUTHOR-Name`` remainder into reverse-domain identifier guesses.
"""

from __future__ import annotations

import re
from typing import List, Optional

from .naming import compact, slugify

__all__ = [
    "ARCHIVE_EXTENSIONS",
    "extract_folder_version",
    "folder_base_name",
    "guess_identifiers_from_folder",
    "strip_archive_ext",
    "strip_trailing_version",
]

ARCHIVE_EXTENSIONS = (".tar.gz", ".zip", ".7z", ".rar", ".tar")

_ARCHIVE_EXT_RE = re.compile(r"\.(?:tar\.gz|zip|7z|rar|tar)$", re.IGNORECASE)
_TRAILING_VERSION_RE = re.compile(r"[._-]+[vV]?(\d+(?:[._-]+\d+)*)$")
_TRAILING_SEPARATORS_RE = re.compile(r"[-_.]+$")
_AUTHOR_SPLIT_RE = re.compile(r"^([A-Za-z0-9_]+)[-_ ](.+)$")
_REVERSE_DOMAIN_RE = re.compile(r"^com\.", re.IGNORECASE)


def strip_archive_ext(name: Optional[str]) -> str:
    """Remove one trailing archive extension (case-insensitive)."""
    return _ARCHIVE_EXT_RE.sub("", name or "")


def strip_trailing_version(name: Optional[str]) -> str:
    """Remove a trailing version suffix such as ``-1.2.3``, ``_v2.0.3`` or ``_2_0_4``.

    Returns the input unchanged when stripping would leave nothing.

    >>> strip_trailing_version("Tyfon-UIFixes-5.3.0")
    'Tyfon-UIFixes'
    >>> strip_trailing_version("Croupier_2_0_4")
    'Croupier'
    """
    value = name or ""
    stripped = _TRAILING_SEPARATORS_RE.sub("", _TRAILING_VERSION_RE.sub("", value))
    return stripped or value


def folder_base_name(name: Optional[str]) -> str:
    """Strip the archive extension and then the version suffix."""
    return strip_trailing_version(strip_archive_ext(name))


def extract_folder_version(name: Optional[str]) -> Optional[str]:
    """Recover a dotted version from a folder's version suffix.

    Requires at least two numeric groups so that names like ``Mod-2`` do not
    produce a bogus version.

    >>> extract_folder_version("Croupier_2_0_4")
    '2.0.4'
    >>> extract_folder_version("BotCallsigns_v2.0.3")
    '2.0.3'
    """
    match = _TRAILING_VERSION_RE.search(strip_archive_ext(name))
    if match is None:
        return None
    groups = re.findall(r"\d+", match.group(1))
    if len(groups) < 2:
        return None
    return ".".join(groups)


def guess_identifiers_from_folder(folder_name: Optional[str]) -> List[str]:
    """Return ordered, de-duplicated identifier guesses for ``folder_name``.

    ``AUTHOR<sep>Rest`` yields ``com.author.rest`` (compacted) and the variant
    built from the camel-case slug of ``Rest``. A base that already looks like
    a reverse-domain identifier with three or more segments is kept as is.
    """
    base = folder_base_name(folder_name)
    guesses: List[str] = []

    match = _AUTHOR_SPLIT_RE.match(base)
    if match:
        author = match.group(1).lower()
        rest = match.group(2)
        rest_compact = compact(rest)
        rest_slug = slugify(rest).replace("-", "")
        if author and rest_compact:
            guesses.append(f"com.{author}.{rest_compact}")
        if author and rest_slug:
            guesses.append(f"com.{author}.{rest_slug}")

    if _REVERSE_DOMAIN_RE.match(base) and len(base.split(".")) >= 3:
        guesses.append(base)

    return list(dict.fromkeys(guesses))
