"""Checksum parsing, normalisation, and streaming digest helpers.

Catalog payloads describe expected digests in several shapes: flat
``sha256`` fields on a file entry, a nested ``checksums`` mapping, or a
``"sha256:<hex>"`` string. :func:`checksums_from_payload` folds those into a
``{algorithm: hexdigest}`` mapping; :func:`file_digests` computes the digests
of a completed download in one streaming pass.
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Tuple

__all__ = [
    "SUPPORTED_ALGORITHMS",
    "checksums_from_payload",
    "file_digests",
    "normalize_checksum",
]

SUPPORTED_ALGORITHMS = ("md5", "sha1", "sha256", "sha512")

_HEX_DIGEST_RE = re.compile(r"[0-9a-f]{32,128}")
_PREFIXED_RE = re.compile(r"^(md5|sha1|sha256|sha512)[:=](.+)$", re.IGNORECASE)
_CHUNK_SIZE = 1 << 16


def normalize_checksum(algorithm: str, value: str) -> Tuple[str, str]:
    """Return ``(algorithm, hexdigest)`` lower-cased and validated.

    Raises:
        ValueError: If the algorithm is unsupported or the value is not hex.
    """
    normalized_algorithm = (algorithm or "").strip().lower()
    if normalized_algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"unsupported checksum algorithm '{algorithm}'")
    if not isinstance(value, str):
        raise ValueError("checksum value must be a string")
    digest = value.strip().lower()
    if not _HEX_DIGEST_RE.fullmatch(digest):
        raise ValueError("checksum value must be a hexadecimal digest")
    return normalized_algorithm, digest


def checksums_from_payload(payload: Mapping[str, Any]) -> Dict[str, str]:
    """Collect every recognisable checksum declared on a file/asset payload.

    Malformed values are ignored; a catalog entry with a broken digest is
    treated as one without a digest rather than as a failed download.
    """
    found: Dict[str, str] = {}

    def _add(algorithm: str, value: Any) -> None:
        try:
            algo, digest = normalize_checksum(algorithm, value)
        except ValueError:
            return
        found.setdefault(algo, digest)

    for algorithm in SUPPORTED_ALGORITHMS:
        if payload.get(algorithm):
            _add(algorithm, payload[algorithm])

    nested = payload.get("checksums") or payload.get("hashes")
    if isinstance(nested, Mapping):
        for algorithm, value in nested.items():
            _add(str(algorithm), value)

    for field in ("checksum", "hash"):
        value = payload.get(field)
        if isinstance(value, str):
            match = _PREFIXED_RE.match(value.strip())
            if match:
                _add(match.group(1), match.group(2))
        elif isinstance(value, Mapping):
            _add(str(value.get("algorithm", "sha256")), value.get("value"))

    return found


def file_digests(path: Path, algorithms: Iterable[str]) -> Dict[str, str]:
    """Compute hex digests of ``path`` for each requested algorithm."""
    hashers = {name: hashlib.new(name) for name in dict.fromkeys(a.lower() for a in algorithms)}
    if not hashers:
        return {}
    with Path(path).open("rb") as handle:
        while True:
            chunk = handle.read(_CHUNK_SIZE)
            if not chunk:
                break
            for hasher in hashers.values():
                hasher.update(chunk)
    return {name: hasher.hexdigest() for name, hasher in hashers.items()}
