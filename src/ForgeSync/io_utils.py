"""Small filesystem helpers shared by the JSON-backed stores."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

__all__ = ["write_json_atomic"]


def write_json_atomic(path: Path, payload: object, *, sort_keys: bool = False) -> Path:
    """Atomically persist ``payload`` as JSON to ``path``.

    The payload is written to a temporary file next to ``path`` and moved into
    place with :func:`os.replace`, so readers never observe a partial file.
    """

    resolved = Path(path).expanduser()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=str(resolved.parent), suffix=".tmp", delete=False
    ) as handle:
        temp_name = handle.name
        try:
            json.dump(payload, handle, indent=2, sort_keys=sort_keys, ensure_ascii=False)
            handle.flush()
            try:
                os.fsync(handle.fileno())
            except OSError:
                pass
        except BaseException:
            handle.close()
            Path(temp_name).unlink(missing_ok=True)
            raise
    os.replace(temp_name, resolved)
    return resolved
