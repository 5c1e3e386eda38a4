# === NAVMAP v1 ===
# {
#   "module": "ForgeSync.locks",
#   "purpose": "Per-destination and per-store locking for downloads and override writes",
#   "sections": [
#     {"id": "paths", "name": "Lock File Paths", "anchor": "PTH", "kind": "helpers"},
#     {"id": "thread", "name": "In-Process Locks", "anchor": "THR", "kind": "helpers"},
#     {"id": "api", "name": "destination_lock / store_lock", "anchor": "API", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""File-based locking utilities for ForgeSync writes.

Two concurrent acquisitions must never write the same destination path at the
same time. :func:`destination_lock` enforces that with two layers:

- an in-process :class:`threading.Lock` per resolved path, so worker threads of
  one batch serialise without touching the filesystem;
- a :mod:`filelock` lock file under a lock directory, so separate processes
  sharing a download directory serialise as well.

Both layers are re-entrant for the owning thread, so the acquisition flow can
hold a destination across download, verification and import while the
downloader takes the same lock internally. In-process locks are dropped once
no thread holds or waits on them.

Lock file names are derived from a sha256 digest of the resolved target path.
:func:`store_lock` guards rewrites of small JSON stores (the override table and
the install registry) the same way.
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set

from filelock import FileLock, Timeout

__all__ = ["Timeout", "destination_lock", "store_lock", "lock_file_for"]

LOGGER = logging.getLogger(__name__)
logging.getLogger("filelock").setLevel(logging.INFO)

_LOCK_DIR_NAME = ".locks"
_DEFAULT_DESTINATION_TIMEOUT = 300.0
_DEFAULT_STORE_TIMEOUT = 10.0

_thread_locks_guard = threading.Lock()
# key -> [lock, number of threads holding or waiting]
_thread_locks: Dict[str, List[Any]] = {}
_held = threading.local()


def _hash_path(target: Path) -> str:
    return hashlib.sha256(str(target).encode("utf-8")).hexdigest()[:24]


def lock_file_for(category: str, target: Path, lock_dir: Optional[Path] = None) -> Path:
    """Return the lock file guarding ``target``.

    Args:
        category: Logical lock family (``"download"`` or ``"store"``).
        target: Path being protected.
        lock_dir: Directory for lock files; defaults to ``target.parent/.locks``.
    """
    resolved = Path(target).expanduser().resolve(strict=False)
    directory = Path(lock_dir) if lock_dir is not None else resolved.parent / _LOCK_DIR_NAME
    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"{category}.{_hash_path(resolved)}.lock"


def _checkout_thread_lock(key: str) -> threading.Lock:
    with _thread_locks_guard:
        entry = _thread_locks.get(key)
        if entry is None:
            entry = [threading.Lock(), 0]
            _thread_locks[key] = entry
        entry[1] += 1
        return entry[0]


def _release_thread_lock(key: str) -> None:
    with _thread_locks_guard:
        entry = _thread_locks.get(key)
        if entry is None:
            return
        entry[1] -= 1
        if entry[1] <= 0:
            del _thread_locks[key]


def _held_keys() -> Set[str]:
    keys = getattr(_held, "keys", None)
    if keys is None:
        keys = set()
        _held.keys = keys
    return keys


@contextlib.contextmanager
def _category_lock(
    category: str,
    target: Path,
    *,
    lock_dir: Optional[Path],
    timeout: float,
) -> Iterator[Path]:
    resolved = Path(target).expanduser().resolve(strict=False)
    key = f"{category}:{resolved}"
    held = _held_keys()
    if key in held:
        # Re-entry from the thread that already owns the lock.
        yield resolved
        return

    lock_file = lock_file_for(category, resolved, lock_dir)
    thread_lock = _checkout_thread_lock(key)
    try:
        start = time.monotonic()
        if not thread_lock.acquire(timeout=timeout if timeout >= 0 else -1):
            raise Timeout(str(lock_file))
        try:
            file_lock = FileLock(str(lock_file), timeout=timeout, thread_local=False)
            try:
                file_lock.acquire()
            except Timeout:
                LOGGER.info(
                    "lock-timeout category=%s lock_file=%s target=%s",
                    category,
                    lock_file,
                    resolved,
                )
                raise
            wait_ms = max((time.monotonic() - start) * 1000.0, 0.0)
            LOGGER.debug(
                "lock-acquired category=%s wait_ms=%.3f target=%s", category, wait_ms, resolved
            )
            held.add(key)
            try:
                yield resolved
            finally:
                held.discard(key)
                file_lock.release()
        finally:
            thread_lock.release()
    finally:
        _release_thread_lock(key)


def destination_lock(
    destination: Path,
    *,
    lock_dir: Optional[Path] = None,
    timeout: float = _DEFAULT_DESTINATION_TIMEOUT,
) -> contextlib.AbstractContextManager[Path]:
    """Return a context manager serialising writes to ``destination``."""

    return _category_lock("download", destination, lock_dir=lock_dir, timeout=timeout)


def store_lock(
    path: Path,
    *,
    timeout: float = _DEFAULT_STORE_TIMEOUT,
) -> contextlib.AbstractContextManager[Path]:
    """Return a context manager guarding rewrites of a JSON store file."""

    return _category_lock("store", path, lock_dir=None, timeout=timeout)
