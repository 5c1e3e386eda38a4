"""Install-root listing and bounded directory walks."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, List, Optional, Protocol, runtime_checkable

__all__ = ["FilesystemInstallScanner", "InstallScanner", "walk_files"]

LOGGER = logging.getLogger(__name__)

PathPredicate = Callable[[Path], bool]


def walk_files(
    root: Path,
    *,
    max_files: int = 200,
    max_depth: int = 6,
    predicate: Optional[PathPredicate] = None,
) -> List[Path]:
    """Collect files below ``root`` depth-first, bounded by count and depth.

    Entries are visited in sorted order so results are deterministic.
    Unreadable directories and entries are skipped silently; symlinked
    directories are not followed.

    Args:
        root: Directory to walk. A missing directory yields an empty list.
        max_files: Stop once this many matching files were collected.
        max_depth: Maximum directory depth below ``root`` (``root`` is depth 0).
        predicate: Optional filter applied to each file path.

    Returns:
        Matching file paths.
    """
    found: List[Path] = []

    def _recurse(current: Path, depth: int) -> None:
        if len(found) >= max_files or depth > max_depth:
            return
        try:
            entries = sorted(os.scandir(current), key=lambda entry: entry.name)
        except OSError:
            return
        for entry in entries:
            if len(found) >= max_files:
                return
            path = Path(entry.path)
            try:
                if entry.is_dir(follow_symlinks=False):
                    _recurse(path, depth + 1)
                elif entry.is_file():
                    if predicate is None or predicate(path):
                        found.append(path)
            except OSError:
                continue

    _recurse(Path(root), 0)
    return found


@runtime_checkable
class InstallScanner(Protocol):
    """Host capability exposing the managed install root."""

    def list_install_folders(self) -> List[str]:
        ...

    def install_path(self, folder_name: str) -> Path:
        ...

    def walk_files(
        self,
        root: Path,
        *,
        max_files: int,
        max_depth: int,
        predicate: Optional[PathPredicate] = None,
    ) -> List[Path]:
        ...


class FilesystemInstallScanner:
    """:class:`InstallScanner` backed by a local directory of install folders."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def list_install_folders(self) -> List[str]:
        """Return the names of the immediate sub-directories of the install root."""
        try:
            entries = sorted(os.scandir(self.root), key=lambda entry: entry.name)
        except OSError as exc:
            LOGGER.warning(
                "install root unreadable",
                extra={"stage": "scan", "folder": str(self.root), "extra_fields": {"error": str(exc)}},
            )
            return []
        names: List[str] = []
        for entry in entries:
            try:
                if entry.is_dir():
                    names.append(entry.name)
            except OSError:
                continue
        return names

    def install_path(self, folder_name: str) -> Path:
        return self.root / folder_name

    def walk_files(
        self,
        root: Path,
        *,
        max_files: int,
        max_depth: int,
        predicate: Optional[PathPredicate] = None,
    ) -> List[Path]:
        return walk_files(root, max_files=max_files, max_depth=max_depth, predicate=predicate)
