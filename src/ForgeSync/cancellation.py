"""Cooperative cancellation primitives shared by download tasks.

Batch acquisitions run several transfers concurrently. A
:class:`CancellationToken` is checked by the downloader between attempts and
between chunks, so a cancelled transfer stops at a clean boundary and leaves
its partial file on disk for a later resume. :class:`CancellationTokenGroup`
broadcasts cancellation to every transfer in one batch.
"""

from __future__ import annotations

import threading

from .errors import DownloadCancelled

__all__ = ["CancellationToken", "CancellationTokenGroup"]


class CancellationToken:
    """Thread-safe token for cooperative task cancellation.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel()
        >>> token.is_cancelled()
        True
    """

    def __init__(self) -> None:
        self._is_cancelled = threading.Event()

    def cancel(self) -> None:
        """Signal that cancellation has been requested."""
        self._is_cancelled.set()

    def is_cancelled(self) -> bool:
        return self._is_cancelled.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise :class:`DownloadCancelled` once cancellation was requested."""
        if self._is_cancelled.is_set():
            raise DownloadCancelled()


class CancellationTokenGroup:
    """A group of tokens cancelled together, e.g. every item of one batch."""

    def __init__(self) -> None:
        self._tokens: list[CancellationToken] = []
        self._lock = threading.Lock()
        self._cancelled = False

    def create_token(self) -> CancellationToken:
        """Create a token that belongs to this group.

        Tokens created after :meth:`cancel_all` start out cancelled.
        """
        token = CancellationToken()
        with self._lock:
            self._tokens.append(token)
            if self._cancelled:
                token.cancel()
        return token

    def cancel_all(self) -> None:
        with self._lock:
            self._cancelled = True
            for token in self._tokens:
                token.cancel()

    def is_cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
