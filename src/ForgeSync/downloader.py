# === NAVMAP v1 ===
# {
#   "module": "ForgeSync.downloader",
#   "purpose": "Resumable HTTP downloads with retry, backoff with jitter, and post-transfer verification",
#   "sections": [
#     {"id": "policy", "name": "DownloadPolicy", "anchor": "POL", "kind": "api"},
#     {"id": "backoff", "name": "compute_backoff_ms", "anchor": "BCK", "kind": "helpers"},
#     {"id": "downloader", "name": "ResilientDownloader", "anchor": "DWN", "kind": "api"},
#     {"id": "verify", "name": "verify_download", "anchor": "VFY", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Resilient artifact downloader.

Each attempt resumes from the bytes already present at the destination with a
``Range`` request. A server that ignores the range and answers ``200`` forces
the partial file to be discarded so the next attempt starts from zero; a
``416`` on a ranged request, or a ``206`` whose ``Content-Range`` does not
start at the requested offset, is handled the same way. Other 4xx responses are
terminal. Transport errors, 5xx responses and attempts exceeding the
per-attempt deadline are retried by tenacity after
``backoff_base_ms * 2**attempt_index * (1 + U(-jitter, +jitter))`` ms.

Writes to one destination are serialised with :func:`~ForgeSync.locks.destination_lock`
so concurrent tasks never interleave bytes in a resumed file. Verification is
a separate call (:func:`verify_download`) and its failures are never retried.
"""

from __future__ import annotations

import logging
import os
import random
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

import httpx
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
)

from .cancellation import CancellationToken
from .checksums import SUPPORTED_ALGORITHMS, file_digests
from .config.models import DownloadConfig
from .errors import (
    DownloadFailure,
    RetriesExhausted,
    TerminalClientError,
    TransportFailure,
    VerificationFailure,
)
from .locks import destination_lock

__all__ = [
    "DownloadPolicy",
    "DownloadTask",
    "ResilientDownloader",
    "compute_backoff_ms",
    "verify_download",
]

LOGGER = logging.getLogger(__name__)

_CONTENT_RANGE_RE = re.compile(r"^\s*bytes\s+(\d+)-\d+/(?:\d+|\*)\s*$", re.IGNORECASE)


def _content_range_start(value: Optional[str]) -> Optional[int]:
    match = _CONTENT_RANGE_RE.match(value or "")
    return int(match.group(1)) if match else None


@dataclass(frozen=True)
class DownloadPolicy:
    """Retry and resume settings applied to a single download."""

    retries: int = 3
    timeout_ms: int = 60_000
    backoff_base_ms: int = 500
    jitter_factor: float = 0.2
    resume_enabled: bool = True
    chunk_size: int = 1 << 16

    @classmethod
    def from_config(cls, config: DownloadConfig) -> "DownloadPolicy":
        return cls(
            retries=config.retries,
            timeout_ms=config.timeout_ms,
            backoff_base_ms=config.backoff_base_ms,
            jitter_factor=config.jitter_factor,
            resume_enabled=config.resume_enabled,
            chunk_size=config.chunk_size_bytes,
        )


@dataclass(slots=True)
class DownloadTask:
    """Mutable state of one acquisition; returned to the caller on success."""

    url: str
    destination: Path
    policy: DownloadPolicy
    attempt_count: int = 0
    resume_offset: int = 0
    bytes_transferred: int = 0
    size: int = 0


def compute_backoff_ms(
    attempt_index: int,
    base_ms: float,
    jitter_factor: float,
    rng: Optional[random.Random] = None,
) -> float:
    """Return the delay before the retry following attempt ``attempt_index`` (zero based)."""
    jitter = 0.0
    if jitter_factor > 0:
        jitter = (rng or random).uniform(-jitter_factor, jitter_factor)
    return max(0.0, base_ms * (2**attempt_index) * (1.0 + jitter))


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, DownloadFailure) and exc.retryable


class ResilientDownloader:
    """Stream remote assets to disk with resume and retry.

    Args:
        client: Optional pre-configured :class:`httpx.Client`; tests pass one
            built on :class:`httpx.MockTransport`.
        sleep: Sleep function used between attempts (seconds).
        rng: Random source for backoff jitter.
        clock: Monotonic clock used for the per-attempt deadline.
        lock_dir: Directory holding destination lock files.
        user_agent: ``User-Agent`` header for owned clients.
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
        lock_dir: Optional[Path] = None,
        user_agent: str = "ForgeSync/0.1",
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(
            follow_redirects=True, headers={"User-Agent": user_agent}
        )
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock
        self.lock_dir = Path(lock_dir) if lock_dir is not None else None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "ResilientDownloader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- public API ----------------------------------------------------------

    def download(
        self,
        url: str,
        destination: Path,
        policy: Optional[DownloadPolicy] = None,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> DownloadTask:
        """Download ``url`` to ``destination``.

        Returns:
            The completed :class:`DownloadTask`.

        Raises:
            TerminalClientError: On a 4xx response (single attempt).
            DownloadCancelled: When ``cancel_token`` is cancelled.
            RetriesExhausted: When every attempt failed with a retryable error.
        """
        policy = policy or DownloadPolicy()
        task = DownloadTask(url=url, destination=Path(destination), policy=policy)
        task.destination.parent.mkdir(parents=True, exist_ok=True)

        retrying = Retrying(
            stop=stop_after_attempt(max(1, policy.retries)),
            wait=self._wait_for(policy),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=_log_before_sleep(task),
            reraise=False,
        )
        with destination_lock(task.destination, lock_dir=self.lock_dir):
            try:
                retrying(self._attempt, task, cancel_token)
            except RetryError as exc:
                last_error = exc.last_attempt.exception()
                LOGGER.error(
                    "download failed",
                    extra={
                        "stage": "download",
                        "url": url,
                        "attempt": task.attempt_count,
                        "extra_fields": {"error": str(last_error)},
                    },
                )
                raise RetriesExhausted(
                    f"Download of {url} failed after {task.attempt_count} attempts: {last_error}",
                    attempts=task.attempt_count,
                    last_error=last_error,
                ) from last_error

        task.size = task.destination.stat().st_size
        LOGGER.info(
            "download complete",
            extra={
                "stage": "download",
                "url": url,
                "attempt": task.attempt_count,
                "extra_fields": {
                    "destination": str(task.destination),
                    "size": task.size,
                    "resumed_from": task.resume_offset,
                },
            },
        )
        return task

    # -- internals -----------------------------------------------------------

    def _wait_for(self, policy: DownloadPolicy) -> Callable[[RetryCallState], float]:
        def _wait(retry_state: RetryCallState) -> float:
            delay_ms = compute_backoff_ms(
                retry_state.attempt_number - 1,
                policy.backoff_base_ms,
                policy.jitter_factor,
                self._rng,
            )
            return delay_ms / 1000.0

        return _wait

    def _attempt(self, task: DownloadTask, cancel_token: Optional[CancellationToken]) -> None:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        task.attempt_count += 1
        policy = task.policy
        destination = task.destination

        offset = 0
        if policy.resume_enabled and destination.exists():
            offset = destination.stat().st_size
        task.resume_offset = offset
        headers: Dict[str, str] = {}
        if offset > 0:
            headers["Range"] = f"bytes={offset}-"

        timeout_s = policy.timeout_ms / 1000.0
        deadline = self._clock() + timeout_s
        try:
            with self._client.stream(
                "GET", task.url, headers=headers, timeout=httpx.Timeout(timeout_s)
            ) as response:
                self._check_status(response, task, offset)
                mode = "ab" if offset > 0 else "wb"
                with destination.open(mode) as handle:
                    for chunk in response.iter_bytes(policy.chunk_size):
                        if cancel_token is not None:
                            cancel_token.raise_if_cancelled()
                        if self._clock() > deadline:
                            raise TransportFailure(
                                f"Attempt exceeded {policy.timeout_ms} ms for {task.url}"
                            )
                        if chunk:
                            handle.write(chunk)
                            task.bytes_transferred += len(chunk)
                    handle.flush()
                    os.fsync(handle.fileno())
        except httpx.TimeoutException as exc:
            raise TransportFailure(f"Timed out fetching {task.url}: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransportFailure(f"Transport error fetching {task.url}: {exc}") from exc

    def _check_status(self, response: httpx.Response, task: DownloadTask, offset: int) -> None:
        status = response.status_code
        if status == 416 and offset > 0:
            task.destination.unlink(missing_ok=True)
            raise TransportFailure(
                f"Range {offset}- not satisfiable for {task.url}; restarting", status_code=status
            )
        if 400 <= status < 500:
            raise TerminalClientError(f"HTTP {status} for {task.url}", status_code=status)
        if status >= 500:
            raise TransportFailure(f"HTTP {status} for {task.url}", status_code=status)
        if status not in (200, 206):
            raise DownloadFailure(f"Unexpected HTTP {status} for {task.url}", status_code=status)
        if offset > 0 and status != 206:
            task.destination.unlink(missing_ok=True)
            raise TransportFailure(
                f"Server ignored range request for {task.url}; restarting from zero",
                status_code=status,
            )
        if offset > 0:
            content_range = response.headers.get("Content-Range")
            if _content_range_start(content_range) != offset:
                task.destination.unlink(missing_ok=True)
                raise TransportFailure(
                    f"Content-Range {content_range!r} does not start at {offset} for {task.url};"
                    " restarting from zero",
                    status_code=status,
                )


def _log_before_sleep(task: DownloadTask) -> Callable[[RetryCallState], None]:
    def _log(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        LOGGER.warning(
            "download attempt failed; retrying",
            extra={
                "stage": "download",
                "url": task.url,
                "attempt": retry_state.attempt_number,
                "extra_fields": {"error": str(exc), "sleep_s": round(delay, 3)},
            },
        )

    return _log


def verify_download(
    path: Path,
    *,
    expected_size: Optional[int] = None,
    checksums: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Verify a completed transfer against its expected size and checksums.

    Args:
        path: Downloaded file.
        expected_size: Expected size in bytes, when known.
        checksums: Known ``{algorithm: hexdigest}`` values.

    Returns:
        Digests computed for the supported algorithms present in ``checksums``.

    Raises:
        VerificationFailure: ``reason`` is ``"missing-file"``, ``"size-mismatch"``
            or ``"checksum-mismatch"``.
    """
    target = Path(path)
    if not target.is_file():
        raise VerificationFailure(f"{target} does not exist", reason="missing-file")
    actual_size = target.stat().st_size
    if expected_size is not None and actual_size != expected_size:
        raise VerificationFailure(
            f"Size mismatch for {target.name}: expected {expected_size}, got {actual_size}",
            reason="size-mismatch",
            expected=str(expected_size),
            actual=str(actual_size),
        )
    expected = {
        algo.lower(): value.lower()
        for algo, value in (checksums or {}).items()
        if algo.lower() in SUPPORTED_ALGORITHMS and value
    }
    digests = file_digests(target, expected.keys())
    for algorithm, value in expected.items():
        if digests[algorithm] != value:
            raise VerificationFailure(
                f"{algorithm} mismatch for {target.name}",
                reason="checksum-mismatch",
                expected=value,
                actual=digests[algorithm],
            )
    return digests
