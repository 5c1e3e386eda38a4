"""Resumable downloads over ``httpx.MockTransport``."""

from __future__ import annotations

import hashlib
import itertools
import random
from pathlib import Path
from typing import List

import httpx
import pytest

from ForgeSync.cancellation import CancellationToken
from ForgeSync.errors import (
    DownloadCancelled,
    RetriesExhausted,
    TerminalClientError,
    TransportFailure,
    VerificationFailure,
)
from ForgeSync.downloader import (
    DownloadPolicy,
    ResilientDownloader,
    compute_backoff_ms,
    verify_download,
)

PAYLOAD = b"hello world! this archive is complete"
URL = "https://cdn.example/mods/BotCallsigns-2.0.3.zip"


def _policy(**overrides) -> DownloadPolicy:
    values = dict(retries=3, timeout_ms=5_000, backoff_base_ms=500, jitter_factor=0.0, chunk_size=1)
    values.update(overrides)
    return DownloadPolicy(**values)


def _range_start(request: httpx.Request) -> int:
    header = request.headers.get("Range")
    if not header:
        return 0
    return int(header.split("=", 1)[1].rstrip("-"))


def _ranged_response(request: httpx.Request) -> httpx.Response:
    start = _range_start(request)
    if start:
        headers = {"Content-Range": f"bytes {start}-{len(PAYLOAD) - 1}/{len(PAYLOAD)}"}
        return httpx.Response(206, content=PAYLOAD[start:], headers=headers)
    return httpx.Response(200, content=PAYLOAD)


def _downloader(handler, sleeps: List[float]) -> ResilientDownloader:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ResilientDownloader(client, sleep=sleeps.append, rng=random.Random(7))


def test_fresh_download(tmp_path: Path) -> None:
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return _ranged_response(request)

    sleeps: List[float] = []
    task = _downloader(handler, sleeps).download(URL, tmp_path / "out.zip", _policy())

    assert (tmp_path / "out.zip").read_bytes() == PAYLOAD
    assert task.attempt_count == 1
    assert task.size == len(PAYLOAD)
    assert "Range" not in requests[0].headers
    assert sleeps == []


def test_resumes_from_existing_partial_file(tmp_path: Path) -> None:
    destination = tmp_path / "out.zip"
    destination.write_bytes(PAYLOAD[:10])
    ranges: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        ranges.append(request.headers.get("Range", ""))
        return _ranged_response(request)

    task = _downloader(handler, []).download(URL, destination, _policy())

    assert ranges == ["bytes=10-"]
    assert task.resume_offset == 10
    assert destination.read_bytes() == PAYLOAD


def test_mid_stream_failure_resumes_on_next_attempt(tmp_path: Path) -> None:
    ranges: List[str] = []

    def broken_body():
        yield PAYLOAD[:13]
        raise httpx.ReadError("connection reset")

    def handler(request: httpx.Request) -> httpx.Response:
        ranges.append(request.headers.get("Range", ""))
        if len(ranges) == 1:
            return httpx.Response(200, content=broken_body())
        return _ranged_response(request)

    sleeps: List[float] = []
    task = _downloader(handler, sleeps).download(URL, tmp_path / "out.zip", _policy())

    assert ranges == ["", "bytes=13-"]
    assert (tmp_path / "out.zip").read_bytes() == PAYLOAD
    assert task.attempt_count == 2
    assert sleeps == [0.5]


def test_client_error_is_terminal(tmp_path: Path) -> None:
    calls = itertools.count()

    def handler(request: httpx.Request) -> httpx.Response:
        next(calls)
        return httpx.Response(404)

    sleeps: List[float] = []
    with pytest.raises(TerminalClientError) as excinfo:
        _downloader(handler, sleeps).download(URL, tmp_path / "out.zip", _policy())

    assert excinfo.value.status_code == 404
    assert next(calls) == 1
    assert sleeps == []


def test_server_errors_exhaust_retries_with_exponential_backoff(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    sleeps: List[float] = []
    with pytest.raises(RetriesExhausted) as excinfo:
        _downloader(handler, sleeps).download(URL, tmp_path / "out.zip", _policy())

    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.last_error, TransportFailure)
    assert excinfo.value.status_code == 503
    assert sleeps == [0.5, 1.0]


def test_ignored_range_restarts_from_zero(tmp_path: Path) -> None:
    destination = tmp_path / "out.zip"
    destination.write_bytes(b"stale bytes")
    ranges: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        ranges.append(request.headers.get("Range", ""))
        return httpx.Response(200, content=PAYLOAD)

    _downloader(handler, []).download(URL, destination, _policy())

    assert ranges == ["bytes=11-", ""]
    assert destination.read_bytes() == PAYLOAD


@pytest.mark.parametrize("content_range", [f"bytes 0-{len(PAYLOAD) - 1}/{len(PAYLOAD)}", None])
def test_partial_response_from_wrong_offset_restarts_from_zero(tmp_path: Path, content_range) -> None:
    destination = tmp_path / "out.zip"
    destination.write_bytes(PAYLOAD[:10])
    ranges: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        ranges.append(request.headers.get("Range", ""))
        if request.headers.get("Range"):
            headers = {"Content-Range": content_range} if content_range else {}
            return httpx.Response(206, content=PAYLOAD, headers=headers)
        return httpx.Response(200, content=PAYLOAD)

    task = _downloader(handler, []).download(URL, destination, _policy())

    assert ranges == ["bytes=10-", ""]
    assert destination.read_bytes() == PAYLOAD
    assert task.size == len(PAYLOAD)


def test_unsatisfiable_range_restarts_from_zero(tmp_path: Path) -> None:
    destination = tmp_path / "out.zip"
    destination.write_bytes(PAYLOAD + b"extra")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers.get("Range"):
            return httpx.Response(416)
        return httpx.Response(200, content=PAYLOAD)

    task = _downloader(handler, []).download(URL, destination, _policy())

    assert destination.read_bytes() == PAYLOAD
    assert task.attempt_count == 2


def test_cancelled_token_sends_no_request(tmp_path: Path) -> None:
    calls = itertools.count()

    def handler(request: httpx.Request) -> httpx.Response:
        next(calls)
        return httpx.Response(200, content=PAYLOAD)

    token = CancellationToken()
    token.cancel()
    with pytest.raises(DownloadCancelled):
        _downloader(handler, []).download(URL, tmp_path / "out.zip", _policy(), cancel_token=token)
    assert next(calls) == 0


def test_attempt_deadline_counts_as_retryable(tmp_path: Path) -> None:
    ticks = itertools.count(step=100)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=PAYLOAD)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    downloader = ResilientDownloader(client, sleep=lambda _: None, clock=lambda: float(next(ticks)))

    with pytest.raises(RetriesExhausted) as excinfo:
        downloader.download(URL, tmp_path / "out.zip", _policy(retries=2, timeout_ms=1_000))
    assert excinfo.value.attempts == 2


def test_backoff_is_exponential_with_bounded_jitter() -> None:
    assert compute_backoff_ms(0, 500, 0.0) == 500
    assert compute_backoff_ms(3, 500, 0.0) == 4000
    rng = random.Random(1)
    for attempt in range(5):
        delay = compute_backoff_ms(attempt, 100, 0.2, rng)
        nominal = 100 * 2**attempt
        assert nominal * 0.8 <= delay <= nominal * 1.2


def test_verify_download(tmp_path: Path) -> None:
    path = tmp_path / "out.zip"
    path.write_bytes(PAYLOAD)
    sha = hashlib.sha256(PAYLOAD).hexdigest()

    digests = verify_download(path, expected_size=len(PAYLOAD), checksums={"SHA256": sha.upper()})
    assert digests["sha256"] == sha

    with pytest.raises(VerificationFailure) as size_error:
        verify_download(path, expected_size=1)
    assert size_error.value.reason == "size-mismatch"

    with pytest.raises(VerificationFailure) as checksum_error:
        verify_download(path, checksums={"sha256": "0" * 64})
    assert checksum_error.value.reason == "checksum-mismatch"

    with pytest.raises(VerificationFailure) as missing:
        verify_download(tmp_path / "absent.zip")
    assert missing.value.reason == "missing-file"


def test_policy_from_config() -> None:
    from ForgeSync.config.models import DownloadConfig

    policy = DownloadPolicy.from_config(DownloadConfig(retries=5, chunk_size_bytes=1024))
    assert (policy.retries, policy.chunk_size, policy.resume_enabled) == (5, 1024, True)
