"""JSON logging, credential masking, and destination locking."""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import List

import pytest

from ForgeSync import locks
from ForgeSync.locks import destination_lock, lock_file_for
from ForgeSync.logging_utils import ROOT_LOGGER_NAME, JSONFormatter, mask_sensitive_data, setup_logging


@pytest.fixture
def forgesync_logger():
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True


def test_mask_sensitive_data() -> None:
    masked = mask_sensitive_data(
        {"api_key": "abc", "headers": {"Authorization": "Bearer xyz"}, "note": "sent Bearer tok123"}
    )
    assert masked["api_key"] == "***masked***"
    assert masked["headers"]["Authorization"] == "***masked***"
    assert masked["note"] == "sent Bearer ***masked***"


def test_json_formatter_includes_context_fields() -> None:
    record = logging.LogRecord("ForgeSync.matching", logging.INFO, __file__, 1, "matched", None, None)
    record.stage = "match"
    record.folder = "BotCallsigns"
    record.extra_fields = {"confidence": 95}

    payload = json.loads(JSONFormatter().format(record))

    assert payload["message"] == "matched"
    assert payload["stage"] == "match"
    assert payload["folder"] == "BotCallsigns"
    assert payload["confidence"] == 95


def test_setup_logging_writes_jsonl(tmp_path: Path, forgesync_logger: logging.Logger) -> None:
    setup_logging(level="INFO", log_dir=tmp_path)
    logging.getLogger("ForgeSync.enrich").info(
        "enrichment finished", extra={"stage": "enrich", "extra_fields": {"matched": 2}}
    )
    for handler in forgesync_logger.handlers:
        handler.flush()

    (log_file,) = tmp_path.glob("forgesync-*.jsonl")
    line = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
    assert line["stage"] == "enrich" and line["matched"] == 2

    setup_logging(level="DEBUG")
    assert len(forgesync_logger.handlers) == 1
    assert forgesync_logger.level == logging.DEBUG


def test_lock_file_defaults_next_to_target(tmp_path: Path) -> None:
    lock = lock_file_for("download", tmp_path / "a" / "mod.zip")
    assert lock.parent == (tmp_path / "a" / ".locks").resolve()
    assert lock.name.startswith("download.")


def test_destination_lock_serialises_threads(tmp_path: Path) -> None:
    target = tmp_path / "mod.zip"
    events: List[str] = []

    def worker(name: str) -> None:
        with destination_lock(target):
            events.append(f"{name}-in")
            time.sleep(0.05)
            events.append(f"{name}-out")

    threads = [threading.Thread(target=worker, args=(n,)) for n in ("a", "b")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(events) == 4
    assert events[0][0] == events[1][0]
    assert events[2][0] == events[3][0]


def test_destination_lock_is_reentrant_and_pruned(tmp_path: Path) -> None:
    target = tmp_path / "mod.zip"

    with destination_lock(target) as outer:
        with destination_lock(target) as inner:
            assert inner == outer
        assert any(str(outer) in key for key in locks._thread_locks)

    assert not any(str(outer) in key for key in locks._thread_locks)


def test_reentry_keeps_other_threads_out(tmp_path: Path) -> None:
    target = tmp_path / "mod.zip"
    entered = threading.Event()
    events: List[str] = []

    def contender() -> None:
        entered.wait()
        with destination_lock(target):
            events.append("contender")

    thread = threading.Thread(target=contender)
    thread.start()
    with destination_lock(target):
        with destination_lock(target):
            entered.set()
            time.sleep(0.05)
        time.sleep(0.05)
        events.append("owner")
    thread.join()

    assert events == ["owner", "contender"]
