# === NAVMAP v1 ===
# {
#   "module": "ForgeSync.logging_utils",
#   "purpose": "Console and JSONL logging for enrichment and acquisition runs",
#   "sections": [
#     {"id": "mask", "name": "mask_sensitive_data", "anchor": "MSK", "kind": "helpers"},
#     {"id": "formatter", "name": "JSONFormatter", "anchor": "FMT", "kind": "api"},
#     {"id": "retention", "name": "Log Retention", "anchor": "RET", "kind": "helpers"},
#     {"id": "setup", "name": "setup_logging", "anchor": "SET", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Structured logging helpers shared across ForgeSync components."""

from __future__ import annotations

import gzip
import json
import logging
import re
import sys
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Optional

__all__ = ["JSONFormatter", "mask_sensitive_data", "setup_logging"]

ROOT_LOGGER_NAME = "ForgeSync"
_SENSITIVE_KEYS = {"authorization", "api_key", "apikey", "token", "secret", "password"}
_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE)
_CONTEXT_FIELDS = ("stage", "install_id", "folder", "catalog_guid", "url", "attempt")


def mask_sensitive_data(payload: Dict[str, object]) -> Dict[str, object]:
    """Return a copy of ``payload`` with credential-like fields masked."""

    def _mask(value: object, key_hint: Optional[str] = None) -> object:
        if key_hint is not None and key_hint.lower() in _SENSITIVE_KEYS:
            return "***masked***"
        if isinstance(value, dict):
            return {str(k): _mask(v, str(k)) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_mask(item) for item in value]
        if isinstance(value, str):
            return _BEARER_RE.sub(r"\1***masked***", value)
        return value

    return {key: _mask(value, key) for key, value in payload.items()}


class JSONFormatter(logging.Formatter):
    """Formatter emitting masked JSON log entries."""

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        payload: Dict[str, object] = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if hasattr(record, "extra_fields") and isinstance(record.extra_fields, dict):
            payload.update(record.extra_fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(payload), default=str)


def _compress_old_log(path: Path) -> None:
    compressed_path = path.with_suffix(path.suffix + ".gz")
    with path.open("rb") as source, gzip.open(compressed_path, "wb") as target:
        target.write(source.read())
    path.unlink(missing_ok=True)


def _cleanup_logs(log_dir: Path, retention_days: int) -> List[str]:
    """Compress stale ``*.jsonl`` logs and delete expired archives."""

    actions: List[str] = []
    now = datetime.now(timezone.utc)
    retention_delta = timedelta(days=retention_days)
    for file in log_dir.glob("*.jsonl"):
        mtime = datetime.fromtimestamp(file.stat().st_mtime, tz=timezone.utc)
        if now - mtime > retention_delta:
            _compress_old_log(file)
            actions.append(f"Compressed {file.name}")
    for file in log_dir.glob("*.jsonl.gz"):
        mtime = datetime.fromtimestamp(file.stat().st_mtime, tz=timezone.utc)
        if now - mtime > retention_delta:
            file.unlink(missing_ok=True)
            actions.append(f"Deleted expired archive {file.name}")
    return actions


def setup_logging(
    *,
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    retention_days: int = 30,
    max_log_size_mb: int = 50,
    propagate: bool = False,
) -> logging.Logger:
    """Configure the ``ForgeSync`` logger.

    A console handler is always installed on stderr. When ``log_dir`` is given,
    a rotating JSONL handler is added alongside it and stale logs are compressed
    according to ``retention_days``. Calling this again replaces the handlers
    installed by a previous call.
    """

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_forgesync_managed", False):
            logger.removeHandler(handler)
            if isinstance(handler, logging.StreamHandler) and getattr(
                handler, "stream", None
            ) in (sys.stdout, sys.stderr):
                continue
            handler.close()

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    stream_handler._forgesync_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    if log_dir is not None:
        resolved_dir = Path(log_dir).expanduser()
        resolved_dir.mkdir(parents=True, exist_ok=True)
        _cleanup_logs(resolved_dir, retention_days)
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        file_handler = RotatingFileHandler(
            resolved_dir / f"forgesync-{today}.jsonl",
            maxBytes=int(max_log_size_mb * 1024 * 1024),
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler._forgesync_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    logger.propagate = propagate
    return logger
