"""Logging helpers for hookcore."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from pathlib import Path


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created).astimezone().isoformat(timespec="seconds"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logger(name: str, log_dir: Path | None, *, level: int = logging.INFO, stream_level: int | None = None) -> logging.Logger:
    """Attach a JSON file handler and a plain stderr handler once per logger."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(level)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setLevel(stream_level if stream_level is not None else level)
    stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(stream_handler)

    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_dir / "hookcore.log", encoding="utf-8")
        except OSError as exc:
            logger.warning("無法建立 log 檔案：%s", exc)
        else:
            file_handler.setLevel(level)
            file_handler.setFormatter(JsonFormatter())
            logger.addHandler(file_handler)

    return logger
