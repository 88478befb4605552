"""Project logger with per-request correlation id."""

from __future__ import annotations

import logging
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path

from chatbridge.config.settings import settings


LOG_DIR = Path("logs")
LOG_FILE = LOG_DIR / "chatbridge.log"
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5

# 当前请求的关联 id，由路由在进入时设置
request_id_var: ContextVar[str] = ContextVar("chatbridge_request_id", default="-")


class _RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get()
        return True


def _level_from(raw: str) -> int:
    name = str(raw or "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _build_logger() -> logging.Logger:
    root = logging.getLogger("chatbridge")
    if root.handlers:
        return root

    level = _level_from(settings.log_level)
    root.setLevel(level)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | req=%(request_id)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    request_filter = _RequestIdFilter()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    console.addFilter(request_filter)
    root.addHandler(console)

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(request_filter)
        root.addHandler(file_handler)
    except OSError:
        # logs 目录不可写（只读容器）时只输出到 stderr
        pass

    root.propagate = False
    return root


logger = _build_logger()


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the chatbridge namespace."""

    return logger.getChild(name)
