import logging
import os
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler

import pytz
from fastapi import FastAPI

from configs import AppConfig, app_config

trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)


def trace_id_generator() -> str:
    return uuid.uuid4().hex


class TraceIdFilter(logging.Filter):
    """把当前请求的 trace id 写入日志记录"""

    def filter(self, record):
        record.trace_id = trace_id_var.get() or "-"
        return True


def _build_handlers(config: AppConfig) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.LOG_FILE:
        log_dir = os.path.dirname(config.LOG_FILE)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                filename=config.LOG_FILE,
                maxBytes=config.LOG_FILE_MAX_SIZE * 1024 * 1024,
                backupCount=config.LOG_FILE_BACKUP_COUNT,
                encoding="utf-8",
            )
        )
    return handlers


def configure_logging(config: AppConfig) -> None:
    formatter = logging.Formatter(config.LOG_FORMAT)
    if config.LOG_TZ:
        timezone = pytz.timezone(config.LOG_TZ)
        formatter.converter = lambda seconds: datetime.fromtimestamp(seconds, tz=timezone).timetuple()

    handlers = _build_handlers(config)
    for handler in handlers:
        handler.addFilter(TraceIdFilter())
        handler.setFormatter(formatter)

    logging.basicConfig(level=config.LOG_LEVEL, handlers=handlers, force=True)

    for name in config.quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


def init_app(app: FastAPI):
    configure_logging(app_config)
