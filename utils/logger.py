"""Centralized logging with rotation; structured ``extra`` fields are rendered into each line."""
import logging
import os
from logging.handlers import RotatingFileHandler

from flask import has_request_context, request

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_RESERVED = set(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime", "request_path", "request_method", "extras"}


class RequestContextFilter(logging.Filter):
    """Attach the active request line and the caller's ``extra`` fields to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            record.request_method = request.method
            record.request_path = request.path
        else:
            record.request_method = "-"
            record.request_path = "-"
        extras = {k: v for k, v in record.__dict__.items() if k not in _RESERVED and not k.startswith("_")}
        record.extras = " ".join(f"{k}={v!r}" for k, v in sorted(extras.items()))
        return True


def init_logging(app) -> logging.Logger:
    log_dir = app.config.get("LOG_DIR") or os.path.join(app.instance_path, "logs")
    level_name = (app.config.get("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(module)s:%(lineno)d | %(request_method)s %(request_path)s | %(message)s | %(extras)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    context_filter = RequestContextFilter()

    handlers: list[logging.Handler] = []
    log_path = None
    if not app.config.get("TESTING"):
        os.makedirs(log_dir, exist_ok=True)
        log_path = os.path.join(log_dir, "civicwatch.log")
        file_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8")
        handlers.append(file_handler)
    handlers.append(logging.StreamHandler())

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)

    logger = logging.getLogger(app.name)
    logger.setLevel(level)
    logger.handlers = handlers
    logger.propagate = False

    app.logger.handlers = logger.handlers
    app.logger.setLevel(level)

    logger.info("Logging initialized", extra={"log_path": log_path, "level": level_name})
    return logger
