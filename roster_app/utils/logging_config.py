# roster_app/utils/logging_config.py

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """Render log records as one JSON object per line, keeping ``extra`` fields."""

    def __init__(self, app_name="", app_version=""):
        super().__init__()
        self.app_name = app_name
        self.app_version = app_version

    def format(self, record):
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.app_name:
            payload["app"] = self.app_name
        if self.app_version:
            payload["version"] = self.app_version
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


def _build_formatter(app):
    if str(app.config.get("LOG_FORMAT", "text")).lower() == "json":
        return JsonFormatter(app.config.get("APP_NAME", ""), app.config.get("APP_VERSION", ""))
    return logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")


def setup_logging(app):
    """Attach console and rotating file handlers to the Flask and importer loggers."""
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = _build_formatter(app)

    handlers = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console = logging.StreamHandler(stream=sys.stdout)
        console.setFormatter(formatter)
        handlers.append(console)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        try:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(log_dir, app.config.get("LOG_FILE_NAME", "roster_import.log")),
                maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
                backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
                encoding="utf-8",
            )
        except OSError as exc:
            app.logger.warning("File logging disabled; cannot open log directory %s: %s", log_dir, exc)
        else:
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)

    for logger in (app.logger, logging.getLogger("roster_app")):
        for handler in list(logger.handlers):
            if getattr(handler, "_roster_managed", False):
                logger.removeHandler(handler)
        for handler in handlers:
            handler._roster_managed = True  # type: ignore[attr-defined]
            logger.addHandler(handler)
        logger.setLevel(level)

    app.logger.debug("Logging configured (level=%s, handlers=%d)", level_name, len(handlers))
