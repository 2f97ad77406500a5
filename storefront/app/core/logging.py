import json
import logging
from typing import Optional

from storefront.app.core.config import settings

# Loggers that install their own handlers; pointed at ours instead
_ALIGNED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "httpx")


def _make_console_formatter() -> logging.Formatter:
    return logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


class JsonFormatter(logging.Formatter):
    """One JSON object per line; cart fields ride along when passed via `extra=`."""

    _EXTRA_KEYS = ("cart_key", "product_id", "op")

    def format(self, record: logging.LogRecord) -> str:
        doc = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in self._EXTRA_KEYS:
            if hasattr(record, key):
                doc[key] = getattr(record, key)
        if record.exc_info:
            doc["exc"] = self.formatException(record.exc_info)
        return json.dumps(doc, ensure_ascii=False, default=str)


def setup_logging(
    level: Optional[str] = None,
    fmt: Optional[str] = None,
) -> None:
    """
    Initialize root logging once.
    Falls back to settings (LOG_LEVEL / LOG_FORMAT = text|json).
    """
    level_name = (level or settings.log_level or "INFO").upper()
    fmt = (fmt or settings.log_format or "text").lower()

    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO
    formatter = JsonFormatter() if fmt == "json" else _make_console_formatter()

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(log_level)

    for name in _ALIGNED_LOGGERS:
        lg = logging.getLogger(name)
        lg.handlers = [handler]
        lg.propagate = False
        # httpx logs every request at INFO
        lg.setLevel(max(log_level, logging.WARNING) if name == "httpx" else log_level)
