"""
Logging for the API process, the callback recorder and the consumption timer.

Plain `logging` configured once through dictConfig. Console output by
default; `LOG_JSON=true` switches to one JSON object per line, with any
`extra=` fields (meter, units, transaction ids) carried as top-level keys.
"""

import json
import logging
import logging.config
from typing import Optional

CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

# LogRecord's own attributes; the rest of a record's __dict__ came from `extra=`
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, value) for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {"format": CONSOLE_FORMAT},
            "json": {"()": JsonFormatter},
        },
        "handlers": {
            "stream": {
                "class": "logging.StreamHandler",
                "formatter": "json" if json_logs else "console",
            },
        },
        "root": {"handlers": ["stream"], "level": level.upper()},
        "loggers": {"uvicorn.access": {"level": "WARNING"}},
    })


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)


__all__ = ["JsonFormatter", "configure_logging", "get_logger"]
