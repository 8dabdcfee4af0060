from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any

ROOT_LOGGER = "tls_cert_checker"

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOG_LEVELS = {
    "disabled": logging.CRITICAL + 10,
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": TRACE,
}

_LEVEL_NAMES = {
    TRACE: "trace",
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "fatal",
}


def _logfmt_value(value: Any) -> str:
    text = str(value)
    if text == "" or any(c in text for c in ' ="\t\n'):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        return f'"{escaped}"'
    return text


class LogfmtFormatter(logging.Formatter):
    """
    Render records as logfmt: `time=... level=... logger=... msg=...` plus any
    pairs passed as `extra={"fields": {...}}`.
    """

    def format(self, record: logging.LogRecord) -> str:
        pairs: list[tuple[str, Any]] = [
            ("time", datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="seconds")),
            ("level", _LEVEL_NAMES.get(record.levelno, record.levelname.lower())),
            ("logger", record.name),
            ("msg", record.getMessage()),
        ]
        fields = getattr(record, "fields", None) or {}
        pairs.extend(fields.items())
        if record.exc_info:
            pairs.append(("error", self.formatException(record.exc_info).splitlines()[-1]))
        return " ".join(f"{k}={_logfmt_value(v)}" for k, v in pairs)


def setup_logging(level: str = "info", stream: IO[str] | None = None) -> logging.Logger:
    """
    Point the package logger at stderr (or `stream`) with logfmt output.
    Calling it again replaces the previous handler.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(LogfmtFormatter())
    logger.addHandler(handler)
    logger.setLevel(LOG_LEVELS[level])
    logger.propagate = False
    return logger
