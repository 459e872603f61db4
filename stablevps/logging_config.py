"""
StableVPS Structured Logging
============================

JSON lines in production, plain text in development.

Every handler installed here masks credentials before formatting:
extras whose name looks like a secret (password, token, ...) and
`key=value` pairs of the same kind inside the message text.
"""

import logging
import json
import re
import sys
from datetime import datetime, timezone
from typing import Any


# Context fields passed through `extra=` that end up in the JSON line
EXTRA_FIELDS = ("provider", "instance_id", "user_id", "order_id", "service_id")

REDACTED = "[REDACTED]"
SENSITIVE_KEY_PARTS = ("password", "passwd", "token", "secret", "authinfo", "api_key")

# Attributes every LogRecord carries; anything else came in through `extra=`
RECORD_ATTRIBUTES = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

INLINE_SECRET_PATTERN = re.compile(
    r"\b(\w*(?:" + "|".join(SENSITIVE_KEY_PARTS) + r")\w*)([=:]\s*)([^\s&,;]+)",
    re.IGNORECASE,
)


def is_sensitive(key: str) -> bool:
    key = key.lower()
    return any(part in key for part in SENSITIVE_KEY_PARTS)


def redact(value: Any) -> Any:
    """Mask secret-named keys in nested dicts and lists."""
    if isinstance(value, dict):
        return {k: REDACTED if is_sensitive(str(k)) else redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


def redact_text(text: str) -> str:
    return INLINE_SECRET_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", text)


class RedactingFilter(logging.Filter):
    """Mask credentials on the record itself, so every formatter sees the masked copy."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in list(vars(record).items()):
            if key in RECORD_ATTRIBUTES:
                continue
            setattr(record, key, REDACTED if is_sensitive(key) else redact(value))

        message = record.getMessage()
        masked = redact_text(message)
        if masked != message:
            record.msg, record.args = masked, None
        return True


class JSONFormatter(logging.Formatter):
    """Output log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = redact_text(self.formatException(record.exc_info))

        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        # Ad hoc extras are carried too, masked if the filter did not run
        for key, value in vars(record).items():
            if key in RECORD_ATTRIBUTES or key in log_entry:
                continue
            log_entry[key] = REDACTED if is_sensitive(key) else redact(value)

        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "json"):
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        fmt: "json" for JSON lines, anything else for plain text
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RedactingFilter())

    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))

    root.addHandler(handler)

    # Vendor clients log full request URLs and bodies at INFO
    for name in ("uvicorn.access", "httpx", "httpcore", "stripe"):
        logging.getLogger(name).setLevel(logging.WARNING)
