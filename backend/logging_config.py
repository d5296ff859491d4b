"""
Structured logging for LicenseGate.

One JSON object per line: `ts`, `level`, `logger`, `event` (a snake_case name
such as "license_issued") plus whatever context the call site passes via
`extra=`.

    logger = get_logger(__name__)
    logger.info("license_issued", extra={"license_id": 12, "origin": "automatic"})

License keys are logged through mask_key().  Context keys listed in
REDACTED_FIELDS are replaced before serialisation, so a stray session token or
password in `extra` never reaches the log sink.
"""
import json
import logging
import sys
from datetime import datetime, timezone

REDACTED_FIELDS = frozenset(("password", "session_token", "nonce", "token", "signature"))

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "passlib")


class JsonLineFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        line = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS:
                continue
            line[key] = "[redacted]" if key in REDACTED_FIELDS else value
        if record.exc_info:
            line["exc"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Install the JSON handler on the root logger; a no-op if one is already there."""
    root = logging.getLogger()
    if any(isinstance(h.formatter, JsonLineFormatter) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonLineFormatter())
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def mask_key(license_key: str | None) -> str | None:
    """ZYRA-AB12-CD34-EF56 → ZYRA-AB12-****-****"""
    if not license_key:
        return license_key
    parts = license_key.split("-")
    if len(parts) != 4:
        return "****"
    return "-".join(parts[:2] + ["****", "****"])
