import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

# Attributes passed through `extra=` that are copied into the JSON payload.
_CONTEXT_FIELDS = ("backtest_id", "symbol", "stage")

# Third-party loggers that are chatty at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore", "yfinance", "urllib3")


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record.

    Records logged with ``extra={"backtest_id": ...}`` carry the id through to
    the payload so a single run can be followed across the pipeline stages.
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), default=str)


def configure_logging(level: str = "INFO") -> None:
    """Send all records to stdout as JSON at `level`."""

    root = logging.getLogger()
    root.setLevel(level.upper())

    # Replace handlers so repeated app creation (tests, reload) does not duplicate output.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
