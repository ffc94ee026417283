"""Logging configuration.

Goals:
- Structured JSON logs by default (journald / log shipper friendly)
- Automatically include the assigned device id once provisioning succeeds
- Minimal dependencies (stdlib only)

Device correlation:
- The agent does not know its device id until the bootstrap endpoint assigns one.
- After assignment, `device_id_var` is set and every subsequent log line carries it.
"""

from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Context var set by the agent after provisioning
device_id_var: ContextVar[Optional[str]] = ContextVar("device_id", default=None)

# Structured fields passed via `extra=` that the JSON formatter promotes to top level.
_EXTRA_FIELDS = (
    "device_id",
    "phase",
    "registration_id",
    "station_id",
    "telemetry_delay",
    "thumbprint",
)


class _ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        device_id = device_id_var.get()
        if device_id and getattr(record, "device_id", None) is None:
            setattr(record, "device_id", device_id)
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in _EXTRA_FIELDS:
            v = getattr(record, key, None)
            if v is not None:
                payload[key] = v

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def setup_logging(*, log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure root logging.

    Idempotent: safe to call multiple times.
    """

    level = getattr(logging, (log_level or "INFO").upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler()
    if (log_format or "json").lower() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    handler.addFilter(_ContextFilter())

    root.addHandler(handler)

    # Quiet some noisy libs (keep errors).
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))
