"""Desired/reported configuration sync ("twin").

The remote side holds a desired configuration; the device applies what it
understands and writes back the effective values as reported state.

Recognized keys:
- telemetryDelay: string-encoded positive integer (seconds between telemetry sends)

Rules:
- absent or null key: keep the current value
- present but empty / non-numeric / non-positive: ConfigParseError, logged, value kept
- every apply (initial read or push) is followed by a reported-state write
"""

from __future__ import annotations

import json
import logging
import threading
from enum import Enum
from typing import Any, Dict, Optional

from .transport import TransportError

logger = logging.getLogger(__name__)

TELEMETRY_DELAY_KEY = "telemetryDelay"
DEFAULT_TELEMETRY_DELAY_SECONDS = 1


class ConfigParseError(ValueError):
    """Raised for a desired configuration value that cannot be applied."""


def parse_telemetry_delay(raw: Any) -> int:
    if isinstance(raw, bool):
        raise ConfigParseError(f"{TELEMETRY_DELAY_KEY} must be a positive integer, got {raw!r}")
    if isinstance(raw, int):
        value = raw
    else:
        s = str(raw).strip()
        if not s:
            raise ConfigParseError(f"{TELEMETRY_DELAY_KEY} is empty")
        try:
            value = int(s)
        except ValueError as e:
            raise ConfigParseError(f"{TELEMETRY_DELAY_KEY} must be a positive integer, got {raw!r}") from e
    if value <= 0:
        raise ConfigParseError(f"{TELEMETRY_DELAY_KEY} must be a positive integer, got {raw!r}")
    return value


class ConfigurationState:
    """Process-wide configuration shared between the twin callback and the telemetry loop."""

    def __init__(self, telemetry_delay_seconds: int = DEFAULT_TELEMETRY_DELAY_SECONDS) -> None:
        if telemetry_delay_seconds <= 0:
            raise ValueError("telemetry_delay_seconds must be a positive integer")
        self._lock = threading.Lock()
        self._telemetry_delay_seconds = int(telemetry_delay_seconds)

    @property
    def telemetry_delay_seconds(self) -> int:
        with self._lock:
            return self._telemetry_delay_seconds

    def set_telemetry_delay(self, seconds: int) -> None:
        if isinstance(seconds, bool) or not isinstance(seconds, int) or seconds <= 0:
            raise ValueError("telemetry_delay_seconds must be a positive integer")
        with self._lock:
            self._telemetry_delay_seconds = seconds

    def reported(self) -> Dict[str, str]:
        return {TELEMETRY_DELAY_KEY: str(self.telemetry_delay_seconds)}


class TwinState(str, Enum):
    UNINITIALIZED = "uninitialized"
    SYNCED = "synced"


class TwinSyncManager:
    def __init__(self, connection: Any, state: ConfigurationState) -> None:
        self._connection = connection
        self._state = state
        self._apply_lock = threading.Lock()
        self._applied_version: Optional[int] = None
        self.twin_state = TwinState.UNINITIALIZED

    def start(self) -> Dict[str, str]:
        """Subscribe to pushes, then pull and apply the full remote configuration once.

        Returns the reported payload written after the initial apply.
        """

        self._connection.subscribe_config_change(self.on_desired_changed)

        twin = self._connection.get_full_config() or {}
        desired = twin.get("desired")
        if not isinstance(desired, dict):
            desired = {}
        return self.apply_desired(desired)

    def on_desired_changed(self, desired: Dict[str, Any]) -> None:
        self.apply_desired(desired if isinstance(desired, dict) else {})

    def apply_desired(self, desired: Dict[str, Any]) -> Dict[str, str]:
        with self._apply_lock:
            visible = {k: v for k, v in desired.items() if not str(k).startswith("$")}
            logger.info("Desired configuration changed: %s", json.dumps(visible, default=str))

            version = desired.get("$version")
            if isinstance(version, bool) or not isinstance(version, int):
                version = None

            # A full-twin read can return after a newer push was applied.
            stale = version is not None and self._applied_version is not None and version <= self._applied_version
            if stale:
                logger.info(
                    "Ignoring stale desired configuration (version %d, applied %d)", version, self._applied_version
                )
            elif version is not None:
                self._applied_version = version

            raw: Optional[Any] = None if stale else visible.get(TELEMETRY_DELAY_KEY)
            if raw is not None:
                try:
                    self._state.set_telemetry_delay(parse_telemetry_delay(raw))
                except ConfigParseError as e:
                    logger.warning(
                        "Ignoring desired configuration value: %s",
                        e,
                        extra={"telemetry_delay": self._state.telemetry_delay_seconds},
                    )

            self.twin_state = TwinState.SYNCED
            reported = self._state.reported()

            try:
                self._connection.report_config(reported)
                logger.info("Reported configuration: %s", json.dumps(reported))
            except TransportError as e:
                logger.warning("Reported configuration update failed: %s", e)

            return reported
