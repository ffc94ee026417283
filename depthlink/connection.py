from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .messages import TelemetryMessage
from .transport import ConfigCallback, DeviceTransport, TransportError

logger = logging.getLogger(__name__)


class SendFailure(RuntimeError):
    """Raised when a telemetry message could not be dispatched.

    The connection stays usable: the caller decides whether to continue.
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class SendAck:
    status_code: Optional[int]
    message_id: Optional[str]


class ConnectionManager:
    """Long-lived session against the assigned endpoint."""

    def __init__(self, transport: DeviceTransport, *, device_id: str = "") -> None:
        self._transport = transport
        self.device_id = device_id
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> "ConnectionManager":
        if not self._open:
            self._transport.open()
            self._open = True
            logger.info("Device session opened")
        return self

    def send(self, message: TelemetryMessage) -> SendAck:
        if not self._open:
            raise SendFailure("device session is not open")

        payload = message.to_json()
        try:
            resp = self._transport.send(payload.encode("utf-8"), message.properties())
        except TransportError as e:
            raise SendFailure(f"send failed: {e}", status_code=e.status_code) from e

        logger.info("Sent message: %s", payload, extra={"station_id": message.station_id})
        resp = resp or {}
        return SendAck(status_code=resp.get("status_code"), message_id=resp.get("message_id"))

    # Twin plumbing (used by TwinSyncManager)

    def subscribe_config_change(self, callback: ConfigCallback) -> None:
        self._transport.subscribe_config_change(callback)

    def get_full_config(self) -> Dict[str, Any]:
        return self._transport.get_full_config()

    def report_config(self, payload: Dict[str, Any]) -> None:
        self._transport.report_config(payload)

    def close(self) -> None:
        if self._open:
            self._open = False
            self._transport.close()
            logger.info("Device session closed")

    def __enter__(self) -> "ConnectionManager":
        return self.open()

    def __exit__(self, *exc: object) -> None:
        self.close()
