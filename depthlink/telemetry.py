from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional

from .config import normalize_send_failure_policy
from .connection import ConnectionManager, SendFailure
from .locations import LocationTable, LookupOutOfRange
from .messages import build_message
from .sensors import MalformedRecord
from .twin import ConfigurationState

logger = logging.getLogger(__name__)


@dataclass
class LoopStats:
    sent: int = 0
    rejected: int = 0
    failed: int = 0
    cancelled: bool = False


class TelemetryLoop:
    """Read -> join -> format -> send -> pause, until the source is exhausted.

    The pause re-reads the configured delay on every iteration, so a twin update
    takes effect on the next pause without restarting the loop. The pause is an
    Event wait: `stop()` interrupts it immediately.

    Policies:
    - out-of-range station id or malformed row: reject-and-log, no pause
    - send failure: "continue" logs and keeps pacing; "stop" re-raises SendFailure
    """

    def __init__(
        self,
        *,
        source: Any,
        locations: LocationTable,
        connection: ConnectionManager,
        state: ConfigurationState,
        stop_event: Optional[threading.Event] = None,
        send_failure_policy: str = "continue",
    ) -> None:
        self._source = source
        self._locations = locations
        self._connection = connection
        self._state = state
        self._stop = stop_event if stop_event is not None else threading.Event()
        self._send_failure_policy = normalize_send_failure_policy(send_failure_policy)

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> LoopStats:
        stats = LoopStats()
        logger.info("Start reading and sending device telemetry")

        try:
            while not self._stop.is_set():
                try:
                    record = self._source.next_record()
                except MalformedRecord as e:
                    stats.rejected += 1
                    logger.warning("Rejected telemetry row: %s", e)
                    continue

                if record is None:
                    break

                try:
                    location = self._locations.for_station(record.station_id)
                except LookupOutOfRange as e:
                    stats.rejected += 1
                    logger.warning(
                        "Rejected record for unknown station: %s",
                        e,
                        extra={"station_id": record.station_id},
                    )
                    continue

                record = dataclasses.replace(record, location=location)
                message = build_message(record, location)

                try:
                    self._connection.send(message)
                    stats.sent += 1
                except SendFailure as e:
                    stats.failed += 1
                    if self._send_failure_policy == "stop":
                        logger.error("Send failed; stopping telemetry loop: %s", e)
                        raise
                    logger.error("Send failed; continuing with next record: %s", e)

                delay = self._state.telemetry_delay_seconds
                if self._stop.wait(delay):
                    break
        finally:
            self._source.close()

        stats.cancelled = self._stop.is_set()
        logger.info(
            "Telemetry loop finished: sent=%d rejected=%d failed=%d cancelled=%s",
            stats.sent,
            stats.rejected,
            stats.failed,
            stats.cancelled,
        )
        return stats
