from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Union

from .locations import LocationRecord
from .sensors import SensorRecord


# Depth (in source units) above which a reading is flagged via the alert attribute.
DEPTH_ALERT_THRESHOLD = 30.0

# Attribute name is kept for downstream routing rules; it flags depth, not temperature.
ALERT_PROPERTY = "temperatureAlert"


def format_timestamp(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    s = ts.isoformat()
    if s.endswith("+00:00"):
        s = s[: -len("+00:00")] + "Z"
    return s


def parse_timestamp(value: str) -> datetime:
    v = (value or "").strip()
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    ts = datetime.fromisoformat(v)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class TelemetryMessage:
    station_id: int
    depth: float
    time_stamp: datetime
    latitude: float
    longitude: float

    @property
    def depth_alert(self) -> bool:
        return self.depth > DEPTH_ALERT_THRESHOLD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stationId": self.station_id,
            "depth": self.depth,
            "timeStamp": format_timestamp(self.time_stamp),
            "latitude": self.latitude,
            "longitude": self.longitude,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), allow_nan=False)

    def properties(self) -> Dict[str, str]:
        return {ALERT_PROPERTY: "true" if self.depth_alert else "false"}


def build_message(record: SensorRecord, location: LocationRecord) -> TelemetryMessage:
    return TelemetryMessage(
        station_id=record.station_id,
        depth=float(record.depth),
        time_stamp=record.timestamp,
        latitude=float(location.latitude),
        longitude=float(location.longitude),
    )


def parse_message(payload: Union[str, bytes]) -> TelemetryMessage:
    """Parse a serialized telemetry payload back into a TelemetryMessage."""

    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")

    d = json.loads(payload)
    if not isinstance(d, dict):
        raise ValueError("Telemetry payload must be a JSON object.")

    missing = [k for k in ("stationId", "depth", "timeStamp", "latitude", "longitude") if k not in d]
    if missing:
        raise ValueError(f"Telemetry payload missing fields: {missing}")

    return TelemetryMessage(
        station_id=int(d["stationId"]),
        depth=float(d["depth"]),
        time_stamp=parse_timestamp(str(d["timeStamp"])),
        latitude=float(d["latitude"]),
        longitude=float(d["longitude"]),
    )
