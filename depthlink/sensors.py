"""Sensor record sources.

TelemetrySource is a single-pass cursor over a line-oriented CSV file:

  stationId,<unused>,timestampUnixSeconds,depth

One header line is always discarded. An empty line or end-of-file terminates the
cursor; the file is closed and every later call returns None.

SimulatedDepthSource yields seeded random readings with the same interface, for
bring-up without a data file.
"""

from __future__ import annotations

import csv
import math
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import IO, Iterator, Optional

from .locations import LocationRecord, LocationTable


class MalformedRecord(ValueError):
    """Raised for a telemetry row that cannot be parsed. The cursor stays usable."""

    def __init__(self, message: str, *, line_number: int):
        super().__init__(message)
        self.line_number = line_number


@dataclass(frozen=True)
class SensorRecord:
    station_id: int
    depth: float
    timestamp: datetime
    location: Optional[LocationRecord] = None

    @property
    def timestamp_unix(self) -> int:
        return int(self.timestamp.timestamp())


def parse_sensor_row(line: str, *, line_number: int = 0) -> SensorRecord:
    values = next(csv.reader([line]))
    if len(values) < 4:
        raise MalformedRecord(
            f"line {line_number}: expected stationId,?,timestamp,depth, got {line.strip()!r}",
            line_number=line_number,
        )
    try:
        station_id = int(values[0])
        ts = int(values[2])
        depth = float(values[3])
        timestamp = datetime.fromtimestamp(ts, tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as e:
        raise MalformedRecord(f"line {line_number}: {e}", line_number=line_number) from e

    # NaN/Infinity have no JSON encoding.
    if not math.isfinite(depth):
        raise MalformedRecord(f"line {line_number}: depth must be finite, got {values[3]!r}", line_number=line_number)

    return SensorRecord(station_id=station_id, depth=depth, timestamp=timestamp)


class TelemetrySource:
    def __init__(self, path: str) -> None:
        self.path = path
        self._f: Optional[IO[str]] = open(path, "r", newline="", encoding="utf-8")
        self._line_number = 1
        self._f.readline()  # header

    @classmethod
    def open_and_skip_header(cls, path: str) -> "TelemetrySource":
        return cls(path)

    @property
    def exhausted(self) -> bool:
        return self._f is None

    def close(self) -> None:
        if self._f is not None:
            self._f.close()
            self._f = None

    def next_record(self) -> Optional[SensorRecord]:
        """Return the next record, or None once the stream has ended."""

        if self._f is None:
            return None

        line = self._f.readline()
        self._line_number += 1
        if not line or not line.strip():
            self.close()
            return None

        return parse_sensor_row(line, line_number=self._line_number)

    def __iter__(self) -> Iterator[SensorRecord]:
        return self

    def __next__(self) -> SensorRecord:
        rec = self.next_record()
        if rec is None:
            raise StopIteration
        return rec

    def __enter__(self) -> "TelemetrySource":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class SimulatedDepthSource:
    """Bounded stream of simulated depth readings for stations in a location table."""

    def __init__(
        self,
        locations: LocationTable,
        *,
        count: int = 100,
        seed: Optional[int] = None,
        min_depth: float = 0.0,
        max_depth: float = 60.0,
    ) -> None:
        self._station_count = len(locations)
        self._remaining = max(0, int(count)) if self._station_count else 0
        self._rng = random.Random(seed)
        self._min_depth = min_depth
        self._max_depth = max_depth

    @property
    def exhausted(self) -> bool:
        return self._remaining <= 0

    def close(self) -> None:
        self._remaining = 0

    def next_record(self) -> Optional[SensorRecord]:
        if self._remaining <= 0:
            return None
        self._remaining -= 1

        return SensorRecord(
            station_id=self._rng.randint(1, self._station_count),
            depth=round(self._rng.uniform(self._min_depth, self._max_depth), 2),
            timestamp=datetime.now(timezone.utc).replace(microsecond=0),
        )

    def __iter__(self) -> Iterator[SensorRecord]:
        return self

    def __next__(self) -> SensorRecord:
        rec = self.next_record()
        if rec is None:
            raise StopIteration
        return rec

    def __enter__(self) -> "SimulatedDepthSource":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
