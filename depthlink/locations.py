from __future__ import annotations

import csv
import logging
import math
from dataclasses import dataclass
from typing import Iterable, Iterator, Tuple

logger = logging.getLogger(__name__)


class LookupOutOfRange(LookupError):
    """Raised when a station id has no matching location row."""

    def __init__(self, *, index: int, size: int):
        super().__init__(f"location index {index} out of range (table has {size} rows)")
        self.index = index
        self.size = size


@dataclass(frozen=True)
class LocationRecord:
    latitude: float
    longitude: float


class LocationTable:
    """Static station coordinates, indexed 0..N-1 in load order.

    Source file: one header line, then rows of `id,latitude,longitude`.
    The id column is positional only: row order defines the index.
    An empty line ends the table.
    """

    def __init__(self, records: Iterable[LocationRecord]) -> None:
        self._records: Tuple[LocationRecord, ...] = tuple(records)

    @classmethod
    def load(cls, path: str) -> "LocationTable":
        records = []
        with open(path, "r", newline="", encoding="utf-8") as f:
            f.readline()  # header
            for line_no, line in enumerate(f, start=2):
                if not line.strip():
                    break
                values = next(csv.reader([line]))
                if len(values) < 3:
                    raise ValueError(f"{path}:{line_no}: expected id,latitude,longitude, got {line.strip()!r}")
                try:
                    latitude, longitude = float(values[1]), float(values[2])
                except ValueError as e:
                    raise ValueError(f"{path}:{line_no}: invalid coordinates {line.strip()!r}") from e
                if not (math.isfinite(latitude) and math.isfinite(longitude)):
                    raise ValueError(f"{path}:{line_no}: coordinates must be finite, got {line.strip()!r}")
                records.append(LocationRecord(latitude=latitude, longitude=longitude))

        logger.info("Loaded %d station locations from %s", len(records), path)
        return cls(records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[LocationRecord]:
        return iter(self._records)

    def lookup(self, index: int) -> LocationRecord:
        if index < 0 or index >= len(self._records):
            raise LookupOutOfRange(index=index, size=len(self._records))
        return self._records[index]

    def for_station(self, station_id: int) -> LocationRecord:
        """Look up a station by its 1-based id as it appears in telemetry rows."""

        return self.lookup(station_id - 1)
