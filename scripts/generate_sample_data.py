"""Generate sample input files for the edge agent.

Outputs files under ./data/samples by default.

Files:
- locations.csv (header + id,latitude,longitude; row order = station index)
- telemetry.csv (header + stationId,sensorType,timestamp,depth)
- telemetry_bad_station.csv (includes a row for a station with no location)

Usage:
  python scripts/generate_sample_data.py --stations 10 --rows 100 --out-dir data/samples
"""

from __future__ import annotations

import argparse
import csv
import random
from pathlib import Path


def build_locations(stations: int, *, seed: int = 42) -> list[tuple[int, float, float]]:
    rng = random.Random(seed)
    out = []
    for i in range(stations):
        lat = round(39.810492 + rng.random() * 0.5, 6)
        lon = round(-98.556061 + rng.random() * 0.5, 6)
        out.append((i + 1, lat, lon))
    return out


def build_telemetry(rows: int, stations: int, *, start_ts: int = 1700000000, seed: int = 42) -> list[tuple[int, str, int, float]]:
    rng = random.Random(seed)
    out = []
    ts = start_ts
    for _ in range(rows):
        station_id = rng.randint(1, stations)
        depth = round(rng.uniform(5.0, 50.0), 2)
        out.append((station_id, "depth", ts, depth))
        ts += rng.randint(30, 300)
    return out


def _write_csv(path: Path, header: list[str], rows: list[tuple]) -> None:
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(header)
        w.writerows(rows)


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate sample location + telemetry CSVs.")
    parser.add_argument("--stations", type=int, default=10)
    parser.add_argument("--rows", type=int, default=100)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--out-dir", default="data/samples")
    args = parser.parse_args()

    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    locations = build_locations(args.stations, seed=args.seed)
    telemetry = build_telemetry(args.rows, args.stations, seed=args.seed)

    _write_csv(out_dir / "locations.csv", ["id", "latitude", "longitude"], locations)
    _write_csv(out_dir / "telemetry.csv", ["stationId", "sensorType", "timestamp", "depth"], telemetry)

    bad = list(telemetry[:5])
    bad.insert(2, (args.stations + 1, "depth", telemetry[0][2] + 1, 12.5))
    _write_csv(out_dir / "telemetry_bad_station.csv", ["stationId", "sensorType", "timestamp", "depth"], bad)

    print(f"Wrote sample files to {out_dir.resolve()}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
