#!/usr/bin/env python3
"""DepthLink edge agent entrypoint (Raspberry Pi / field device).

Usage:
  python services/edge_agent/agent.py data/samples/locations.csv data/samples/telemetry.csv

Configuration comes from EDGE_* environment variables (optionally layered over a
YAML device profile via EDGE_PROFILE_FILE). See depthlink/config.py.

Exit codes:
  0 telemetry source exhausted (or stopped by signal)
  1 configuration error
  2 identity phase failed
  3 provisioning phase failed
  4 telemetry phase failed
"""

from __future__ import annotations

from depthlink.agent import main


if __name__ == "__main__":
    raise SystemExit(main())
