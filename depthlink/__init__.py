"""DepthLink edge agent.

Field-side agent for water-depth stations:
- certificate-based provisioning against a bootstrap endpoint
- desired/reported configuration sync ("twin")
- paced telemetry streaming joined with static station coordinates

This package is intentionally small and "boring" for readability.
"""

__version__ = "0.1.0"
