from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml


GLOBAL_BOOTSTRAP_HOST = "global.azure-devices-provisioning.net"

_ALLOWED_SEND_FAILURE_POLICIES: Tuple[str, ...] = ("continue", "stop")
_ALLOWED_SENSOR_MODES: Tuple[str, ...] = ("file", "simulated")

# Profile keys and the python type each one must parse to.
_PROFILE_KEYS: Dict[str, type] = {
    "id_scope": str,
    "bootstrap_host": str,
    "certificate_file": str,
    "registration_id": str,
    "request_timeout_seconds": int,
    "provisioning_poll_seconds": int,
    "provisioning_max_polls": int,
    "twin_poll_seconds": int,
    "telemetry_delay_seconds": int,
    "send_failure_policy": str,
    "sensor_mode": str,
    "simulated_records": int,
    "seed": int,
    "log_level": str,
    "log_format": str,
}


def normalize_send_failure_policy(policy: str) -> str:
    """Normalize the telemetry send-failure policy.

    Modes:
    - continue: log the failed send and move on to the next record
    - stop:     terminate the telemetry loop and propagate the failure
    """

    p = (policy or "").strip().lower()
    if p in ("stop", "fail", "fail_fast", "fail-fast", "abort"):
        return "stop"
    return "continue"


def normalize_sensor_mode(mode: str) -> str:
    """Normalize sensor mode (file|simulated)."""

    m = (mode or "").strip().lower()
    if m in ("sim", "simulated", "simulate", "demo"):
        return "simulated"
    return "file"


def validate_profile_dict(d: Any) -> Dict[str, Any]:
    if d is None:
        return {}
    if not isinstance(d, dict):
        raise ValueError("Device profile YAML must parse to an object/dict.")

    out: Dict[str, Any] = {}
    for key, value in d.items():
        if key not in _PROFILE_KEYS:
            raise ValueError(f"Unknown device profile key {key!r}. Allowed: {sorted(_PROFILE_KEYS)}")
        if value is None:
            continue

        expected = _PROFILE_KEYS[key]
        if expected is int:
            if isinstance(value, bool):
                raise ValueError(f"Device profile field {key!r} must be an integer.")
            try:
                value = int(value)
            except Exception as e:
                raise ValueError(f"Device profile field {key!r} must be an integer.") from e
        else:
            value = str(value).strip()

        out[key] = value

    policy = out.get("send_failure_policy")
    if policy is not None and policy.lower() not in _ALLOWED_SEND_FAILURE_POLICIES:
        raise ValueError(f"send_failure_policy must be one of {list(_ALLOWED_SEND_FAILURE_POLICIES)}")

    mode = out.get("sensor_mode")
    if mode is not None and mode.lower() not in _ALLOWED_SENSOR_MODES:
        raise ValueError(f"sensor_mode must be one of {list(_ALLOWED_SENSOR_MODES)}")

    delay = out.get("telemetry_delay_seconds")
    if delay is not None and delay <= 0:
        raise ValueError("telemetry_delay_seconds must be a positive integer.")

    return out


def parse_device_profile_yaml(raw_yaml: str) -> Dict[str, Any]:
    """Parse and validate a device profile YAML string."""

    if not (raw_yaml or "").strip():
        return {}
    return validate_profile_dict(yaml.safe_load(raw_yaml))


def load_device_profile(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        raise FileNotFoundError(f"Device profile not found at {path}")

    with open(path, "r", encoding="utf-8") as f:
        return parse_device_profile_yaml(f.read())


@dataclass(frozen=True)
class AgentConfig:
    # Provisioning
    id_scope: str
    bootstrap_host: str
    certificate_file: str
    certificate_password: str
    registration_id: str

    # Transport
    request_timeout_seconds: int
    provisioning_poll_seconds: int
    provisioning_max_polls: int
    twin_poll_seconds: int

    # Telemetry
    telemetry_delay_seconds: int
    send_failure_policy: str  # continue|stop
    sensor_mode: str  # file|simulated
    simulated_records: int
    seed: Optional[int]

    # Logging
    log_level: str
    log_format: str  # json|console

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "AgentConfig":
        env = os.environ if environ is None else environ

        profile: Dict[str, Any] = {}
        profile_path = str(env.get("EDGE_PROFILE_FILE", "") or "").strip()
        if profile_path:
            profile = load_device_profile(profile_path)

        def _env(name: str, key: str, default: str = "") -> str:
            fallback = profile.get(key, default)
            v = env.get(name)
            if v is None or not str(v).strip():
                return str(fallback).strip()
            return str(v).strip()

        def _env_int(name: str, key: str, default: int) -> int:
            fallback = int(profile.get(key, default))
            try:
                return int(_env(name, key, str(fallback)))
            except Exception:
                return fallback

        seed: Optional[int] = None
        seed_raw = _env("EDGE_SEED", "seed", "")
        if seed_raw:
            try:
                seed = int(seed_raw)
            except Exception:
                seed = None

        return AgentConfig(
            id_scope=_env("EDGE_ID_SCOPE", "id_scope"),
            bootstrap_host=_env("EDGE_BOOTSTRAP_HOST", "bootstrap_host", GLOBAL_BOOTSTRAP_HOST),
            certificate_file=_env("EDGE_CERTIFICATE_FILE", "certificate_file"),
            # Never read from the profile file: keep secrets in the environment / secret store.
            certificate_password=str(env.get("EDGE_CERTIFICATE_PASSWORD", "") or ""),
            registration_id=_env("EDGE_REGISTRATION_ID", "registration_id"),
            request_timeout_seconds=max(1, _env_int("EDGE_REQUEST_TIMEOUT_SECONDS", "request_timeout_seconds", 30)),
            provisioning_poll_seconds=max(1, _env_int("EDGE_PROVISIONING_POLL_SECONDS", "provisioning_poll_seconds", 2)),
            provisioning_max_polls=max(1, _env_int("EDGE_PROVISIONING_MAX_POLLS", "provisioning_max_polls", 30)),
            twin_poll_seconds=max(1, _env_int("EDGE_TWIN_POLL_SECONDS", "twin_poll_seconds", 10)),
            telemetry_delay_seconds=max(1, _env_int("EDGE_TELEMETRY_DELAY_SECONDS", "telemetry_delay_seconds", 1)),
            send_failure_policy=normalize_send_failure_policy(
                _env("EDGE_SEND_FAILURE_POLICY", "send_failure_policy", "continue")
            ),
            sensor_mode=normalize_sensor_mode(_env("EDGE_SENSOR_MODE", "sensor_mode", "file")),
            simulated_records=max(0, _env_int("EDGE_SIMULATED_RECORDS", "simulated_records", 100)),
            seed=seed,
            log_level=_env("LOG_LEVEL", "log_level", "INFO").upper(),
            log_format=_env("LOG_FORMAT", "log_format", "json").lower(),
        )
