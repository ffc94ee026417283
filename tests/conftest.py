"""Pytest configuration.

We add the repo root to sys.path so `import depthlink` works without an
editable install.

Shared helpers:
- throwaway EC certificates (no network, no files unless a test writes them)
- in-memory fake transports standing in for the fleet endpoint
"""

from __future__ import annotations

import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from cryptography import x509  # noqa: E402
from cryptography.hazmat.primitives import hashes  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import ec  # noqa: E402
from cryptography.x509.oid import NameOID  # noqa: E402

from depthlink.identity import Identity  # noqa: E402
from depthlink.transport import DeviceTransport, TransportError  # noqa: E402


def make_cert(common_name: str) -> Tuple[x509.Certificate, Any]:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(key, hashes.SHA256())
    )
    return cert, key


@pytest.fixture
def device_identity() -> Identity:
    cert, key = make_cert("station-gauge-01")
    return Identity(certificate=cert, private_key=key)


class FakeProvisioningTransport:
    def __init__(self, state: Optional[Dict[str, Any]] = None, *, error: Optional[Exception] = None) -> None:
        self.state = state if state is not None else {
            "status": "assigned",
            "assignedHub": "hub.example.net",
            "deviceId": "station-gauge-01",
        }
        self.error = error
        self.calls: List[str] = []

    def register(self, registration_id: str) -> Dict[str, Any]:
        self.calls.append(registration_id)
        if self.error is not None:
            raise self.error
        return dict(self.state)


class FakeDeviceTransport(DeviceTransport):
    def __init__(self, *, desired: Optional[Dict[str, Any]] = None, fail_sends: Tuple[int, ...] = ()) -> None:
        self.desired = dict(desired or {})
        self.fail_sends = set(fail_sends)
        self.opened = False
        self.closed = False
        self.sent: List[Tuple[bytes, Dict[str, str]]] = []
        self.reported: List[Dict[str, Any]] = []
        self.callback: Any = None
        self.events: List[str] = []
        self._send_count = 0
        self.on_send: Any = None

    def open(self) -> None:
        self.opened = True
        self.events.append("open")

    def send(self, payload: bytes, attributes: Dict[str, str]) -> Dict[str, Any]:
        self._send_count += 1
        if self._send_count in self.fail_sends:
            raise TransportError("send failed (503): unavailable", status_code=503)
        self.sent.append((payload, dict(attributes)))
        self.events.append("send")
        if self.on_send is not None:
            self.on_send(len(self.sent))
        return {"status_code": 204, "message_id": f"m{self._send_count}"}

    def subscribe_config_change(self, callback: Any) -> None:
        self.callback = callback
        self.events.append("subscribe")

    def get_full_config(self) -> Dict[str, Any]:
        self.events.append("get_full_config")
        return {"desired": dict(self.desired), "reported": {}}

    def report_config(self, payload: Dict[str, Any]) -> None:
        self.reported.append(dict(payload))
        self.events.append("report")

    def close(self) -> None:
        self.closed = True
        self.events.append("close")


class RecordingEvent(threading.Event):
    """Stop event that records requested pauses instead of sleeping."""

    def __init__(self) -> None:
        super().__init__()
        self.waits: List[float] = []

    def wait(self, timeout: Optional[float] = None) -> bool:
        self.waits.append(timeout if timeout is not None else -1)
        return self.is_set()


def write_lines(path: Path, lines: List[str]) -> str:
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return str(path)
