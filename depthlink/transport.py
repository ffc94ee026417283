"""HTTP transport adapters.

The agent core treats the transport as an injected capability:

- ProvisioningTransport.register(registration_id) -> registration state dict
- DeviceTransport: open / send / subscribe_config_change / get_full_config /
  report_config / close

The HTTP implementations below use `requests` with mutual TLS (client cert + key
files materialized from the device identity). Default TLS verification stays on.

Provisioning (bootstrap host):
- PUT  https://<host>/<id_scope>/registrations/<id>/register
- GET  https://<host>/<id_scope>/registrations/<id>/operations/<operationId>
  (polled while status == "assigning")

Device session (assigned endpoint):
- POST  /devices/<id>/messages/events                (attributes as iothub-app-* headers)
- GET   /devices/<id>/twin                           -> {"desired": {...}, "reported": {...}}
- PATCH /devices/<id>/twin/properties/reported
- GET   /devices/<id>/twin/properties/desired?minVersion=N   (long poll; 204 = no change)
"""

from __future__ import annotations

import contextvars
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

PROVISIONING_API_VERSION = "2021-06-01"
DEVICE_API_VERSION = "2020-03-13"

ConfigCallback = Callable[[Dict[str, Any]], None]


class TransportError(RuntimeError):
    """Raised when a transport call fails (network error or non-2xx response)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransportAuthError(TransportError):
    pass


def _http_session(cert_files: Optional[Tuple[str, str]]) -> requests.Session:
    s = requests.Session()
    # Keep default TLS verification enabled.
    if cert_files:
        s.cert = cert_files
    return s


def _check(r: requests.Response, what: str) -> requests.Response:
    if r.status_code in (401, 403):
        raise TransportAuthError(f"{what} auth failed: {r.status_code}", status_code=r.status_code)
    if not r.ok:
        raise TransportError(f"{what} failed ({r.status_code}): {r.text[:200]}", status_code=r.status_code)
    return r


def _json_body(r: requests.Response, what: str) -> Dict[str, Any]:
    try:
        data = r.json()
    except Exception:
        raise TransportError(f"{what} response was not JSON", status_code=r.status_code)
    if not isinstance(data, dict):
        raise TransportError(f"{what} response was not a JSON object", status_code=r.status_code)
    return data


def _payload_version(desired: Dict[str, Any]) -> Optional[int]:
    v = desired.get("$version")
    if isinstance(v, bool) or not isinstance(v, int):
        return None
    return v


def _retry_after_seconds(r: requests.Response, default: float) -> float:
    raw = (r.headers.get("Retry-After") or "").strip()
    try:
        return max(0.0, float(raw)) if raw else float(default)
    except ValueError:
        return float(default)


class ProvisioningTransport:
    """Registration round trip against the bootstrap endpoint."""

    def __init__(
        self,
        *,
        bootstrap_host: str,
        id_scope: str,
        cert_files: Optional[Tuple[str, str]],
        timeout_seconds: int = 30,
        poll_seconds: int = 2,
        max_polls: int = 30,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not id_scope:
            raise ValueError("EDGE_ID_SCOPE must be set for provisioning")
        self.base_url = f"https://{bootstrap_host.strip().rstrip('/')}/{id_scope}"
        self.timeout_seconds = timeout_seconds
        self.poll_seconds = poll_seconds
        self.max_polls = max_polls
        self._session = session or _http_session(cert_files)
        self._sleep = sleep

    def register(self, registration_id: str) -> Dict[str, Any]:
        reg_url = f"{self.base_url}/registrations/{registration_id}"
        params = {"api-version": PROVISIONING_API_VERSION}

        try:
            r = self._session.put(
                f"{reg_url}/register",
                params=params,
                json={"registrationId": registration_id},
                timeout=self.timeout_seconds,
            )
            body = _json_body(_check(r, "register"), "register")

            polls = 0
            while str(body.get("status") or "").lower() == "assigning":
                if polls >= self.max_polls:
                    raise TransportError(f"registration still assigning after {polls} polls")
                operation_id = str(body.get("operationId") or "")
                if not operation_id:
                    raise TransportError("register response missing operationId")

                polls += 1
                self._sleep(_retry_after_seconds(r, self.poll_seconds))
                r = self._session.get(
                    f"{reg_url}/operations/{operation_id}",
                    params=params,
                    timeout=self.timeout_seconds,
                )
                body = _json_body(_check(r, "operation status"), "operation status")
        except requests.RequestException as e:
            raise TransportError(str(e)) from e

        state = dict(body.get("registrationState") or {})
        if not state.get("status"):
            state["status"] = body.get("status")
        return state


class DeviceTransport:
    """Session capability used by the connection manager and the twin manager.

    Subclasses implement the six operations; callbacks registered through
    `subscribe_config_change` may be invoked from another thread.
    """

    def open(self) -> None:
        raise NotImplementedError

    def send(self, payload: bytes, attributes: Dict[str, str]) -> Dict[str, Any]:
        raise NotImplementedError

    def subscribe_config_change(self, callback: ConfigCallback) -> None:
        raise NotImplementedError

    def get_full_config(self) -> Dict[str, Any]:
        raise NotImplementedError

    def report_config(self, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class HttpDeviceTransport(DeviceTransport):
    def __init__(
        self,
        *,
        endpoint: str,
        device_id: str,
        cert_files: Optional[Tuple[str, str]],
        timeout_seconds: int = 30,
        twin_poll_seconds: int = 10,
        session_factory: Callable[[Optional[Tuple[str, str]]], requests.Session] = _http_session,
    ) -> None:
        endpoint = endpoint.strip().rstrip("/")
        if not endpoint.startswith(("http://", "https://")):
            endpoint = f"https://{endpoint}"
        self.device_url = f"{endpoint}/devices/{device_id}"
        self.device_id = device_id
        self.timeout_seconds = timeout_seconds
        self.twin_poll_seconds = twin_poll_seconds

        self._cert_files = cert_files
        self._session_factory = session_factory
        self._session: Optional[requests.Session] = None

        self._callback: Optional[ConfigCallback] = None
        self._desired_version = 0
        self._version_lock = threading.Lock()
        self._stop = threading.Event()
        self._poller: Optional[threading.Thread] = None

    def _headers(self) -> Dict[str, str]:
        return {"X-Device-Id": self.device_id}

    def _require_session(self) -> requests.Session:
        if self._session is None:
            raise TransportError("device session is not open")
        return self._session

    def _note_desired_version(self, desired: Dict[str, Any]) -> bool:
        """Record a desired-state version; return True if it is newer than the last seen."""

        v = _payload_version(desired)
        if v is None:
            return True
        with self._version_lock:
            if v <= self._desired_version:
                return False
            self._desired_version = v
            return True

    def open(self) -> None:
        if self._session is None:
            self._session = self._session_factory(self._cert_files)
            self._stop.clear()

    def send(self, payload: bytes, attributes: Dict[str, str]) -> Dict[str, Any]:
        session = self._require_session()
        headers = self._headers()
        headers["Content-Type"] = "application/json"
        for k, v in (attributes or {}).items():
            headers[f"iothub-app-{k}"] = str(v)

        try:
            r = session.post(
                f"{self.device_url}/messages/events",
                params={"api-version": DEVICE_API_VERSION},
                data=payload,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            raise TransportError(str(e)) from e

        _check(r, "send")
        return {"status_code": r.status_code, "message_id": r.headers.get("iothub-messageid")}

    def get_full_config(self) -> Dict[str, Any]:
        session = self._require_session()
        try:
            r = session.get(
                f"{self.device_url}/twin",
                params={"api-version": DEVICE_API_VERSION},
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            raise TransportError(str(e)) from e

        twin = _json_body(_check(r, "twin read"), "twin read")
        desired = twin.get("desired")
        if isinstance(desired, dict):
            self._note_desired_version(desired)
        return twin

    def report_config(self, payload: Dict[str, Any]) -> None:
        session = self._require_session()
        try:
            r = session.patch(
                f"{self.device_url}/twin/properties/reported",
                params={"api-version": DEVICE_API_VERSION},
                json=payload,
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            raise TransportError(str(e)) from e
        _check(r, "reported update")

    def subscribe_config_change(self, callback: ConfigCallback) -> None:
        self._require_session()
        self._callback = callback
        if self._poller is None or not self._poller.is_alive():
            # Run in a copy of the caller context so log lines keep the device id.
            ctx = contextvars.copy_context()
            self._poller = threading.Thread(
                target=ctx.run, args=(self._poll_desired,), name="twin-desired-poll", daemon=True
            )
            self._poller.start()

    def _poll_desired(self) -> None:
        attempts = 0
        while not self._stop.is_set():
            session = self._session
            if session is None:
                return
            with self._version_lock:
                min_version = self._desired_version + 1

            try:
                r = session.get(
                    f"{self.device_url}/twin/properties/desired",
                    params={
                        "api-version": DEVICE_API_VERSION,
                        "minVersion": min_version,
                        "timeoutSeconds": self.twin_poll_seconds,
                    },
                    headers=self._headers(),
                    timeout=self.timeout_seconds + self.twin_poll_seconds,
                )
                if r.status_code in (204, 304):
                    attempts = 0
                    self._stop.wait(1.0)
                    continue
                desired = _json_body(_check(r, "desired poll"), "desired poll")
                attempts = 0
            except (requests.RequestException, TransportError) as e:
                if self._stop.is_set():
                    return
                backoff = min(60.0, 2.0 ** min(attempts, 8))
                attempts += 1
                logger.warning("Desired-state poll failed: %s (retry in ~%.1fs)", e, backoff)
                self._stop.wait(backoff)
                continue

            if not self._note_desired_version(desired):
                self._stop.wait(1.0)
                continue

            callback = self._callback
            if callback is not None:
                try:
                    callback(desired)
                except Exception:
                    logger.exception("Desired-state callback raised; keeping subscription alive")

            # Without a $version the endpoint cannot hold the poll open for changes.
            if _payload_version(desired) is None:
                self._stop.wait(float(self.twin_poll_seconds))

    def close(self) -> None:
        self._stop.set()
        poller = self._poller
        if poller is not None and poller is not threading.current_thread():
            poller.join(timeout=self.timeout_seconds + self.twin_poll_seconds)
        self._poller = None
        if self._session is not None:
            self._session.close()
            self._session = None
