from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .identity import Identity
from .transport import TransportError

logger = logging.getLogger(__name__)


class AssignmentStatus(str, Enum):
    UNASSIGNED = "unassigned"
    ASSIGNING = "assigning"
    ASSIGNED = "assigned"
    FAILED = "failed"
    DISABLED = "disabled"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: Any) -> "AssignmentStatus":
        v = str(raw or "").strip().lower()
        for member in cls:
            if member.value == v:
                return member
        return cls.UNKNOWN


@dataclass(frozen=True)
class AssignmentResult:
    assigned_endpoint: str
    device_id: str
    status: AssignmentStatus
    raw_status: str
    error_message: str = ""

    @staticmethod
    def from_registration_state(state: Dict[str, Any]) -> "AssignmentResult":
        raw = str(state.get("status") or "")
        return AssignmentResult(
            assigned_endpoint=str(state.get("assignedHub") or ""),
            device_id=str(state.get("deviceId") or ""),
            status=AssignmentStatus.parse(raw),
            raw_status=raw,
            error_message=str(state.get("errorMessage") or ""),
        )


@dataclass(frozen=True)
class DeviceCredential:
    """Per-device credential bound to the assigned device id."""

    device_id: str
    identity: Identity


class ProvisioningFailed(RuntimeError):
    """Raised when the bootstrap endpoint does not assign the device."""

    def __init__(self, message: str, *, result: Optional[AssignmentResult] = None):
        super().__init__(message)
        self.result = result


class ProvisioningAgent:
    """Identity -> assignment handshake against the bootstrap endpoint.

    No retries here: the caller owns restart policy.
    """

    def __init__(self, transport: Any, *, registration_id: str = "") -> None:
        self._transport = transport
        self._registration_id = registration_id

    def registration_id_for(self, identity: Identity) -> str:
        reg_id = (self._registration_id or identity.common_name).strip()
        if not reg_id:
            raise ProvisioningFailed("no registration id: set EDGE_REGISTRATION_ID or use a certificate with a CN")
        return reg_id

    def register(self, identity: Identity) -> AssignmentResult:
        reg_id = self.registration_id_for(identity)
        logger.info("Registering with bootstrap endpoint", extra={"registration_id": reg_id})

        try:
            state = self._transport.register(reg_id)
        except TransportError as e:
            raise ProvisioningFailed(f"registration request failed: {e}") from e

        result = AssignmentResult.from_registration_state(state)
        logger.info(
            "Provisioning result: assigned_endpoint=%s device_id=%s status=%s",
            result.assigned_endpoint,
            result.device_id,
            result.raw_status,
            extra={"registration_id": reg_id},
        )

        if result.status is not AssignmentStatus.ASSIGNED:
            detail = f": {result.error_message}" if result.error_message else ""
            raise ProvisioningFailed(
                f"registration status is {result.raw_status or 'empty'!r}, not 'assigned'{detail}",
                result=result,
            )
        if not result.assigned_endpoint or not result.device_id:
            raise ProvisioningFailed("registration assigned but endpoint/device id missing", result=result)

        return result

    def device_credential(self, identity: Identity, result: AssignmentResult) -> DeviceCredential:
        if result.status is not AssignmentStatus.ASSIGNED:
            raise ProvisioningFailed("cannot derive a device credential from an unassigned result", result=result)
        return DeviceCredential(device_id=result.device_id, identity=identity)
