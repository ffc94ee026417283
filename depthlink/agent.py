"""DepthLink edge agent orchestration.

Startup sequence:
1. load station locations + open the telemetry source (fail before any network I/O)
2. load the device identity (certificate + private key)
3. register with the bootstrap endpoint -> assigned endpoint + device id
4. open the device session, subscribe to desired-config pushes, pull + apply the twin
5. run the telemetry loop until the source is exhausted or a stop signal arrives
6. close the session

Fatal errors are reported per phase (identity, provisioning, telemetry) and map
to distinct exit codes so a supervisor (systemd, container runtime) can decide
restart policy.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import threading
from typing import Any, Callable, Dict, Optional, Tuple

from . import __version__
from .config import AgentConfig, normalize_send_failure_policy, normalize_sensor_mode
from .connection import ConnectionManager, SendFailure
from .identity import Identity, IdentityError, load_identity, materialize_identity
from .locations import LocationTable
from .logging_setup import device_id_var, setup_logging
from .provisioning import AssignmentResult, DeviceCredential, ProvisioningAgent, ProvisioningFailed
from .sensors import SimulatedDepthSource, TelemetrySource
from .telemetry import LoopStats, TelemetryLoop
from .transport import DeviceTransport, HttpDeviceTransport, ProvisioningTransport, TransportError
from .twin import ConfigurationState, TwinSyncManager

logger = logging.getLogger(__name__)

PHASE_EXIT_CODES = {
    "config": 1,
    "identity": 2,
    "provisioning": 3,
    "telemetry": 4,
}

CertFiles = Tuple[str, str]
ProvisioningTransportFactory = Callable[[AgentConfig, CertFiles], Any]
DeviceTransportFactory = Callable[[AgentConfig, AssignmentResult, DeviceCredential, CertFiles], DeviceTransport]


class PhaseError(RuntimeError):
    """A fatal error, tagged with the startup/run phase that failed."""

    def __init__(self, phase: str, cause: BaseException):
        super().__init__(f"{phase} phase failed: {cause}")
        self.phase = phase
        self.cause = cause

    @property
    def exit_code(self) -> int:
        return PHASE_EXIT_CODES.get(self.phase, 1)


def _default_provisioning_transport(cfg: AgentConfig, cert_files: CertFiles) -> ProvisioningTransport:
    return ProvisioningTransport(
        bootstrap_host=cfg.bootstrap_host,
        id_scope=cfg.id_scope,
        cert_files=cert_files,
        timeout_seconds=cfg.request_timeout_seconds,
        poll_seconds=cfg.provisioning_poll_seconds,
        max_polls=cfg.provisioning_max_polls,
    )


def _default_device_transport(
    cfg: AgentConfig,
    result: AssignmentResult,
    credential: DeviceCredential,
    cert_files: CertFiles,
) -> DeviceTransport:
    return HttpDeviceTransport(
        endpoint=result.assigned_endpoint,
        device_id=credential.device_id,
        cert_files=cert_files,
        timeout_seconds=cfg.request_timeout_seconds,
        twin_poll_seconds=cfg.twin_poll_seconds,
    )


def _open_source(cfg: AgentConfig, locations: LocationTable, telemetry_file: Optional[str]) -> Any:
    if cfg.sensor_mode == "simulated":
        logger.info("Using simulated depth source (records=%d seed=%s)", cfg.simulated_records, cfg.seed)
        return SimulatedDepthSource(locations, count=cfg.simulated_records, seed=cfg.seed)
    if not telemetry_file:
        raise ValueError("a telemetry file is required unless sensor mode is 'simulated'")
    return TelemetrySource.open_and_skip_header(telemetry_file)


def run_agent(
    cfg: AgentConfig,
    location_file: str,
    telemetry_file: Optional[str] = None,
    *,
    stop_event: Optional[threading.Event] = None,
    identity_loader: Callable[[str, str], Identity] = load_identity,
    provisioning_transport_factory: ProvisioningTransportFactory = _default_provisioning_transport,
    device_transport_factory: DeviceTransportFactory = _default_device_transport,
) -> LoopStats:
    """Run one agent lifecycle. Raises PhaseError on any fatal error."""

    stop = stop_event if stop_event is not None else threading.Event()

    try:
        locations = LocationTable.load(location_file)
        source = _open_source(cfg, locations, telemetry_file)
    except (OSError, ValueError) as e:
        raise PhaseError("telemetry", e) from e

    try:
        try:
            identity = identity_loader(cfg.certificate_file, cfg.certificate_password)
        except IdentityError as e:
            raise PhaseError("identity", e) from e

        with materialize_identity(identity) as cert_files:
            try:
                prov = ProvisioningAgent(
                    provisioning_transport_factory(cfg, cert_files),
                    registration_id=cfg.registration_id,
                )
                result = prov.register(identity)
                credential = prov.device_credential(identity, result)
            except (ProvisioningFailed, ValueError) as e:
                raise PhaseError("provisioning", e) from e

            device_id_var.set(credential.device_id)

            state = ConfigurationState(cfg.telemetry_delay_seconds)
            try:
                connection = ConnectionManager(
                    device_transport_factory(cfg, result, credential, cert_files),
                    device_id=credential.device_id,
                )
                with connection:
                    TwinSyncManager(connection, state).start()
                    loop = TelemetryLoop(
                        source=source,
                        locations=locations,
                        connection=connection,
                        state=state,
                        stop_event=stop,
                        send_failure_policy=cfg.send_failure_policy,
                    )
                    return loop.run()
            except (SendFailure, TransportError) as e:
                raise PhaseError("telemetry", e) from e
    finally:
        source.close()


def _install_signal_handlers(stop: threading.Event) -> Dict[int, Any]:
    """Route SIGINT/SIGTERM to the stop event. Returns the previous handlers."""

    def _handle(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s; stopping", signum)
        stop.set()

    previous: Dict[int, Any] = {}
    if threading.current_thread() is not threading.main_thread():
        return previous
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handle)
    return previous


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="depthlink-agent",
        description="Provision this device, sync its twin configuration and stream water-depth telemetry.",
    )
    parser.add_argument("location_file", help="Station locations CSV (header + id,latitude,longitude rows).")
    parser.add_argument(
        "telemetry_file",
        nargs="?",
        default=None,
        help="Telemetry CSV (header + stationId,?,timestamp,depth rows). Optional in simulated mode.",
    )
    parser.add_argument(
        "--sensor-mode",
        choices=["file", "simulated"],
        default=None,
        help="Override EDGE_SENSOR_MODE.",
    )
    parser.add_argument(
        "--send-failure-policy",
        choices=["continue", "stop"],
        default=None,
        help="Override EDGE_SEND_FAILURE_POLICY.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        cfg = AgentConfig.from_env()
    except (OSError, ValueError) as e:
        setup_logging()
        logger.error("config phase failed: %s", e, extra={"phase": "config"})
        return PHASE_EXIT_CODES["config"]

    if args.sensor_mode:
        cfg = dataclasses.replace(cfg, sensor_mode=normalize_sensor_mode(args.sensor_mode))
    if args.send_failure_policy:
        cfg = dataclasses.replace(cfg, send_failure_policy=normalize_send_failure_policy(args.send_failure_policy))

    setup_logging(log_level=cfg.log_level, log_format=cfg.log_format)

    logger.info(
        "depthlink-agent %s bootstrap=%s id_scope=%s certificate=%s sensor_mode=%s send_failure_policy=%s",
        __version__,
        cfg.bootstrap_host,
        cfg.id_scope or "missing",
        cfg.certificate_file or "missing",
        cfg.sensor_mode,
        cfg.send_failure_policy,
    )

    stop = threading.Event()
    previous_handlers = _install_signal_handlers(stop)

    try:
        run_agent(cfg, args.location_file, args.telemetry_file, stop_event=stop)
    except PhaseError as e:
        logger.error(str(e), extra={"phase": e.phase})
        return e.exit_code
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)

    return 0
