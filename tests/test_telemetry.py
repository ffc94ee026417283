from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from conftest import FakeDeviceTransport, RecordingEvent, write_lines
from depthlink.connection import ConnectionManager, SendFailure
from depthlink.locations import LocationRecord, LocationTable
from depthlink.sensors import TelemetrySource
from depthlink.telemetry import TelemetryLoop
from depthlink.twin import ConfigurationState, TwinSyncManager

HEADER = "stationId,sensorType,timestamp,depth"


def _loop(tmp_path: Path, rows, *, transport=None, stop=None, policy="continue", state=None):
    source = TelemetrySource(write_lines(tmp_path / "telemetry.csv", [HEADER] + list(rows)))
    locations = LocationTable([LocationRecord(10.0, -90.0), LocationRecord(11.0, -91.0)])
    transport = transport or FakeDeviceTransport()
    connection = ConnectionManager(transport).open()
    state = state or ConfigurationState()
    stop = stop if stop is not None else RecordingEvent()
    loop = TelemetryLoop(
        source=source,
        locations=locations,
        connection=connection,
        state=state,
        stop_event=stop,
        send_failure_policy=policy,
    )
    return loop, source, transport, state, stop


def test_header_only_source_sends_nothing(tmp_path: Path) -> None:
    loop, source, transport, _, stop = _loop(tmp_path, [])

    stats = loop.run()

    assert stats.sent == 0
    assert transport.sent == []
    assert stop.waits == []
    assert source.exhausted


def test_scenario_message_is_sent_with_alert(tmp_path: Path) -> None:
    loop, _, transport, _, stop = _loop(tmp_path, ["1,x,1700000000,45.2"])

    stats = loop.run()

    assert stats.sent == 1
    payload, attrs = transport.sent[0]
    assert json.loads(payload) == {
        "stationId": 1,
        "depth": 45.2,
        "timeStamp": "2023-11-14T22:13:20Z",
        "latitude": 10.0,
        "longitude": -90.0,
    }
    assert attrs == {"temperatureAlert": "true"}
    assert stop.waits == [1]


def test_delay_update_applies_from_next_iteration(tmp_path: Path) -> None:
    transport = FakeDeviceTransport()
    state = ConfigurationState()
    twin = TwinSyncManager(ConnectionManager(transport).open(), state)

    def _on_send(n: int) -> None:
        # Push arrives while iteration 2 is in flight (after its send, before its pause).
        if n == 2:
            twin.on_desired_changed({"telemetryDelay": "5"})

    transport.on_send = _on_send
    loop, _, _, _, stop = _loop(
        tmp_path,
        ["1,x,1700000000,1.0", "2,x,1700000001,2.0", "1,x,1700000002,3.0", "2,x,1700000003,4.0"],
        transport=transport,
        state=state,
    )

    loop.run()

    assert stop.waits == [1, 5, 5, 5]


def test_update_between_iterations_is_seen_by_next_pause(tmp_path: Path) -> None:
    state = ConfigurationState()

    class _Event(RecordingEvent):
        def wait(self, timeout=None):
            result = super().wait(timeout)
            if len(self.waits) == 1:
                state.set_telemetry_delay(3)
            return result

    loop, _, _, _, stop = _loop(
        tmp_path, ["1,x,1700000000,1.0", "1,x,1700000001,1.0"], stop=_Event(), state=state
    )
    loop.run()

    assert stop.waits == [1, 3]


def test_out_of_range_station_is_rejected_and_loop_continues(tmp_path: Path) -> None:
    loop, _, transport, _, stop = _loop(
        tmp_path, ["1,x,1700000000,1.0", "9,x,1700000001,2.0", "2,x,1700000002,3.0"]
    )

    stats = loop.run()

    assert stats.sent == 2
    assert stats.rejected == 1
    assert [json.loads(p)["stationId"] for p, _ in transport.sent] == [1, 2]
    assert stop.waits == [1, 1]


def test_malformed_row_is_rejected(tmp_path: Path) -> None:
    loop, _, transport, _, _ = _loop(tmp_path, ["1,x,oops,1.0", "2,x,1700000002,3.0"])

    stats = loop.run()

    assert stats.rejected == 1
    assert stats.sent == 1


def test_out_of_range_timestamp_is_rejected(tmp_path: Path) -> None:
    loop, _, transport, _, _ = _loop(tmp_path, ["1,x,10000000000000,5.0", "1,x,1700000000,1.0"])

    stats = loop.run()

    assert stats.rejected == 1
    assert stats.sent == 1
    assert json.loads(transport.sent[0][0])["timeStamp"] == "2023-11-14T22:13:20Z"


def test_send_failure_continue_policy_logs_and_keeps_going(tmp_path: Path) -> None:
    transport = FakeDeviceTransport(fail_sends=(1,))
    loop, _, _, _, stop = _loop(
        tmp_path, ["1,x,1700000000,1.0", "2,x,1700000001,2.0"], transport=transport
    )

    stats = loop.run()

    assert stats.failed == 1
    assert stats.sent == 1
    assert stop.waits == [1, 1]


def test_send_failure_stop_policy_propagates(tmp_path: Path) -> None:
    transport = FakeDeviceTransport(fail_sends=(1,))
    loop, source, _, _, _ = _loop(
        tmp_path, ["1,x,1700000000,1.0", "2,x,1700000001,2.0"], transport=transport, policy="stop"
    )

    with pytest.raises(SendFailure):
        loop.run()

    assert transport.sent == []
    assert source.exhausted


def test_stop_interrupts_pause(tmp_path: Path) -> None:
    state = ConfigurationState(3600)
    stop = threading.Event()
    loop, source, transport, _, _ = _loop(
        tmp_path, ["1,x,1700000000,1.0", "2,x,1700000001,2.0"], stop=stop, state=state
    )

    worker = threading.Thread(target=loop.run)
    worker.start()
    for _ in range(500):
        if transport.sent:
            break
        worker.join(timeout=0.01)
    loop.stop()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert len(transport.sent) == 1
    assert source.exhausted
