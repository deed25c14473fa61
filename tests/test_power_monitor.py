from __future__ import annotations

import pytest

from conftest import FakeCec, FakeClock
from gaming_server.errors import (
    CommandFailed,
    DeviceNotFound,
    NotInitialized,
    ParseFailed,
    ProbeTimeout,
)
from gaming_server.models import PowerState
from gaming_server.power_monitor import PowerMonitor, is_available, parse_power_state

CEC_CTL_STANDBY = """\
Driver Info:
	Driver Name                : cec-gpio
Transmitted by Specific to Playback Device 1 (15 to 4): GIVE_DEVICE_POWER_STATUS (0x8f)
Received from Playback Device 1 (4): REPORT_POWER_STATUS (0x90):
	pwr-state: standby (0x01)
"""


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("pwr-state: on (0x00)", PowerState.ON),
        ("power status: on", PowerState.ON),
        ("Power Status: ON", PowerState.ON),
        ("power status: standby", PowerState.STANDBY),
        ("pwr-state: to-standby", PowerState.STANDBY),
        ("pwr-state: in transition on to standby (0x03)", PowerState.STANDBY),
        ("pwr-state: in transition standby to on (0x02)", PowerState.ON),
        ("INACTIVE_SOURCE", PowerState.STANDBY),
        ("inactive source", PowerState.STANDBY),
        ("active source", PowerState.ON),
        ("Tx, Not Acknowledged (4), Max Retries", PowerState.OFF),
        ("device is in standby", PowerState.STANDBY),
        (CEC_CTL_STANDBY, PowerState.STANDBY),
        ("", PowerState.UNKNOWN),
        ("nothing useful here", PowerState.UNKNOWN),
    ],
)
def test_parse_power_state(output: str, expected: PowerState) -> None:
    assert parse_power_state(output) is expected


def test_parse_power_state_none() -> None:
    assert parse_power_state(None) is PowerState.UNKNOWN


def test_is_available(cec_device: str, tmp_path) -> None:
    assert is_available(cec_device)
    assert PowerMonitor.is_available(cec_device)
    assert not is_available(str(tmp_path / "missing"))
    assert not is_available("")
    assert not is_available(None)


def test_open_rejects_missing_device(tmp_path, fake_cec: FakeCec) -> None:
    with pytest.raises(DeviceNotFound):
        PowerMonitor(str(tmp_path / "cec9"), cec=fake_cec).open()


def test_open_rejects_empty_path(fake_cec: FakeCec) -> None:
    with pytest.raises(DeviceNotFound):
        PowerMonitor("", cec=fake_cec).open()


def test_open_resets_state(cec_device: str, fake_cec: FakeCec) -> None:
    monitor = PowerMonitor(cec_device, cec=fake_cec)
    monitor.open()
    monitor.poll()
    assert monitor.get_last_state() is PowerState.STANDBY

    monitor.open()

    assert monitor.get_last_state() is PowerState.UNKNOWN
    assert monitor.get_last_update() is None
    assert monitor.drain_changes() == []


def test_query_before_open_is_not_initialized(cec_device: str, fake_cec: FakeCec) -> None:
    state, error = PowerMonitor(cec_device, cec=fake_cec).query_state()

    assert state is PowerState.UNKNOWN
    assert isinstance(error, NotInitialized)
    assert fake_cec.queries == 0


def test_query_returns_state(cec_device: str, fake_cec: FakeCec) -> None:
    monitor = PowerMonitor(cec_device, cec=fake_cec)
    monitor.open()

    assert monitor.query_state() == (PowerState.STANDBY, None)
    # query_state alone does not record anything
    assert monitor.get_last_state() is PowerState.UNKNOWN


@pytest.mark.parametrize("error", [CommandFailed("exit 1"), ProbeTimeout("slow")])
def test_query_failure_is_soft(cec_device: str, fake_cec: FakeCec, error: Exception) -> None:
    fake_cec.query_error = error
    monitor = PowerMonitor(cec_device, cec=fake_cec)
    monitor.open()

    state, returned = monitor.query_state()

    assert state is PowerState.UNKNOWN
    assert returned is error


def test_unrecognised_output_is_parse_failed(cec_device: str) -> None:
    monitor = PowerMonitor(cec_device, cec=FakeCec("Transmit Status: OK"))
    monitor.open()

    state, error = monitor.query_state()

    assert state is PowerState.UNKNOWN
    assert isinstance(error, ParseFailed)


def test_poll_keeps_last_known_state_on_failure(cec_device: str, fake_cec: FakeCec) -> None:
    monitor = PowerMonitor(cec_device, cec=fake_cec)
    monitor.open()
    assert monitor.poll() is PowerState.STANDBY

    fake_cec.query_error = CommandFailed("adapter busy")

    assert monitor.poll() is PowerState.STANDBY
    assert monitor.get_last_state() is PowerState.STANDBY


def test_repeated_observation_notifies_once(cec_device: str, fake_cec: FakeCec) -> None:
    clock = FakeClock(500.0)
    monitor = PowerMonitor(cec_device, cec=fake_cec, clock=clock)
    monitor.open()

    monitor.poll()
    clock.advance(5)
    monitor.poll()

    changes = monitor.drain_changes()
    assert len(changes) == 1
    assert changes[0].previous is PowerState.UNKNOWN
    assert changes[0].current is PowerState.STANDBY
    assert monitor.get_last_update() == 500.0
    assert monitor.drain_changes() == []


def test_change_sequence_is_queued_in_order(cec_device: str, fake_cec: FakeCec) -> None:
    monitor = PowerMonitor(cec_device, cec=fake_cec)
    monitor.open()

    assert monitor.observe(PowerState.ON)
    assert not monitor.observe(PowerState.ON)
    assert monitor.observe(PowerState.STANDBY)

    assert [c.current for c in monitor.drain_changes()] == [
        PowerState.ON,
        PowerState.STANDBY,
    ]
