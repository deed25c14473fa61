from __future__ import annotations

import subprocess

import pytest

from gaming_server import probes
from gaming_server.errors import CommandFailed, ProbeTimeout
from gaming_server.probes import (
    CecCtl,
    CommandResult,
    ScanHit,
    SystemNetwork,
    parse_neighbor,
    parse_nmap,
    run_command,
)

NMAP_OUTPUT = """\
Starting Nmap 7.94 ( https://nmap.org ) at 2026-10-18 12:00 UTC
Nmap scan report for 192.168.1.1
Host is up (0.00050s latency).
MAC Address: 00:11:22:33:44:55 (Netgear)
Nmap scan report for 192.168.1.100
Host is up (0.0012s latency).
MAC Address: aa:bb:cc:dd:ee:ff (Sony Interactive Entertainment)
Nmap scan report for router.lan (192.168.1.254)
Host is up.
Nmap done: 256 IP addresses (3 hosts up) scanned in 2.41 seconds
"""


def test_parse_nmap() -> None:
    assert parse_nmap(NMAP_OUTPUT) == [
        ScanHit("192.168.1.1", "00:11:22:33:44:55", "Netgear"),
        ScanHit("192.168.1.100", "AA:BB:CC:DD:EE:FF", "Sony Interactive Entertainment"),
        ScanHit("192.168.1.254"),
    ]


def test_parse_nmap_empty() -> None:
    assert parse_nmap("") == []


def test_parse_neighbor() -> None:
    out = "192.168.1.100 dev eth0 lladdr aa:bb:cc:dd:ee:ff REACHABLE\n"
    assert parse_neighbor(out) == "AA:BB:CC:DD:EE:FF"
    assert parse_neighbor("192.168.1.100 dev eth0 INCOMPLETE\n") is None
    assert parse_neighbor("") is None


class FakePopen:
    """Records calls and plays back a single communicate() outcome."""

    instances: list = []

    def __init__(self, cmd, **kwargs) -> None:
        self.cmd = cmd
        self.kwargs = kwargs
        self.pid = 4242
        self.returncode = 0
        self.waited = False
        FakePopen.instances.append(self)

    def communicate(self, timeout=None):
        if FakePopen.hang:
            raise subprocess.TimeoutExpired(self.cmd, timeout)
        self.returncode = FakePopen.returncode_next
        return FakePopen.stdout, b""

    def wait(self) -> int:
        self.waited = True
        return -9


@pytest.fixture
def fake_popen(monkeypatch):
    FakePopen.instances = []
    FakePopen.hang = False
    FakePopen.returncode_next = 0
    FakePopen.stdout = b"ok\n"
    monkeypatch.setattr(probes.subprocess, "Popen", FakePopen)
    return FakePopen


def test_run_command_returns_output(fake_popen) -> None:
    result = run_command(["true"], "test", 1)

    assert result == CommandResult(0, "ok\n", "")
    assert fake_popen.instances[0].kwargs["start_new_session"] is True


def test_run_command_timeout_kills_group(fake_popen, monkeypatch) -> None:
    killed = []
    fake_popen.hang = True
    monkeypatch.setattr(probes.os, "getpgid", lambda pid: pid)
    monkeypatch.setattr(probes.os, "killpg", lambda pgid, sig: killed.append((pgid, sig)))

    with pytest.raises(ProbeTimeout):
        run_command(["cec-ctl"], "power-status", 0.1)

    assert killed == [(4242, probes.signal.SIGKILL)]
    assert fake_popen.instances[0].waited


def test_run_command_missing_tool(monkeypatch) -> None:
    def boom(*args, **kwargs):
        raise FileNotFoundError("no such file")

    monkeypatch.setattr(probes.subprocess, "Popen", boom)

    with pytest.raises(CommandFailed):
        run_command(["/nonexistent/tool"], "test", 1)


def test_cec_ctl_commands(monkeypatch) -> None:
    calls = []

    def fake_run(cmd, label, timeout):
        calls.append(cmd)
        return CommandResult(0, "pwr-state: on (0x00)\n", "")

    monkeypatch.setattr(probes, "run_command", fake_run)
    cec = CecCtl("/dev/cec1", logical_address=8, tool="cec-ctl")

    assert "pwr-state: on" in cec.query_power_status()
    cec.send_wake()

    assert calls[0] == ["cec-ctl", "-d", "/dev/cec1", "--to", "8", "--give-device-power-status"]
    assert calls[1][:5] == ["cec-ctl", "-d", "/dev/cec1", "--to", "8"]
    assert "ui-cmd=power-on-function" in calls[1]


def test_cec_ctl_nonzero_exit(monkeypatch) -> None:
    monkeypatch.setattr(
        probes, "run_command", lambda *a, **k: CommandResult(1, "", "No such device")
    )

    with pytest.raises(CommandFailed, match="No such device"):
        CecCtl("/dev/cec0").send_wake()


def test_probe_reachable(monkeypatch) -> None:
    results = iter([CommandResult(0, "", ""), CommandResult(1, "", "")])
    monkeypatch.setattr(probes, "run_command", lambda *a, **k: next(results))
    network = SystemNetwork()

    assert network.probe_reachable("192.168.1.100")
    assert not network.probe_reachable("192.168.1.100")


def test_probe_reachable_swallows_tool_failure(monkeypatch) -> None:
    def fail(*args, **kwargs):
        raise ProbeTimeout("ping hung")

    monkeypatch.setattr(probes, "run_command", fail)

    assert not SystemNetwork().probe_reachable("192.168.1.100")
    assert SystemNetwork().neighbor_mac("192.168.1.100") is None


def test_scan_nonzero_exit_raises(monkeypatch) -> None:
    monkeypatch.setattr(
        probes, "run_command", lambda *a, **k: CommandResult(1, "", "requires root")
    )

    with pytest.raises(CommandFailed):
        SystemNetwork().scan("192.168.1.0/24")


def test_scan_parses_hits(monkeypatch) -> None:
    monkeypatch.setattr(
        probes, "run_command", lambda *a, **k: CommandResult(0, NMAP_OUTPUT, "")
    )

    hits = SystemNetwork().scan("192.168.1.0/24")

    assert [hit.address for hit in hits] == ["192.168.1.1", "192.168.1.100", "192.168.1.254"]
