"""
probes.py - the shell boundary of gaming-server.

Every external tool the daemon depends on is invoked from here:

  cec-ctl  (v4l-utils)   power-status query and power-on key press
  ping     (iputils)     single-packet reachability probe
  ip       (iproute2)    neighbour table lookup for a known address
  nmap                   ping sweep of the configured subnet

PowerMonitor, NetworkDetector and WakeController only ever talk to the
CecCtl and SystemNetwork classes below, so tests substitute in-memory
fakes with the same methods and no subprocess is spawned.

All tools run in their own session.  On timeout the whole process group
is SIGKILL'd; cec-ctl in particular can wedge inside the adapter ioctl
path and keep the device busy for every later probe.
"""

import logging
import os
import re
import signal
import subprocess
from dataclasses import dataclass

from .errors import CommandFailed, ProbeTimeout

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CEC_CTL = "/usr/bin/cec-ctl"
PING = "ping"
IP = "ip"
NMAP = "nmap"

# Logical address 4 is "Playback Device 1", where consoles register.
DEFAULT_LOGICAL_ADDRESS = 4

CEC_TIMEOUT_SEC = 5
PING_TIMEOUT_SEC = 1
SCAN_TIMEOUT_SEC = 20

LOG = logging.getLogger("gaming-server.probes")

_LLADDR_RE = re.compile(r"\blladdr\s+([0-9a-fA-F]{2}(?::[0-9a-fA-F]{2}){5})\b")
_REPORT_RE = re.compile(
    r"^Nmap scan report for (?:\S+ \()?(\d{1,3}(?:\.\d{1,3}){3})\)?\s*$"
)
_MAC_RE = re.compile(
    r"^MAC Address:\s*([0-9a-fA-F]{2}(?::[0-9a-fA-F]{2}){5})(?:\s+\((.*)\))?\s*$"
)


# ---------------------------------------------------------------------------
# Subprocess helper
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


def run_command(cmd: list, label: str, timeout: float) -> CommandResult:
    """
    Run cmd and return its exit status and decoded output.

    Raises CommandFailed if the tool cannot be started and ProbeTimeout
    if it overruns timeout.  A non-zero exit status is not an error here;
    callers decide what it means.
    """
    LOG.debug("Running %s: %s", label, cmd)
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        raise CommandFailed(f"Failed to run {cmd[0]} during {label}: {exc}") from exc

    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        LOG.warning("%s timed out during %s; killing process group", cmd[0], label)
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.wait()
        raise ProbeTimeout(f"{cmd[0]} timed out after {timeout}s during {label}")

    result = CommandResult(
        proc.returncode,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )
    LOG.debug("%s exited %d: %s", label, result.returncode, result.stdout.strip())
    return result


# ---------------------------------------------------------------------------
# CEC
# ---------------------------------------------------------------------------


class CecCtl:
    """cec-ctl wrapper bound to one CEC device and one remote logical address."""

    def __init__(
        self,
        device_path: str,
        logical_address: int = DEFAULT_LOGICAL_ADDRESS,
        timeout: float = CEC_TIMEOUT_SEC,
        tool: str = CEC_CTL,
    ):
        self.device_path = device_path
        self.logical_address = logical_address
        self.timeout = timeout
        self.tool = tool

    def _cmd(self, *args: str) -> list:
        return [
            self.tool,
            "-d",
            self.device_path,
            "--to",
            str(self.logical_address),
            *args,
        ]

    def _run(self, label: str, *args: str) -> str:
        result = run_command(self._cmd(*args), label, self.timeout)
        if result.returncode != 0:
            raise CommandFailed(
                f"cec-ctl exited {result.returncode} during {label}: "
                f"{result.stderr.strip()}"
            )
        return result.stdout

    def query_power_status(self) -> str:
        """Return cec-ctl's raw text for a Give Device Power Status exchange."""
        return self._run("power-status", "--give-device-power-status")

    def send_wake(self) -> None:
        """Press and release the remote's power-on function key."""
        self._run(
            "power-on",
            "--user-control-pressed",
            "ui-cmd=power-on-function",
            "--user-control-released",
        )


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScanHit:
    address: str
    hardware_id: str | None = None
    vendor: str = ""


def parse_neighbor(output: str) -> str | None:
    """Extract the link-layer address from `ip neigh show ADDR` output."""
    match = _LLADDR_RE.search(output)
    return match.group(1).upper() if match else None


def parse_nmap(output: str) -> list:
    """
    Turn `nmap -sn` text output into ScanHits, one per reported host.

    nmap prints the MAC line (only for hosts on the local segment) after
    the host's report line, so a MAC always belongs to the last report.
    """
    hits = []
    for line in output.splitlines():
        line = line.strip()
        report = _REPORT_RE.match(line)
        if report:
            hits.append(ScanHit(report.group(1)))
            continue
        mac = _MAC_RE.match(line)
        if mac and hits:
            hits[-1] = ScanHit(hits[-1].address, mac.group(1).upper(), mac.group(2) or "")
    return hits


class SystemNetwork:
    """Reachability and discovery through ping, ip and nmap."""

    def probe_reachable(self, address: str, timeout: int = PING_TIMEOUT_SEC) -> bool:
        cmd = [PING, "-c", "1", "-W", str(timeout), address]
        try:
            result = run_command(cmd, "ping", timeout + 2)
        except (CommandFailed, ProbeTimeout) as exc:
            LOG.debug("Reachability probe of %s failed: %s", address, exc)
            return False
        return result.returncode == 0

    def neighbor_mac(self, address: str) -> str | None:
        try:
            result = run_command([IP, "neigh", "show", address], "neighbour lookup", 2)
        except (CommandFailed, ProbeTimeout) as exc:
            LOG.debug("Neighbour lookup of %s failed: %s", address, exc)
            return None
        if result.returncode != 0:
            return None
        return parse_neighbor(result.stdout)

    def scan(self, subnet: str) -> list:
        """Ping-sweep subnet; raises CommandFailed or ProbeTimeout."""
        result = run_command([NMAP, "-sn", "-n", subnet], "subnet scan", SCAN_TIMEOUT_SEC)
        if result.returncode != 0:
            raise CommandFailed(
                f"nmap exited {result.returncode}: {result.stderr.strip()}"
            )
        return parse_nmap(result.stdout)
