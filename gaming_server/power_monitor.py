"""
power_monitor.py - console power state as seen over HDMI-CEC.

The monitor asks cec-ctl for the console's power status and scans the
free-text reply for the phrases cec-ctl (and older tools) use.  It never
retries on its own: the coordinator's tick loop polls it once per CEC
poll interval, and a failed probe simply leaves the last known state in
place.

Changes are published on a bounded queue that the coordinator drains
each tick.  Observing the same state twice is a no-op, so the queue only
ever holds genuine transitions.
"""

import logging
import os
import re
import time
from collections import deque

from .errors import (
    CommandFailed,
    DeviceNotFound,
    GamingServerError,
    NotInitialized,
    ParseFailed,
    ProbeTimeout,
)
from .models import PowerChange, PowerState
from .probes import CecCtl

LOG = logging.getLogger("gaming-server.power")

MAX_PENDING_CHANGES = 32

_STATUS = r"(?:power[ _-]?status|pwr-state)\s*:\s*"

# Order matters: the transitional and "inactive" phrases contain the
# shorter tokens checked after them.
_POWER_PATTERNS = [
    (re.compile(_STATUS + r"(?:to-standby|in transition on to standby)", re.I), PowerState.STANDBY),
    (re.compile(_STATUS + r"in transition standby to on", re.I), PowerState.ON),
    (re.compile(_STATUS + r"on\b", re.I), PowerState.ON),
    (re.compile(_STATUS + r"standby\b", re.I), PowerState.STANDBY),
    (re.compile(r"\binactive[ _-]source\b", re.I), PowerState.STANDBY),
    (re.compile(r"\bactive[ _-]source\b", re.I), PowerState.ON),
    (re.compile(r"\bnot acknowledged\b|\bnack\b", re.I), PowerState.OFF),
    (re.compile(r"\bstandby\b", re.I), PowerState.STANDBY),
]


def parse_power_state(output: str | None) -> PowerState:
    """Map CEC tool output to a PowerState; UNKNOWN if nothing matches."""
    if not output:
        return PowerState.UNKNOWN
    for pattern, state in _POWER_PATTERNS:
        if pattern.search(output):
            return state
    return PowerState.UNKNOWN


def is_available(device_path: str | None) -> bool:
    """Cheap check that device_path names a readable CEC node."""
    if not device_path:
        return False
    return os.path.exists(device_path) and os.access(device_path, os.R_OK)


class PowerMonitor:
    """Tracks the console's CEC power state for one CEC device."""

    is_available = staticmethod(is_available)

    def __init__(self, device_path: str, cec=None, clock=time.time):
        self.device_path = device_path
        self._cec = cec if cec is not None else CecCtl(device_path)
        self._clock = clock
        self._opened = False
        self._failing = False
        self._last_state = PowerState.UNKNOWN
        self._last_update: float | None = None
        self._changes: deque = deque(maxlen=MAX_PENDING_CHANGES)

    def open(self) -> None:
        """Validate the device and reset to Unknown; raises DeviceNotFound."""
        if not is_available(self.device_path):
            raise DeviceNotFound(f"CEC device not accessible: {self.device_path!r}")
        self._last_state = PowerState.UNKNOWN
        self._last_update = None
        self._changes.clear()
        self._failing = False
        self._opened = True
        LOG.info("CEC power monitor using %s", self.device_path)

    def close(self) -> None:
        self._opened = False
        self._changes.clear()

    @property
    def opened(self) -> bool:
        return self._opened

    def query_state(self) -> tuple[PowerState, GamingServerError | None]:
        """
        Probe the console once and return (state, error).

        Probe failures come back as (UNKNOWN, error) and are never
        raised.  The cached state is not touched; see poll().
        """
        if not self._opened:
            return PowerState.UNKNOWN, NotInitialized("power monitor is not open")

        try:
            output = self._cec.query_power_status()
        except (CommandFailed, ProbeTimeout) as exc:
            if not self._failing:
                LOG.warning("CEC power query failed: %s", exc)
            self._failing = True
            return PowerState.UNKNOWN, exc

        state = parse_power_state(output)
        if state is PowerState.UNKNOWN:
            snippet = output.strip().splitlines()[:1]
            return PowerState.UNKNOWN, ParseFailed(
                f"unrecognised CEC output: {snippet[0] if snippet else ''!r}"
            )

        if self._failing:
            LOG.info("CEC power query recovered")
        self._failing = False
        return state, None

    def poll(self) -> PowerState:
        """Query once, record any change, and return the last known state."""
        state, error = self.query_state()
        if error is None:
            self.observe(state)
        else:
            LOG.debug("Keeping last known power state %s: %s", self._last_state, error)
        return self._last_state

    def observe(self, state: PowerState) -> bool:
        """Record state; queue a PowerChange only if it differs from the last."""
        if state is self._last_state:
            return False
        now = self._clock()
        change = PowerChange(self._last_state, state, now)
        self._last_state = state
        self._last_update = now
        self._changes.append(change)
        LOG.info("CEC power state changed: %s -> %s", change.previous, change.current)
        return True

    def drain_changes(self) -> list:
        """Hand over and forget every queued PowerChange, oldest first."""
        changes = []
        while self._changes:
            changes.append(self._changes.popleft())
        return changes

    def get_last_state(self) -> PowerState:
        return self._last_state

    def get_last_update(self) -> float | None:
        return self._last_update
