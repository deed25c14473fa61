"""
models.py - enums and plain data carried between gaming-server components.

Everything here is a value: no I/O, no locking.  Records are copied
between the coordinator and its worker threads rather than shared.
"""

import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum


class _LowerEnum(Enum):
    def __str__(self) -> str:
        return self.value


class PowerState(_LowerEnum):
    UNKNOWN = "unknown"
    ON = "on"
    STANDBY = "standby"
    OFF = "off"


class CoordinatorState(_LowerEnum):
    INIT = "init"
    IDLE = "idle"
    MONITORING = "monitoring"
    DETECTING = "detecting"
    QUERYING = "querying"
    WAKING = "waking"
    BROADCASTING = "broadcasting"
    ERROR = "error"


class CoordinatorEvent(_LowerEnum):
    NONE = "none"
    POWER_CHANGED = "power_changed"
    CLIENT_QUERY = "client_query"
    WAKE_REQUEST = "wake_request"
    DETECT_TIMEOUT = "detect_timeout"
    COMPLETED = "completed"
    FAILED = "failed"


class WakeOutcome(_LowerEnum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    COMMAND_ERROR = "command_error"
    VERIFICATION_FAILED = "verification_failed"
    NOT_READY = "not_ready"

    def describe(self) -> str:
        return _WAKE_MESSAGES[self]


_WAKE_MESSAGES = {
    WakeOutcome.SUCCESS: "Console woke up successfully",
    WakeOutcome.TIMEOUT: "Timed out sending the CEC wake command",
    WakeOutcome.COMMAND_ERROR: "CEC command failed",
    WakeOutcome.VERIFICATION_FAILED: "Console did not respond after wake",
    WakeOutcome.NOT_READY: "Wake controller not ready",
}


@dataclass
class ApplianceRecord:
    """Last known network identity of the console."""

    address: str
    hardware_id: str
    last_seen: float = field(default_factory=time.time)
    reachable: bool = False

    def seen(self, reachable: bool = True, now: float | None = None) -> "ApplianceRecord":
        """Return a copy stamped with a fresh sighting."""
        return replace(
            self,
            reachable=reachable,
            last_seen=time.time() if now is None else now,
        )


@dataclass(frozen=True)
class PowerChange:
    """Emitted by PowerMonitor when the observed CEC power state changes."""

    previous: PowerState
    current: PowerState
    timestamp: float


@dataclass(frozen=True)
class StatusSnapshot:
    status: str
    address: str
    hardware_id: str
    timestamp: float

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class WakeReport:
    """
    Result of one client wake request, after all retries.

    reason carries the failure detail of the last attempt so the client
    sees why the wake failed, not only that it did.
    """

    outcome: WakeOutcome
    reason: str = ""
    attempts: int = 0
    timestamp: float = field(default_factory=time.time)

    @property
    def success(self) -> bool:
        return self.outcome is WakeOutcome.SUCCESS

    def as_dict(self) -> dict:
        return {
            "status": "success" if self.success else "failed",
            "outcome": str(self.outcome),
            "message": self.outcome.describe(),
            "reason": self.reason,
            "attempts": self.attempts,
            "timestamp": self.timestamp,
        }
