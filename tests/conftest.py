from __future__ import annotations

import pytest

from gaming_server.probes import ScanHit

CONSOLE_IP = "192.168.1.100"
CONSOLE_MAC = "AA:BB:CC:DD:EE:FF"


class FakeCec:
    """In-memory stand-in for probes.CecCtl."""

    def __init__(self, output: str = "pwr-state: standby (0x01)") -> None:
        self.output = output
        self.query_error: Exception | None = None
        self.wake_errors: list[Exception | None] = []
        self.queries = 0
        self.wakes = 0

    def query_power_status(self) -> str:
        self.queries += 1
        if self.query_error is not None:
            raise self.query_error
        return self.output

    def send_wake(self) -> None:
        self.wakes += 1
        if self.wake_errors:
            error = self.wake_errors.pop(0)
            if error is not None:
                raise error


class FakeNetwork:
    """In-memory stand-in for probes.SystemNetwork."""

    def __init__(
        self,
        reachable: tuple[str, ...] = (),
        neighbors: dict[str, str] | None = None,
        hits: list[ScanHit] | None = None,
    ) -> None:
        self.reachable = set(reachable)
        self.neighbors = dict(neighbors or {})
        self.hits = list(hits or [])
        self.scan_error: Exception | None = None
        self.pings: list[str] = []
        self.lookups: list[str] = []
        self.scans = 0

    def probe_reachable(self, address: str, timeout: int = 1) -> bool:
        self.pings.append(address)
        return address in self.reachable

    def neighbor_mac(self, address: str) -> str | None:
        self.lookups.append(address)
        return self.neighbors.get(address)

    def scan(self, subnet: str) -> list[ScanHit]:
        self.scans += 1
        if self.scan_error is not None:
            raise self.scan_error
        return list(self.hits)


class FakeClock:
    """Callable clock whose sleep() just moves time forward."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def cec_device(tmp_path) -> str:
    path = tmp_path / "cec0"
    path.write_text("")
    return str(path)


@pytest.fixture
def cache_path(tmp_path) -> str:
    return str(tmp_path / "run" / "console_cache.json")


@pytest.fixture
def fake_cec() -> FakeCec:
    return FakeCec()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
