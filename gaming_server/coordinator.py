"""
coordinator.py - the state machine that ties gaming-server together.

The main loop calls Coordinator.tick() every ~100ms.  A tick:

  1. heals an Error left by the previous tick (the None event)
  2. forces Error if a busy state has lasted STATE_TIMEOUT_SEC
  3. collects finished wake and detection jobs
  4. polls CEC power once per poll interval and drains its changes
  5. services client events delivered by the transport
  6. starts a pending wake, or a periodic detection when one is due
  7. runs the step for the current state (Monitoring, Broadcasting)

Transitions
-----------
Only the pairs in TRANSITIONS move the machine; every other
(state, event) pair leaves the state unchanged.

Work dispatch
-------------
Detection (which may run an nmap sweep) and wake (which polls for up to
tens of seconds) never run on the tick thread.  Each is handed to a
Job, a daemon thread the tick polls for completion.  There is never
more than one wake job; requests arriving while one runs, or before
its report goes out, are folded into it.  A wake job that outlives the
stuck-state guard still reports its outcome to the client when it
finishes.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import replace

from .errors import ApplianceNotFound, InvalidParameter
from .models import (
    ApplianceRecord,
    CoordinatorEvent,
    CoordinatorState,
    PowerState,
    StatusSnapshot,
    WakeOutcome,
    WakeReport,
)

LOG = logging.getLogger("gaming-server.coordinator")

STATE_TIMEOUT_SEC = 30
DETECT_INTERVAL_SEC = 60
DETECT_TIMEOUT_SEC = 25
CEC_POLL_SEC = 1
WAKE_TIMEOUT_SEC = 12
WAKE_RETRIES = 2

S = CoordinatorState
E = CoordinatorEvent

TRANSITIONS = {
    (S.IDLE, E.POWER_CHANGED): S.MONITORING,
    (S.IDLE, E.CLIENT_QUERY): S.QUERYING,
    (S.IDLE, E.WAKE_REQUEST): S.WAKING,
    (S.MONITORING, E.COMPLETED): S.BROADCASTING,
    (S.MONITORING, E.FAILED): S.ERROR,
    (S.DETECTING, E.COMPLETED): S.IDLE,
    (S.DETECTING, E.DETECT_TIMEOUT): S.ERROR,
    (S.QUERYING, E.COMPLETED): S.IDLE,
    (S.WAKING, E.COMPLETED): S.MONITORING,
    (S.WAKING, E.FAILED): S.ERROR,
    (S.BROADCASTING, E.COMPLETED): S.IDLE,
    (S.ERROR, E.NONE): S.IDLE,
}


def determine_status(power: PowerState, reachable: bool) -> str:
    """Fuse CEC power state and network reachability into a client status."""
    if power is PowerState.ON:
        # Booted according to CEC but not on the network yet.
        return "on" if reachable else "starting"
    if power is PowerState.STANDBY:
        return "standby"
    if power is PowerState.OFF:
        return "off"
    return "on" if reachable else "unknown"


# ---------------------------------------------------------------------------
# Worker jobs
# ---------------------------------------------------------------------------


class Job:
    """A call running on a daemon thread, polled for completion."""

    def __init__(self, name: str, target, *args):
        self.name = name
        self._target = target
        self._args = args
        self._done = threading.Event()
        self._result = None
        self._error: BaseException | None = None

    def start(self) -> "Job":
        threading.Thread(target=self.run, daemon=True, name=self.name).start()
        return self

    def run(self) -> None:
        try:
            self._result = self._target(*self._args)
        except Exception as exc:
            self._error = exc
        finally:
            self._done.set()

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def result(self):
        """Return the call's value, re-raising whatever it raised."""
        if not self._done.is_set():
            raise RuntimeError(f"job {self.name} has not finished")
        if self._error is not None:
            raise self._error
        return self._result


def start_job(name: str, target, *args) -> Job:
    return Job(name, target, *args).start()


# ---------------------------------------------------------------------------
# Transport boundary
# ---------------------------------------------------------------------------


class LoggingTransport:
    """Transport used when no client channel is configured."""

    def send_status(self, snapshot: StatusSnapshot, solicited: bool) -> None:
        LOG.info(
            "Status %s (%s / %s)%s",
            snapshot.status,
            snapshot.address or "-",
            snapshot.hardware_id or "-",
            "" if solicited else " [broadcast]",
        )

    def send_wake_report(self, report: WakeReport) -> None:
        LOG.info("Wake report: %s %s", report.outcome, report.reason)


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class Coordinator:
    def __init__(
        self,
        power_monitor,
        detector,
        waker,
        transport=None,
        dispatch=start_job,
        clock=time.monotonic,
        wall_clock=time.time,
        cec_poll_sec: float = CEC_POLL_SEC,
        wake_timeout: float = WAKE_TIMEOUT_SEC,
        wake_retries: int = WAKE_RETRIES,
    ):
        self._power_monitor = power_monitor
        self._detector = detector
        self._waker = waker
        self.transport = transport if transport is not None else LoggingTransport()
        self._dispatch = dispatch
        self._clock = clock
        self._wall_clock = wall_clock
        self.cec_poll_sec = cec_poll_sec
        self.wake_timeout = wake_timeout
        self.wake_retries = wake_retries

        self._state = S.INIT
        self._prev_state = S.INIT
        self._state_entered = clock()

        self._power = PowerState.UNKNOWN
        self._reachable = False
        self._record: ApplianceRecord | None = detector.cached_record
        self._status_updated = wall_clock()

        self._inbox: deque = deque()
        self._wake_pending = False
        self._wake_job: Job | None = None
        self._detect_job: Job | None = None
        self._detect_started = 0.0
        self._last_detect: float | None = None
        self._last_power_poll: float | None = None

        self._change_state(S.IDLE)

    # ---- state ----

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def prev_state(self) -> CoordinatorState:
        return self._prev_state

    @property
    def power_state(self) -> PowerState:
        return self._power

    @property
    def reachable(self) -> bool:
        return self._reachable

    @property
    def record(self) -> ApplianceRecord | None:
        return self._record

    @property
    def wake_in_progress(self) -> bool:
        return self._wake_job is not None

    def is_error(self) -> bool:
        return self._state is S.ERROR

    def _change_state(self, new_state: CoordinatorState) -> None:
        if new_state is self._state:
            return
        LOG.info("State %s -> %s", self._state, new_state)
        self._prev_state = self._state
        self._state = new_state
        self._state_entered = self._clock()

    def handle_event(self, event: CoordinatorEvent) -> CoordinatorState:
        next_state = TRANSITIONS.get((self._state, event))
        if next_state is None:
            LOG.debug("Event %s ignored in state %s", event, self._state)
        else:
            self._change_state(next_state)
        return self._state

    # ---- observations ----

    def update_power_state(self, power: PowerState) -> bool:
        """Record a CEC power state; raises PowerChanged only from Idle."""
        if power is self._power:
            return False
        self._power = power
        self._status_updated = self._wall_clock()
        if self._state is S.IDLE:
            self.handle_event(E.POWER_CHANGED)
        return True

    def update_reachability(self, reachable: bool) -> None:
        # No event: reachability follows from detection and wake, which
        # already drive their own transitions.
        self._reachable = reachable
        self._status_updated = self._wall_clock()

    def update_record(self, record: ApplianceRecord) -> None:
        self._record = record
        self.update_reachability(record.reachable)

    def get_composite_status(self) -> str:
        return determine_status(self._power, self._reachable)

    def snapshot(self) -> StatusSnapshot:
        record = self._record
        return StatusSnapshot(
            status=self.get_composite_status(),
            address=record.address if record is not None else "",
            hardware_id=record.hardware_id if record is not None else "",
            timestamp=self._wall_clock(),
        )

    # ---- transport events ----

    def request_status(self) -> None:
        self._inbox.append(E.CLIENT_QUERY)

    def request_wake(self) -> None:
        self._inbox.append(E.WAKE_REQUEST)

    # ---- tick ----

    def tick(self) -> None:
        if self._state is S.ERROR:
            LOG.info("Recovering from error state")
            self.handle_event(E.NONE)

        now = self._clock()
        if (
            self._state not in (S.IDLE, S.ERROR)
            and now - self._state_entered >= STATE_TIMEOUT_SEC
        ):
            LOG.warning(
                "Stuck in %s for %ds; forcing error state",
                self._state,
                int(now - self._state_entered),
            )
            self._change_state(S.ERROR)

        self._collect_wake()
        self._collect_detection(now)
        self._poll_power(now)
        self._service_inbox()

        if self._state is S.IDLE:
            if self._wake_pending:
                self._start_wake()
            elif self._detection_due(now):
                self._start_detection(now)

        self._step()

    def _poll_power(self, now: float) -> None:
        if not self._power_monitor.opened:
            return
        if self._last_power_poll is None or now - self._last_power_poll >= self.cec_poll_sec:
            self._last_power_poll = now
            self._power_monitor.poll()
        for change in self._power_monitor.drain_changes():
            self.update_power_state(change.current)

    def _service_inbox(self) -> None:
        while self._inbox:
            event = self._inbox.popleft()
            if event is E.CLIENT_QUERY:
                self.handle_event(E.CLIENT_QUERY)
                self.transport.send_status(self.snapshot(), solicited=True)
                if self._state is S.QUERYING:
                    self.handle_event(E.COMPLETED)
            elif event is E.WAKE_REQUEST:
                if self._wake_job is not None:
                    LOG.info("Wake already in progress; request folded into it")
                else:
                    self._wake_pending = True

    def _step(self) -> None:
        if self._state is S.MONITORING:
            if not self._power_monitor.is_available(self._power_monitor.device_path):
                LOG.warning("CEC device %s disappeared", self._power_monitor.device_path)
                self.handle_event(E.FAILED)
                return
            if self._record is not None:
                self.update_reachability(self._detector.ping(self._record.address))
            self.handle_event(E.COMPLETED)
        elif self._state is S.BROADCASTING:
            self.transport.send_status(self.snapshot(), solicited=False)
            self.handle_event(E.COMPLETED)

    # ---- wake ----

    def _start_wake(self) -> None:
        self._wake_pending = False
        self.handle_event(E.WAKE_REQUEST)
        LOG.info(
            "Waking console (%d attempt(s), %ss verification)",
            max(1, self.wake_retries),
            self.wake_timeout,
        )
        self._wake_job = self._dispatch(
            "cec-wake",
            self._waker.wake_report,
            self._record,
            self.wake_retries,
            self.wake_timeout,
        )

    def _collect_wake(self) -> None:
        job = self._wake_job
        if job is None or not job.done():
            return
        self._wake_job = None

        try:
            report = job.result()
        except Exception as exc:
            LOG.error("Wake job failed unexpectedly: %s", exc)
            report = WakeReport(WakeOutcome.COMMAND_ERROR, f"internal error: {exc}", 0)

        if report.success:
            LOG.info("Console woke after %d attempt(s)", report.attempts)
            if self._record is not None:
                record = self._record.seen(reachable=True, now=self._wall_clock())
                self.update_record(record)
                try:
                    self._detector.save_cache(record)
                except (InvalidParameter, OSError) as exc:
                    LOG.warning("Could not refresh appliance cache: %s", exc)
            if self._state is S.WAKING:
                self.handle_event(E.COMPLETED)
        else:
            LOG.warning("Wake failed: %s (%s)", report.outcome, report.reason)
            if self._state is S.WAKING:
                self.handle_event(E.FAILED)

        # Requests queued since the job finished are answered by this
        # report, not by another wake.
        folded = self._drop_queued(E.WAKE_REQUEST)
        if folded:
            LOG.info("%d wake request(s) answered by the finished wake", folded)
        self.transport.send_wake_report(report)

    def _drop_queued(self, event: CoordinatorEvent) -> int:
        kept = deque(e for e in self._inbox if e is not event)
        dropped = len(self._inbox) - len(kept)
        self._inbox = kept
        return dropped

    # ---- detection ----

    def _detection_due(self, now: float) -> bool:
        if self._detect_job is not None:
            return False
        return self._last_detect is None or now - self._last_detect >= DETECT_INTERVAL_SEC

    def _start_detection(self, now: float) -> None:
        self._last_detect = now
        self._detect_started = now
        self._change_state(S.DETECTING)
        candidate = self._record.address if self._record is not None else None
        self._detect_job = self._dispatch("detect", self._detect, candidate)

    def _detect(self, candidate: str | None) -> ApplianceRecord | None:
        """Worker body: locate the console, then check it answers right now."""
        try:
            record = self._detector.locate(candidate)
        except ApplianceNotFound as exc:
            LOG.info("%s", exc)
            return None
        return replace(record, reachable=self._detector.ping(record.address))

    def _collect_detection(self, now: float) -> None:
        job = self._detect_job
        if job is None:
            return
        if not job.done():
            if self._state is S.DETECTING and now - self._detect_started >= DETECT_TIMEOUT_SEC:
                LOG.warning("Detection still running after %ds", DETECT_TIMEOUT_SEC)
                self.handle_event(E.DETECT_TIMEOUT)
            return
        self._detect_job = None

        try:
            record = job.result()
        except Exception as exc:
            LOG.error("Detection failed unexpectedly: %s", exc)
            record = None

        if record is None:
            self.update_reachability(False)
        else:
            self.update_record(record)
        if self._state is S.DETECTING:
            self.handle_event(E.COMPLETED)


def is_error(coordinator: Coordinator | None) -> bool:
    """Error check that treats a missing coordinator as failed."""
    if coordinator is None:
        return True
    return coordinator.is_error()
