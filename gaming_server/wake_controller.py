"""
wake_controller.py - wake the console over CEC and confirm it came up.

A wake is a CEC power-on key press followed by reachability polling of
the console's last known address.  The whole sequence can take tens of
seconds, so the coordinator runs it on a worker thread (see
coordinator.Job) and never calls into this module from the tick.

Cancellation is cooperative: verification checks elapsed time on every
iteration and stops by itself at its deadline.
"""

import logging
import os
import time

from .errors import CommandFailed, DeviceNotFound, NotInitialized, ProbeTimeout
from .models import ApplianceRecord, WakeOutcome, WakeReport
from .network_detector import validate_address
from .probes import CecCtl, SystemNetwork

LOG = logging.getLogger("gaming-server.wake")

SETTLE_SEC = 0.5
VERIFY_POLL_SEC = 1
RETRY_BACKOFF_SEC = 2


def device_usable(device_path: str | None) -> bool:
    """True if device_path exists and we may both read and write it."""
    if not device_path:
        return False
    return os.path.exists(device_path) and os.access(device_path, os.R_OK | os.W_OK)


class WakeController:
    """CEC wake with reachability verification and bounded retries."""

    def __init__(
        self,
        cec_device: str,
        cec=None,
        network=None,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.cec_device = cec_device
        self._cec = cec if cec is not None else CecCtl(cec_device)
        self._network = network if network is not None else SystemNetwork()
        self._sleep = sleep
        self._clock = clock
        self._opened = False

    def open(self) -> None:
        """Validate the CEC device; raises DeviceNotFound."""
        if not device_usable(self.cec_device):
            raise DeviceNotFound(
                f"CEC device not readable and writable: {self.cec_device!r}"
            )
        self._opened = True
        LOG.info("CEC wake controller using %s", self.cec_device)

    def close(self) -> None:
        self._opened = False

    def is_ready(self) -> bool:
        return self._opened and device_usable(self.cec_device)

    def send_wake_command(self) -> None:
        """Send the power-on key once, then wait SETTLE_SEC."""
        if not self._opened:
            raise NotInitialized("wake controller is not open")
        LOG.info("Sending CEC power-on")
        self._cec.send_wake()
        self._sleep(SETTLE_SEC)

    def verify(self, address: str | None, timeout_sec: float) -> bool:
        """Poll address once per second until it answers or timeout_sec passes."""
        if timeout_sec <= 0 or not validate_address(address):
            return False
        start = self._clock()
        while True:
            if self._network.probe_reachable(address):
                LOG.info("Console answered at %s", address)
                return True
            if self._clock() - start >= timeout_sec:
                return False
            self._sleep(VERIFY_POLL_SEC)

    def _attempt(self, record: ApplianceRecord | None, timeout_sec: float) -> tuple:
        if not self._opened:
            return WakeOutcome.NOT_READY, "wake controller is not open"
        try:
            self.send_wake_command()
        except ProbeTimeout as exc:
            return WakeOutcome.TIMEOUT, str(exc)
        except CommandFailed as exc:
            return WakeOutcome.COMMAND_ERROR, str(exc)

        address = record.address if record is not None else None
        if not self.verify(address, timeout_sec):
            if address is None:
                return WakeOutcome.VERIFICATION_FAILED, "no known address to verify"
            return (
                WakeOutcome.VERIFICATION_FAILED,
                f"{address} did not answer within {timeout_sec}s",
            )
        return WakeOutcome.SUCCESS, ""

    def wake(self, record: ApplianceRecord | None, timeout_sec: float) -> WakeOutcome:
        return self._attempt(record, timeout_sec)[0]

    def wake_report(
        self, record: ApplianceRecord | None, max_retries: int, timeout_sec: float
    ) -> WakeReport:
        """
        Wake with retries and describe what happened.

        At least one attempt is made whatever max_retries says.  Attempts
        are separated by RETRY_BACKOFF_SEC.  The report carries the
        outcome and failure reason of the last attempt.
        """
        attempts = max(1, max_retries)
        outcome, reason = WakeOutcome.NOT_READY, ""
        attempt = 0
        for attempt in range(1, attempts + 1):
            outcome, reason = self._attempt(record, timeout_sec)
            if outcome is WakeOutcome.SUCCESS:
                break
            LOG.warning("Wake attempt %d/%d failed: %s (%s)", attempt, attempts, outcome, reason)
            if outcome is WakeOutcome.NOT_READY:
                break
            if attempt < attempts:
                self._sleep(RETRY_BACKOFF_SEC)
        return WakeReport(outcome, reason, attempt)

    def wake_with_retry(
        self, record: ApplianceRecord | None, max_retries: int, timeout_sec: float
    ) -> WakeOutcome:
        return self.wake_report(record, max_retries, timeout_sec).outcome
