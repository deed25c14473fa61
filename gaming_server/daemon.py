"""
gaming-server - HDMI-CEC power tracking and wake daemon for a game console

Runs on the host the console is plugged into over HDMI (typically a
router or small gateway with a CEC adapter) and keeps track of two
independent signals:

  1. CEC: the console's power status, polled with cec-ctl once per
     --poll-sec.

  2. Network: whether the console answers on the LAN.  The console is
     located through a cached record, a targeted ping of the last known
     address, or an nmap sweep of --subnet, and re-checked every minute.

The two are fused into one status (on, starting, standby, off, unknown)
published on D-Bus, where clients can also ask for a wake.  A wake
presses the CEC power-on key and then waits for the console to appear
on the network, retrying a bounded number of times.

Runtime dependencies:
    python3-gobject     (pygobject3)    - GLib main loop
    python3-dbus        (dbus-python)   - client-facing D-Bus service
    v4l-utils                           - provides cec-ctl
    iputils-ping, iproute2, nmap        - reachability and discovery

sd_notify is implemented inline; no python3-sdnotify dependency required.

Configuration
-------------
Every option falls back to an environment variable, so the daemon can be
configured entirely from a systemd EnvironmentFile:

    # /etc/default/gaming-server
    GAMING_SERVER_CEC_DEVICE=/dev/cec0
    GAMING_SERVER_SUBNET=192.168.1.0/24
    GAMING_SERVER_CACHE_PATH=/var/run/gaming/ps5_cache.json
    # GAMING_SERVER_HARDWARE_ID=AA:BB:CC:DD:EE:FF
    # GAMING_SERVER_WAKE_RETRIES=2
    # GAMING_SERVER_DEBUG=0
"""

import logging
import os
import signal
import socket
import sys
import time
from argparse import ArgumentParser, RawDescriptionHelpFormatter

from . import __version__
from .coordinator import (
    CEC_POLL_SEC,
    WAKE_RETRIES,
    WAKE_TIMEOUT_SEC,
    Coordinator,
)
from .errors import DeviceNotFound, InvalidParameter
from .network_detector import DEFAULT_VENDOR, NetworkDetector
from .power_monitor import PowerMonitor
from .probes import CEC_CTL, DEFAULT_LOGICAL_ADDRESS, CecCtl
from .wake_controller import WakeController

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CEC_DEVICE = "/dev/cec0"
DEFAULT_SUBNET = "192.168.1.0/24"
DEFAULT_CACHE_PATH = "/var/run/gaming/ps5_cache.json"
DEFAULT_TICK_MS = 100

LOG = logging.getLogger("gaming-server")

# ---------------------------------------------------------------------------
# systemd sd_notify (inline; avoids python3-sdnotify dependency)
# ---------------------------------------------------------------------------


def sd_notify(msg: str) -> None:
    """
    Send a sd_notify message to systemd over NOTIFY_SOCKET.

    No-op if NOTIFY_SOCKET is not set (not running under systemd, or
    NotifyAccess not configured).  Errors are silently ignored; a failed
    notification is not worth crashing the daemon over.
    """
    notify_socket = os.getenv("NOTIFY_SOCKET")
    if not notify_socket:
        return
    if notify_socket.startswith("@"):
        notify_socket = "\0" + notify_socket[1:]
    try:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
        with sock:
            sock.connect(notify_socket)
            sock.sendall(msg.encode())
    except OSError:
        pass


# ---------------------------------------------------------------------------
# Device helpers
# ---------------------------------------------------------------------------


def wait_for_device(device_path: str, timeout: int = 120, sleep=time.sleep) -> None:
    """
    Block until the CEC device node exists and is writable, or raise
    DeviceNotFound on timeout.

    Raises instead of calling sys.exit() so the caller controls shutdown
    and can send STOPPING=1 to systemd before exiting.
    """
    LOG.info("Waiting for CEC device %s (timeout %ds)...", device_path, timeout)
    end_time = time.monotonic() + timeout
    while True:
        if os.path.exists(device_path):
            if os.access(device_path, os.R_OK | os.W_OK):
                LOG.info("Found usable CEC device: %s", device_path)
                return
            LOG.error("CEC device %s exists but is not readable and writable", device_path)
            LOG.error(
                "Run the service in a group with access to the device "
                "(usually 'video'): ls -l %s",
                device_path,
            )
            raise DeviceNotFound(f"No read/write access to {device_path}")
        if time.monotonic() > end_time:
            raise DeviceNotFound(f"CEC device {device_path} not found after {timeout}s")
        sleep(1)


# ---------------------------------------------------------------------------
# Watchdog
# ---------------------------------------------------------------------------


def setup_watchdog(glib) -> None:
    """
    If systemd watchdog is enabled, schedule periodic WATCHDOG=1
    notifications at half the configured interval.

    The pings run on the same main loop as the tick, so a tick wedged in
    a probe is caught by systemd.
    """
    watchdog_usec = os.getenv("WATCHDOG_USEC")
    if not watchdog_usec:
        return

    interval_sec = int(watchdog_usec) / 2_000_000
    interval_ms = int(interval_sec * 1000)
    LOG.info("Systemd watchdog enabled (ping interval %.1fs)", interval_sec)

    def ping():
        sd_notify("WATCHDOG=1")
        return True

    glib.timeout_add(interval_ms, ping)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def parse_args(argv=None):
    """Parse arguments, with GAMING_SERVER_* environment variables as defaults."""

    def _bool_env(key: str) -> bool:
        v = os.getenv(key, "").strip().lower()
        return v in ("1", "true", "yes")

    def _env(key: str, default: str) -> str:
        return os.getenv(f"GAMING_SERVER_{key}", default)

    parser = ArgumentParser(
        description=__doc__,
        formatter_class=RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=_bool_env("GAMING_SERVER_DEBUG"),
        help="Enable debug logging [env: GAMING_SERVER_DEBUG]",
    )
    parser.add_argument(
        "--cec-device",
        default=_env("CEC_DEVICE", DEFAULT_CEC_DEVICE),
        metavar="PATH",
        help=f"CEC device node (default: {DEFAULT_CEC_DEVICE}) [env: GAMING_SERVER_CEC_DEVICE]",
    )
    parser.add_argument(
        "--device-timeout",
        type=int,
        default=int(_env("DEVICE_TIMEOUT", "120")),
        metavar="SECONDS",
        help="Seconds to wait for the CEC device at startup (default: 120) "
        "[env: GAMING_SERVER_DEVICE_TIMEOUT]",
    )
    parser.add_argument(
        "--logical-address",
        type=int,
        default=int(_env("LOGICAL_ADDRESS", str(DEFAULT_LOGICAL_ADDRESS))),
        metavar="N",
        help=(
            "CEC logical address of the console (0-14).  Consoles normally "
            f"register as playback device 1 (default: {DEFAULT_LOGICAL_ADDRESS}) "
            "[env: GAMING_SERVER_LOGICAL_ADDRESS]"
        ),
    )
    parser.add_argument(
        "--subnet",
        default=_env("SUBNET", DEFAULT_SUBNET),
        metavar="CIDR",
        help=f"Subnet to scan for the console (default: {DEFAULT_SUBNET}) [env: GAMING_SERVER_SUBNET]",
    )
    parser.add_argument(
        "--cache-path",
        default=_env("CACHE_PATH", DEFAULT_CACHE_PATH),
        metavar="PATH",
        help=f"Where the last detection is kept (default: {DEFAULT_CACHE_PATH}) "
        "[env: GAMING_SERVER_CACHE_PATH]",
    )
    parser.add_argument(
        "--hardware-id",
        default=_env("HARDWARE_ID", "") or None,
        metavar="MAC",
        help=(
            "MAC address of the console.  If unset the first scan matches "
            "on --vendor and the identity is learned from it "
            "[env: GAMING_SERVER_HARDWARE_ID]"
        ),
    )
    parser.add_argument(
        "--vendor",
        default=_env("VENDOR", DEFAULT_VENDOR),
        metavar="NAME",
        help=f"nmap MAC vendor to match before the console's MAC is known "
        f"(default: {DEFAULT_VENDOR}) [env: GAMING_SERVER_VENDOR]",
    )
    parser.add_argument(
        "--tick-ms",
        type=int,
        default=int(_env("TICK_MS", str(DEFAULT_TICK_MS))),
        metavar="MS",
        help=f"Coordinator tick interval (default: {DEFAULT_TICK_MS}) [env: GAMING_SERVER_TICK_MS]",
    )
    parser.add_argument(
        "--poll-sec",
        type=float,
        default=float(_env("POLL_SEC", str(CEC_POLL_SEC))),
        metavar="SECONDS",
        help=f"CEC power status poll interval (default: {CEC_POLL_SEC}) [env: GAMING_SERVER_POLL_SEC]",
    )
    parser.add_argument(
        "--wake-timeout",
        type=float,
        default=float(_env("WAKE_TIMEOUT", str(WAKE_TIMEOUT_SEC))),
        metavar="SECONDS",
        help=(
            "How long each wake attempt waits for the console to answer "
            f"(default: {WAKE_TIMEOUT_SEC}) [env: GAMING_SERVER_WAKE_TIMEOUT]"
        ),
    )
    parser.add_argument(
        "--wake-retries",
        type=int,
        default=int(_env("WAKE_RETRIES", str(WAKE_RETRIES))),
        metavar="N",
        help=f"Wake attempts per request (default: {WAKE_RETRIES}) [env: GAMING_SERVER_WAKE_RETRIES]",
    )
    parser.add_argument(
        "--bus",
        choices=("system", "session", "none"),
        default=_env("BUS", "system"),
        help="D-Bus bus to serve clients on, or none (default: system) [env: GAMING_SERVER_BUS]",
    )
    args = parser.parse_args(argv)

    if not 0 <= args.logical_address <= 14:
        parser.error(f"Invalid logical address {args.logical_address}: use 0-14")
    if args.tick_ms <= 0:
        parser.error("--tick-ms must be positive")
    return args


def build_coordinator(args) -> Coordinator:
    """Construct and open every component from parsed arguments."""
    cec = CecCtl(args.cec_device, logical_address=args.logical_address)

    monitor = PowerMonitor(args.cec_device, cec=cec)
    monitor.open()

    detector = NetworkDetector(
        args.subnet,
        args.cache_path,
        hardware_id=args.hardware_id,
        vendor=args.vendor,
    )

    waker = WakeController(args.cec_device, cec=cec)
    try:
        waker.open()
    except DeviceNotFound as exc:
        # Status tracking still works; wake requests report not_ready.
        LOG.warning("Wake disabled: %s", exc)

    return Coordinator(
        monitor,
        detector,
        waker,
        cec_poll_sec=args.poll_sec,
        wake_timeout=args.wake_timeout,
        wake_retries=args.wake_retries,
    )


def main(argv=None):
    if not os.path.exists(CEC_CTL):
        print(
            f"cec-ctl not found at {CEC_CTL}; please install v4l-utils",
            file=sys.stderr,
        )
        sys.exit(1)

    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stdout,
    )

    LOG.info(
        "Starting gaming-server %s (cec-device=%s, logical-address=%d, subnet=%s, "
        "cache=%s, hardware-id=%s, bus=%s)",
        __version__,
        args.cec_device,
        args.logical_address,
        args.subnet,
        args.cache_path,
        args.hardware_id or "learn",
        args.bus,
    )

    # Imported here so the library modules and their tests do not need
    # the GLib and D-Bus bindings installed.
    from gi.repository import GLib

    try:
        wait_for_device(args.cec_device, args.device_timeout)
        coordinator = build_coordinator(args)
    except (DeviceNotFound, InvalidParameter) as exc:
        LOG.error("%s", exc)
        sd_notify("STOPPING=1")
        sys.exit(1)

    if args.bus != "none":
        import dbus
        import dbus.mainloop.glib

        from .bus import ConsoleService

        dbus.mainloop.glib.DBusGMainLoop(set_as_default=True)
        try:
            bus = dbus.SystemBus() if args.bus == "system" else dbus.SessionBus()
            coordinator.transport = ConsoleService(bus, coordinator)
        except dbus.DBusException as exc:
            LOG.error("Cannot serve on the %s bus: %s", args.bus, exc)
            sd_notify("STOPPING=1")
            sys.exit(1)

    loop = GLib.MainLoop()

    def on_tick():
        coordinator.tick()
        return True

    GLib.timeout_add(args.tick_ms, on_tick)

    def on_sigterm(_signum, _frame):
        LOG.info("Received SIGTERM, shutting down")
        loop.quit()

    signal.signal(signal.SIGTERM, on_sigterm)

    setup_watchdog(GLib)
    sd_notify("READY=1")

    try:
        loop.run()
    except KeyboardInterrupt:
        LOG.info("Interrupted, exiting")
    finally:
        sd_notify("STOPPING=1")


if __name__ == "__main__":
    main()
