"""
bus.py - D-Bus front end for the coordinator.

Clients talk to gaming-server over the system (or session) bus:

    busctl call org.gamingserver.Console1 /org/gamingserver/Console1 \\
        org.gamingserver.Console1 Status

Status() and Wake() are asynchronous methods.  The call is queued on the
coordinator as a client event and the D-Bus reply is sent once the
coordinator publishes the matching payload on a later tick, so a Wake()
reply arrives only after verification has finished or failed.

Unsolicited status broadcasts go out as StatusChanged, and every wake
report is also emitted as WakeCompleted for clients that did not ask.

Everything here runs on the GLib main loop thread, the same thread that
drives Coordinator.tick().
"""

import logging

import dbus
import dbus.service

BUS_NAME = "org.gamingserver.Console1"
OBJECT_PATH = "/org/gamingserver/Console1"
INTERFACE = "org.gamingserver.Console1"

LOG = logging.getLogger("gaming-server.bus")


def to_dbus_dict(payload: dict) -> dbus.Dictionary:
    """Convert a flat payload dict to an a{sv} dictionary."""
    values = {}
    for key, value in payload.items():
        if isinstance(value, bool):
            values[key] = dbus.Boolean(value, variant_level=1)
        elif isinstance(value, int):
            values[key] = dbus.Int64(value, variant_level=1)
        elif isinstance(value, float):
            values[key] = dbus.Double(value, variant_level=1)
        else:
            values[key] = dbus.String(str(value), variant_level=1)
    return dbus.Dictionary(values, signature="sv")


class ConsoleService(dbus.service.Object):
    """Exports the coordinator on the bus and acts as its transport."""

    def __init__(self, bus, coordinator):
        self._bus_name = dbus.service.BusName(BUS_NAME, bus)
        super().__init__(self._bus_name, OBJECT_PATH)
        self._coordinator = coordinator
        self._status_replies = []
        self._wake_replies = []
        LOG.info("Exported %s on %s", OBJECT_PATH, BUS_NAME)

    # ---- D-Bus methods ----

    @dbus.service.method(
        INTERFACE,
        in_signature="",
        out_signature="a{sv}",
        async_callbacks=("reply", "error"),
    )
    def Status(self, reply, error):
        LOG.debug("Status requested over D-Bus")
        self._status_replies.append(reply)
        self._coordinator.request_status()

    @dbus.service.method(
        INTERFACE,
        in_signature="",
        out_signature="a{sv}",
        async_callbacks=("reply", "error"),
    )
    def Wake(self, reply, error):
        LOG.info("Wake requested over D-Bus")
        self._wake_replies.append(reply)
        self._coordinator.request_wake()

    @dbus.service.signal(INTERFACE, signature="a{sv}")
    def StatusChanged(self, status):
        pass

    @dbus.service.signal(INTERFACE, signature="a{sv}")
    def WakeCompleted(self, report):
        pass

    # ---- transport ----

    def send_status(self, snapshot, solicited: bool) -> None:
        payload = to_dbus_dict(snapshot.as_dict())
        if not solicited:
            self.StatusChanged(payload)
        elif self._status_replies:
            self._status_replies.pop(0)(payload)

    def send_wake_report(self, report) -> None:
        payload = to_dbus_dict(report.as_dict())
        # Requests folded into one wake all get the same answer.
        replies, self._wake_replies = self._wake_replies, []
        for reply in replies:
            reply(payload)
        self.WakeCompleted(payload)
