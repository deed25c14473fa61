from __future__ import annotations

import pytest

dbus = pytest.importorskip("dbus")

from gaming_server.bus import to_dbus_dict  # noqa: E402


def test_to_dbus_dict_types() -> None:
    payload = to_dbus_dict(
        {"status": "on", "attempts": 2, "timestamp": 1.5, "success": True}
    )

    assert payload.signature == "sv"
    assert isinstance(payload["status"], dbus.String)
    assert isinstance(payload["attempts"], dbus.Int64)
    assert isinstance(payload["timestamp"], dbus.Double)
    assert isinstance(payload["success"], dbus.Boolean)
    assert payload["attempts"] == 2
