"""gaming-server: HDMI-CEC power tracking and wake daemon for a game console."""

__version__ = "1.0.0"
