"""
errors.py - exception hierarchy shared by every gaming-server component.

Components recover from most of these locally (fall back to the last
known power state, to the next detection tier, or to an Unknown result).
Only the coordinator decides when a failure is worth an Error state.
"""


class GamingServerError(Exception):
    """Base class for all gaming-server errors."""


class NotInitialized(GamingServerError):
    """A component was used before open() or after close()."""


class InvalidParameter(GamingServerError):
    """An argument failed validation (empty path, malformed address...)."""


class DeviceNotFound(GamingServerError):
    """The CEC device node is missing or not accessible."""


class CommandFailed(GamingServerError):
    """An external tool could not be run or exited non-zero."""


class ParseFailed(GamingServerError):
    """An external tool's output contained nothing we recognise."""


class ProbeTimeout(GamingServerError):
    """An external tool did not finish within its time limit."""


class CacheInvalid(GamingServerError):
    """The persisted appliance cache is unreadable or incomplete."""


class ApplianceNotFound(GamingServerError):
    """Every detection tier failed to locate the appliance."""
