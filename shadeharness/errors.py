"""Exception types raised by the rendering harness."""


class HarnessError(Exception):
    """Base class for all harness errors."""


class SetupError(HarnessError, RuntimeError):
    """A session was set up twice without an intervening teardown."""


class PortConflictError(HarnessError, RuntimeError):
    """The content server is active on a different port than requested."""

    def __init__(self, active_port: int, requested_port: int):
        self.active_port = active_port
        self.requested_port = requested_port
        super().__init__(
            f"Server already running on port {active_port}, cannot switch to {requested_port}"
        )


class HarnessTimeoutError(HarnessError, TimeoutError):
    """A bounded poll on browser-side state exceeded its deadline."""


class ForbiddenPathError(HarnessError, PermissionError):
    """A request path resolves outside of the root it is served from."""


class CaptureError(HarnessError):
    """No renderer or readback surface was available for a pixel capture."""


__all__ = [
    "HarnessError",
    "SetupError",
    "PortConflictError",
    "HarnessTimeoutError",
    "ForbiddenPathError",
    "CaptureError",
]
