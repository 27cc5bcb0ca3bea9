"""Exceptions shared by the dashboard modules."""


class AuthError(Exception):
    """Sign-in / sign-up failure with a stable code and a user-facing message."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class LoadError(Exception):
    """Invalid load request. `status` is the HTTP status the API answers with."""

    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class TelemetryError(Exception):
    """The telemetry feed could not be read or written."""


class ControllerError(Exception):
    """A switching command could not be delivered to the controller."""
