"""
Gateway Exceptions
==================

Errors that abort a gateway start. Anything recoverable is logged at the
call site instead of raised.
"""


class GatewayError(Exception):
    """Base gateway lifecycle exception."""
    pass


class GatewaySpawnError(GatewayError):
    """The sandbox could not start the gateway process."""
    pass


class GatewayStartupError(GatewayError):
    """The gateway process started but never became ready."""

    def __init__(self, message: str, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class ConfigWriteError(GatewayError):
    """The synthesized config could not be persisted."""
    pass
