"""Exception hierarchy for printlink.

Every failure the link, flow controller or job state machine can report is
a :class:`LinkError` subclass carrying a stable :attr:`LinkError.code` so
that log entries and CLI output can tag it without string matching.  Raw
pyserial / OS exceptions never escape the package; they are wrapped and
kept on :attr:`LinkError.cause`.
"""

from __future__ import annotations


class LinkError(Exception):
    """Base exception for all printer-link errors.

    Args:
        message: Human-readable, actionable description.
        cause: The underlying exception, if any.
    """

    code: str = "LINK_ERROR"

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class TransportError(LinkError):
    """Opening, reading from or writing to the serial port failed."""

    code = "TRANSPORT_ERROR"


class DeviceRemoved(TransportError):
    """The serial device disappeared (USB unplugged, printer powered off)."""

    code = "DEVICE_REMOVED"


class HandshakeFailure(LinkError):
    """No firmware signature was seen at any candidate baud rate."""

    code = "HANDSHAKE_FAILURE"

    def __init__(
        self,
        message: str,
        *,
        tried: tuple[int, ...] = (),
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.tried = tried


class NotConnected(LinkError):
    """An operation needed a live session but none exists."""

    code = "NOT_CONNECTED"


class ConnectionInProgress(LinkError):
    """``connect()`` was called while another connect is still running."""

    code = "CONNECTION_IN_PROGRESS"


class AcknowledgementTimeout(LinkError):
    """No ``ok`` (or error) arrived for a command within its deadline."""

    code = "ACK_TIMEOUT"

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(f"Timeout ({timeout:g}s) waiting for 'ok' after '{command}'")
        self.command = command
        self.timeout = timeout


class CommandError(LinkError):
    """The firmware answered a command with an error line."""

    code = "COMMAND_ERROR"

    def __init__(self, command: str, response: str) -> None:
        super().__init__(f"Firmware error for '{command}': {response}")
        self.command = command
        self.response = response


class RetryBudgetExceeded(LinkError):
    """A command failed on every allowed attempt."""

    code = "RETRY_BUDGET_EXCEEDED"

    def __init__(self, command: str, attempts: int, last_error: LinkError) -> None:
        super().__init__(
            f"'{command}' failed after {attempts} attempt(s): {last_error}",
            cause=last_error,
        )
        self.command = command
        self.attempts = attempts
        self.last_error = last_error


class CommandInterrupted(LinkError):
    """A pending command wait was cut short (emergency stop)."""

    code = "COMMAND_INTERRUPTED"


class InvalidJobState(LinkError):
    """A job operation is not allowed in the job's current state."""

    code = "INVALID_JOB_STATE"
