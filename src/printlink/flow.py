"""Command flow control: one command in flight, acknowledged before the next.

The firmware's receive buffer is small (128 bytes on stock Marlin) and a
host that writes faster than the firmware consumes silently loses
commands.  :class:`FlowController` therefore writes a command only when
the estimated buffer occupancy leaves room for it, and waits for the
matching ``ok`` before the next submission is served.

Submissions from several threads (the job feed loop, the telemetry
poller, a pause sequence, a host calling ``send_command``) are served
strictly in arrival order by ticket.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable

from printlink.errors import (
    AcknowledgementTimeout,
    CommandError,
    CommandInterrupted,
    LinkError,
    NotConnected,
    RetryBudgetExceeded,
)
from printlink.models import Acknowledgement, PendingCommand, ResponseEvent, ResponseKind
from printlink.serial_log import SerialLog

logger = logging.getLogger(__name__)

# Marlin's default RX buffer in bytes.
DEFAULT_CAPACITY: int = 128
DEFAULT_COMMAND_COST: int = 32
DEFAULT_MAX_ATTEMPTS: int = 3
DEFAULT_ACK_TIMEOUT: float = 10.0
# Long homing / heating moves keep reporting "busy:" for minutes.
DEFAULT_MAX_BUSY_WAIT: float = 900.0
# Marlin follows an Error: line with its own ok (often after a Resend:).
DEFAULT_ERROR_GRACE: float = 0.5

DEFAULT_CHANNEL_SIZE: int = 1000

# Granularity at which waits re-check interrupt / abort flags.
_POLL_INTERVAL: float = 0.05


# ---------------------------------------------------------------------------
# Response channel
# ---------------------------------------------------------------------------


class ResponseChannel:
    """Bounded single-consumer queue of parsed firmware lines.

    Fed by the session read loop, drained by the flow controller.  When
    full, the oldest event is dropped so the read loop never blocks.
    """

    def __init__(self, maxsize: int = DEFAULT_CHANNEL_SIZE) -> None:
        self._queue: queue.Queue[ResponseEvent] = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def put(self, event: ResponseEvent) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    oldest = self._queue.get_nowait()
                except queue.Empty:
                    continue
                self.dropped += 1
                logger.warning("Response channel full; dropped oldest line %r", oldest.raw)

    def get(self, timeout: float) -> ResponseEvent | None:
        try:
            return self._queue.get(timeout=max(timeout, 0.0))
        except queue.Empty:
            return None

    def drain(self) -> list[ResponseEvent]:
        items: list[ResponseEvent] = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items

    def __len__(self) -> int:
        return self._queue.qsize()


# ---------------------------------------------------------------------------
# Flow controller
# ---------------------------------------------------------------------------


class FlowController:
    """Serialises command submission over one link.

    Args:
        write_line: Callable writing one newline-terminated command to the
            transport.  Raises :class:`TransportError` on failure.
        channel: The session's response channel.
        capacity: Modelled firmware buffer size in bytes.
        command_cost: Occupancy charged per command when not byte-accurate.
        byte_accurate: Charge ``len(command) + 1`` instead of a fixed cost.
        max_attempts: Attempts per command before :class:`RetryBudgetExceeded`.
        ack_timeout: Seconds to wait for ``ok`` per attempt.
        max_busy_wait: Upper bound on deadline extensions from ``busy:`` lines.
        error_grace: How long to wait for the ``ok`` that trails an ``Error:``
            line, so it is not taken as the next command's acknowledgement.
        serial_log: Log receiving ``err`` entries for failed attempts.
    """

    def __init__(
        self,
        write_line: Callable[[str], None],
        channel: ResponseChannel,
        *,
        capacity: int = DEFAULT_CAPACITY,
        command_cost: int = DEFAULT_COMMAND_COST,
        byte_accurate: bool = False,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        ack_timeout: float = DEFAULT_ACK_TIMEOUT,
        max_busy_wait: float = DEFAULT_MAX_BUSY_WAIT,
        error_grace: float = DEFAULT_ERROR_GRACE,
        serial_log: SerialLog | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if not byte_accurate and not 1 <= command_cost <= capacity:
            raise ValueError(f"command_cost must be between 1 and capacity ({capacity}), got {command_cost}")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if ack_timeout <= 0:
            raise ValueError("ack_timeout must be > 0")

        self._write_line = write_line
        self._channel = channel
        self.capacity = capacity
        self.command_cost = command_cost
        self.byte_accurate = byte_accurate
        self.max_attempts = max_attempts
        self.ack_timeout = ack_timeout
        self.max_busy_wait = max_busy_wait
        self.error_grace = error_grace
        self._log = serial_log

        self._cond = threading.Condition()
        self._next_ticket = 0
        self._serving = 0
        self._occupancy = 0
        self._pending: PendingCommand | None = None
        self._interrupt: str | None = None
        self._aborted: LinkError | None = None

    # -- observables --------------------------------------------------------

    @property
    def occupancy(self) -> int:
        """Current estimate of bytes held in the firmware's receive buffer."""
        with self._cond:
            return self._occupancy

    @property
    def pending(self) -> PendingCommand | None:
        """The command written but not yet acknowledged, if any."""
        with self._cond:
            return self._pending

    @property
    def is_idle(self) -> bool:
        with self._cond:
            return self._serving == self._next_ticket

    @property
    def aborted(self) -> bool:
        return self._aborted is not None

    def cost_of(self, command: str) -> int:
        if self.byte_accurate:
            return len(command.encode("ascii", errors="replace")) + 1
        return self.command_cost

    # -- submission ---------------------------------------------------------

    def submit(self, command: str) -> Acknowledgement:
        """Write *command* and block until the firmware acknowledges it.

        Raises:
            RetryBudgetExceeded: Every attempt timed out or was rejected.
            TransportError: The write failed (never retried).
            CommandInterrupted: :meth:`interrupt` was called while waiting.
            NotConnected: The controller was aborted by session teardown.
        """
        command = command.strip()
        if not command:
            raise ValueError("command must not be empty")
        cost = self.cost_of(command)
        if cost > self.capacity:
            raise ValueError(
                f"Command of {cost} bytes cannot fit the {self.capacity}-byte firmware buffer: {command!r}"
            )

        with self._cond:
            self._raise_if_aborted()
            ticket = self._next_ticket
            self._next_ticket += 1
            while self._serving != ticket:
                self._raise_if_aborted()
                self._cond.wait(_POLL_INTERVAL)
        return self._run(ticket, command, cost)

    def try_submit(self, command: str) -> Acknowledgement | None:
        """Submit only if nothing is queued or in flight; else return ``None``."""
        command = command.strip()
        cost = self.cost_of(command)
        with self._cond:
            if self._aborted is not None or self._serving != self._next_ticket:
                return None
            ticket = self._next_ticket
            self._next_ticket += 1
        return self._run(ticket, command, cost)

    def interrupt(self, reason: str = "interrupted") -> None:
        """Wake the in-flight wait with :class:`CommandInterrupted`."""
        with self._cond:
            if self._pending is not None:
                self._interrupt = reason
            self._cond.notify_all()

    def abort(self, error: LinkError | None = None) -> None:
        """Fail the in-flight and every future submission with *error*."""
        with self._cond:
            if self._aborted is None:
                self._aborted = error or NotConnected("Link closed")
            self._cond.notify_all()

    # -- internals ----------------------------------------------------------

    def _raise_if_aborted(self) -> None:
        if self._aborted is not None:
            raise self._aborted

    def _advance_locked(self) -> None:
        self._serving += 1
        self._cond.notify_all()

    def _run(self, ticket: int, command: str, cost: int) -> Acknowledgement:
        started = time.monotonic()
        last_error: LinkError | None = None
        try:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    lines = self._attempt(command, cost, attempt)
                except (AcknowledgementTimeout, CommandError) as exc:
                    last_error = exc
                    logger.warning("Attempt %d/%d for %r failed: %s", attempt, self.max_attempts, command, exc)
                    if self._log is not None:
                        self._log.err(f"{exc} (attempt {attempt}/{self.max_attempts})", tag=exc.code)
                    continue
                return Acknowledgement(
                    command=command,
                    lines=tuple(lines),
                    attempts=attempt,
                    elapsed=time.monotonic() - started,
                )
            assert last_error is not None
            error = RetryBudgetExceeded(command, self.max_attempts, last_error)
            if self._log is not None:
                self._log.err(str(error), tag=error.code)
            raise error
        finally:
            with self._cond:
                self._advance_locked()

    def _attempt(self, command: str, cost: int, attempt: int) -> list[str]:
        for stale in self._channel.drain():
            logger.debug("Discarding stale response before %r: %s", command, stale.raw)

        with self._cond:
            self._raise_if_aborted()
            if self._occupancy + cost > self.capacity:
                # One command in flight at a time, so this means a leak.
                raise RuntimeError(
                    f"Buffer occupancy {self._occupancy} + {cost} would exceed capacity {self.capacity}"
                )
            self._occupancy += cost
            self._pending = PendingCommand(text=command, sent_at=time.time(), retry_count=attempt - 1)
            self._interrupt = None

        try:
            self._write_line(command)
            return self._await_ack(command)
        finally:
            with self._cond:
                self._occupancy -= cost
                self._pending = None
                self._interrupt = None

    def _await_ack(self, command: str) -> list[str]:
        lines: list[str] = []
        now = time.monotonic()
        deadline = now + self.ack_timeout
        busy_limit = now + self.max_busy_wait
        rejected: ResponseEvent | None = None
        while True:
            with self._cond:
                self._raise_if_aborted()
                if self._interrupt is not None:
                    raise CommandInterrupted(f"'{command}' interrupted: {self._interrupt}")

            now = time.monotonic()
            remaining = deadline - now
            if remaining <= 0:
                if rejected is not None:
                    raise CommandError(command, rejected.raw)
                raise AcknowledgementTimeout(command, self.ack_timeout)

            event = self._channel.get(min(remaining, _POLL_INTERVAL))
            if event is None:
                continue
            if event.kind is ResponseKind.ACK:
                if rejected is not None:
                    raise CommandError(command, rejected.raw)
                lines.append(event.raw)
                return lines
            if event.kind is ResponseKind.ERROR:
                if rejected is None:
                    rejected = event
                    deadline = min(deadline, time.monotonic() + self.error_grace)
                continue
            if event.kind is ResponseKind.BUSY:
                if rejected is None:
                    deadline = max(deadline, min(time.monotonic() + self.ack_timeout, busy_limit))
                continue
            lines.append(event.raw)
