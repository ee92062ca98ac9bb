"""Print job execution: feed loop, pause/park, resume, stop and emergency stop.

A job is an ordered list of command lines fed one at a time through the
session's flow controller by a dedicated feed thread.  ``cursor`` counts
acknowledged commands, so after a pause the feed resumes from exactly the
next unsent line.

State machine::

    idle -> printing -> paused -> printing ...
                     -> completed | stopped
    paused -> stopped
    any    -> emergency_stopped

Pausing captures the tool position (``M114``), retracts, lifts Z and parks
XY.  Resuming climbs above the captured Z, returns to the captured XY,
descends, and primes the retracted filament back.  Motion has no
completion acknowledgement, so both wait a fixed settle time afterwards.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable

from printlink.config import ParkSettings
from printlink.errors import (
    CommandError,
    CommandInterrupted,
    InvalidJobState,
    LinkError,
    NotConnected,
    RetryBudgetExceeded,
)
from printlink.events import EventType
from printlink.models import JobStatus, Position, PrintJob
from printlink.parser import parse_position
from printlink.session import LinkManager, LinkSession

logger = logging.getLogger(__name__)

PRIMING_COMMANDS: tuple[str, ...] = ("M110 N0", "M155 S1", "M114")
EMERGENCY_COMMANDS: tuple[str, ...] = ("M410", "M112", "M108")

ProgressCallback = Callable[[int, int], None]

_FINISHED_EVENTS: dict[JobStatus, EventType] = {
    JobStatus.COMPLETED: EventType.JOB_COMPLETED,
    JobStatus.STOPPED: EventType.JOB_STOPPED,
}


def fmt_coord(value: float) -> str:
    """Format a coordinate for G-code: at most 3 decimals, no trailing zeros."""
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return "0" if text in ("-0", "") else text


class PrintExecutor:
    """Runs one :class:`PrintJob` at a time over the manager's session.

    Args:
        manager: Link manager providing the live session, log and events.
        park: Pause / resume motion parameters.
    """

    def __init__(self, manager: LinkManager, *, park: ParkSettings | None = None) -> None:
        self._manager = manager
        self.park = park or manager.settings.park
        self._log = manager.log
        self._events = manager.events

        self._lock = threading.RLock()
        # Held by the feed loop around each submission and by pause/resume
        # around their motion sequences.
        self._feed_lock = threading.Lock()
        # Set while the feed loop may send.
        self._gate = threading.Event()
        self._cancel = threading.Event()
        self._done = threading.Event()
        self._done.set()
        self._job: PrintJob | None = None
        self._session: LinkSession | None = None
        self._thread: threading.Thread | None = None
        self.last_error: BaseException | None = None

    # -- observables --------------------------------------------------------

    @property
    def job(self) -> PrintJob | None:
        return self._job

    @property
    def status(self) -> JobStatus:
        job = self._job
        return job.status if job is not None else JobStatus.IDLE

    # -- start --------------------------------------------------------------

    def start(
        self,
        commands: Iterable[str],
        *,
        on_progress: ProgressCallback | None = None,
        delay: float = 0.0,
    ) -> PrintJob:
        """Prime the link and start feeding *commands* on a background thread.

        Raises:
            InvalidJobState: A job is already printing or paused.
            NotConnected: There is no live session.
        """
        lines = [c.strip() for c in commands if c and c.strip()]
        with self._lock:
            if self._job is not None and self._job.status.is_active:
                raise InvalidJobState(f"Cannot start: a job is already {self._job.status.value}")
            session = self._manager.require_session()
            job = PrintJob(commands=lines, status=JobStatus.PRINTING, started_at=time.time())
            self._job = job
            self._session = session
            self._cancel = threading.Event()
            self._done = threading.Event()
            self._gate.set()
            self.last_error = None

        session.suspend_polling()
        try:
            for command in PRIMING_COMMANDS:
                session.flow.submit(command)
        except LinkError as exc:
            self._finish(job, JobStatus.STOPPED, exc)
            self._release(session)
            raise

        self._log.sys(f"Job started: {job.total} command(s)")
        logger.info("Job started with %d commands", job.total)
        self._events.publish(EventType.JOB_STARTED, {"total": job.total}, source="job")

        self._thread = threading.Thread(
            target=self._feed_loop,
            args=(job, session, on_progress, delay, self._cancel, self._done),
            name="printlink-feed",
            daemon=True,
        )
        self._thread.start()
        return job

    # -- feed loop ----------------------------------------------------------

    def _feed_loop(
        self,
        job: PrintJob,
        session: LinkSession,
        on_progress: ProgressCallback | None,
        delay: float,
        cancel: threading.Event,
        done: threading.Event,
    ) -> None:
        try:
            while True:
                if not self._gate.wait(0.1):
                    if not job.status.is_active:
                        return
                    continue
                with self._feed_lock:
                    with self._lock:
                        if job.status is JobStatus.PAUSED or not self._gate.is_set():
                            continue
                        if job.status is not JobStatus.PRINTING:
                            return
                        if job.cursor >= job.total:
                            self._finish(job, JobStatus.COMPLETED)
                            return
                        command = job.commands[job.cursor]

                    session.flow.submit(command)

                    with self._lock:
                        job.cursor += 1
                        job.buffer_occupancy = session.flow.occupancy
                        if not job.status.is_active:
                            job.discarded = job.remaining
                        sent, total = job.cursor, job.total

                self._report_progress(job, sent, total, on_progress)
                if delay > 0 and cancel.wait(delay):
                    return
        except LinkError as exc:
            with self._lock:
                finished = not job.status.is_active
            if isinstance(exc, CommandInterrupted) and finished:
                return
            self._finish(job, JobStatus.STOPPED, exc)
        except Exception as exc:
            logger.exception("Feed loop crashed")
            self._finish(job, JobStatus.STOPPED, exc)
        finally:
            self._release(session)
            done.set()

    def _report_progress(
        self,
        job: PrintJob,
        sent: int,
        total: int,
        on_progress: ProgressCallback | None,
    ) -> None:
        self._events.publish(
            EventType.JOB_PROGRESS,
            {"sent": sent, "total": total, "progress": job.progress},
            source="job",
        )
        if on_progress is not None:
            try:
                on_progress(sent, total)
            except Exception:
                logger.exception("Progress callback failed")

    def _release(self, session: LinkSession) -> None:
        if session.is_open:
            session.resume_polling()

    def _finish(self, job: PrintJob, status: JobStatus, error: BaseException | None = None) -> bool:
        """Move *job* to a terminal *status*; returns ``False`` if it already was terminal."""
        with self._lock:
            if not job.status.is_active:
                return False
            job.status = status
            job.finished_at = time.time()
            job.discarded = job.remaining
            if error is not None:
                self.last_error = error
                job.error = str(error)
                job.error_code = getattr(error, "code", type(error).__name__)
                if isinstance(error, RetryBudgetExceeded):
                    job.failed_command = error.command
            self._gate.set()
            self._cancel.set()

        event_type = _FINISHED_EVENTS[status]
        if error is not None:
            self._log.sys(f"Job {status.value} after {job.cursor}/{job.total}: {error}")
            logger.warning("Job %s after %d/%d commands: %s", status.value, job.cursor, job.total, error)
            event_type = EventType.JOB_FAILED
        else:
            self._log.sys(f"Job {status.value} after {job.cursor}/{job.total} command(s)")
            logger.info("Job %s after %d/%d commands", status.value, job.cursor, job.total)
        self._events.publish(event_type, job.to_dict(), source="job")
        return True

    # -- pause / resume -----------------------------------------------------

    def _capture_position(self, session: LinkSession) -> Position | None:
        ack = session.flow.submit("M114")
        for line in ack.lines:
            position = parse_position(line)
            if position is not None:
                return position
        return None

    def pause(self) -> Position:
        """Freeze the feed, then retract, lift and park.

        Returns the captured position.  If the position cannot be read the
        pause is abandoned before any motion and printing continues.

        Raises:
            InvalidJobState: The job is not printing.
            CommandError: The firmware did not report a position.
        """
        with self._lock:
            job = self._job
            if job is None or job.status is not JobStatus.PRINTING:
                raise InvalidJobState(f"Cannot pause: job is {self.status.value}")
            session = self._session
            self._gate.clear()
        assert session is not None

        with self._feed_lock:
            with self._lock:
                if job.status is not JobStatus.PRINTING:
                    raise InvalidJobState(f"Cannot pause: job is {job.status.value}")
            try:
                position = self._capture_position(session)
            except LinkError:
                self._gate.set()
                raise
            if position is None:
                self._gate.set()
                error = CommandError("M114", "no position report; pause abandoned")
                self._log.err(str(error), tag=error.code)
                raise error

            park = self.park
            lift = max(park.park_z, position.z + park.resume_clearance)
            sequence = (
                "G91",
                f"G1 E-{fmt_coord(park.retract)} F{park.retract_feedrate}",
                "G90",
                f"G1 Z{fmt_coord(lift)} F{park.z_feedrate}",
                f"G1 X{fmt_coord(park.park_x)} Y{fmt_coord(park.park_y)} F{park.xy_feedrate}",
            )
            self._run_motion(job, session, sequence)

            with self._lock:
                if job.status is not JobStatus.PRINTING:
                    raise InvalidJobState(f"Pause superseded: job is {job.status.value}")
                job.park_position = position
                job.status = JobStatus.PAUSED

        self._log.sys(f"Paused at {job.cursor}/{job.total}; parked from X{position.x} Y{position.y} Z{position.z}")
        self._events.publish(
            EventType.JOB_PAUSED,
            {"cursor": job.cursor, "total": job.total, "position": position.to_dict()},
            source="job",
        )
        return position

    def resume(self) -> None:
        """Return to the captured position and continue from the next unsent command.

        Raises:
            InvalidJobState: The job is not paused.
        """
        with self._lock:
            job = self._job
            if job is None or job.status is not JobStatus.PAUSED:
                raise InvalidJobState(f"Cannot resume: job is {self.status.value}")
            session = self._session
            position = job.park_position
        assert session is not None and position is not None

        park = self.park
        sequence = (
            "G90",
            f"G1 Z{fmt_coord(position.z + park.resume_clearance)} F{park.z_feedrate}",
            f"G1 X{fmt_coord(position.x)} Y{fmt_coord(position.y)} F{park.xy_feedrate}",
            f"G1 Z{fmt_coord(position.z)} F{park.z_feedrate}",
            "G91",
            f"G1 E{fmt_coord(park.retract)} F{park.retract_feedrate}",
            "G90",
        )
        with self._feed_lock:
            self._run_motion(job, session, sequence)
            with self._lock:
                if job.status is not JobStatus.PAUSED:
                    raise InvalidJobState(f"Resume superseded: job is {job.status.value}")
                job.status = JobStatus.PRINTING
                self._gate.set()

        self._log.sys(f"Resumed at {job.cursor}/{job.total}")
        self._events.publish(EventType.JOB_RESUMED, {"cursor": job.cursor, "total": job.total}, source="job")

    def _run_motion(self, job: PrintJob, session: LinkSession, sequence: Iterable[str]) -> None:
        """Submit a park/unpark sequence; a failure part-way stops the job."""
        try:
            for command in sequence:
                session.flow.submit(command)
        except CommandInterrupted:
            raise
        except LinkError as exc:
            self._finish(job, JobStatus.STOPPED, exc)
            raise
        if self.park.settle_time > 0:
            self._cancel.wait(self.park.settle_time)

    # -- stop ---------------------------------------------------------------

    def stop(self, reason: str | None = None) -> PrintJob:
        """Discard the remaining commands.  No repositioning is done.

        Raises:
            InvalidJobState: No job is printing or paused.
        """
        with self._lock:
            job = self._job
            if job is None or not job.status.is_active:
                raise InvalidJobState(f"Cannot stop: job is {self.status.value}")
            job.status = JobStatus.STOPPED
            job.finished_at = time.time()
            job.discarded = job.remaining
            job.error = reason
            self._gate.set()
            self._cancel.set()

        self._log.sys(f"Job stopped at {job.cursor}/{job.total}" + (f": {reason}" if reason else ""))
        logger.info("Job stopped at %d/%d", job.cursor, job.total)
        self._events.publish(EventType.JOB_STOPPED, job.to_dict(), source="job")
        return job

    def emergency_stop(self, reason: str | None = None) -> PrintJob:
        """Halt the machine immediately.  Never raises.

        Writes ``M410``, ``M112``, ``M108`` straight to the link (no queue,
        no retry), interrupts any in-flight wait and marks the job
        ``emergency_stopped``.  Works with no job and with no link.
        """
        reason = reason or "Emergency stop"
        with self._lock:
            job = self._job
            if job is None or not job.status.is_active:
                job = PrintJob(commands=[], started_at=time.time())
                self._job = job
            job.status = JobStatus.EMERGENCY_STOPPED
            job.finished_at = time.time()
            job.discarded = job.remaining
            job.error = reason
            self._gate.set()
            self._cancel.set()

        session = self._manager.session or self._session
        if session is None or not session.is_open:
            self._log.err(f"{reason}: no link, halt commands not sent", tag=NotConnected.code)
        else:
            for command in EMERGENCY_COMMANDS:
                try:
                    session.write_line(command)
                except Exception as exc:
                    self._log.err(f"Emergency command {command} failed: {exc}", tag=getattr(exc, "code", None))
            session.flow.interrupt(reason)

        self._log.err(f"EMERGENCY STOP: {reason} ({job.discarded} command(s) discarded)", tag="EMERGENCY_STOP")
        logger.warning("Emergency stop: %s", reason)
        self._events.publish(
            EventType.EMERGENCY_STOP,
            {"reason": reason, "cursor": job.cursor, "discarded": job.discarded},
            source="job",
        )
        return job

    # -- lifecycle helpers --------------------------------------------------

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the feed thread exits.  Returns ``False`` on timeout."""
        return self._done.wait(timeout)

    def reset(self) -> None:
        """Forget a finished job so the executor reports ``idle`` again."""
        with self._lock:
            if self._job is not None and self._job.status.is_active:
                raise InvalidJobState(f"Cannot reset: job is {self._job.status.value}")
            self._job = None
            self._session = None
