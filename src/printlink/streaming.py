"""Streaming a whole G-code program through the print executor."""

from __future__ import annotations

import logging
from collections.abc import Callable

from printlink.job import PrintExecutor
from printlink.models import JobStatus, ProgramSummary

logger = logging.getLogger(__name__)


def split_program(text: str) -> list[str]:
    """Split program *text* into sendable command lines.

    Blank lines and lines starting with ``;`` or ``#`` are dropped, and
    trailing ``;`` comments are stripped.
    """
    lines: list[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith((";", "#")):
            continue
        line = line.split(";", 1)[0].strip()
        if line:
            lines.append(line)
    return lines


class StreamingAdapter:
    """Feeds a program through :class:`PrintExecutor` and waits for the outcome.

    ``progress`` reports ``(sent, total)`` of the program currently streaming.
    """

    def __init__(self, executor: PrintExecutor) -> None:
        self._executor = executor
        self.progress: tuple[int, int] = (0, 0)

    def send_program(
        self,
        text: str,
        *,
        delay: float = 0.0,
        on_progress: Callable[[int, int], None] | None = None,
        timeout: float | None = None,
    ) -> ProgramSummary:
        """Stream *text* and block until the job completes, stops or times out.

        Raises:
            RetryBudgetExceeded, TransportError, ...: The job failed; the
                triggering error is re-raised after being logged.
            InvalidJobState: Another job is running.
        """
        lines = split_program(text)
        self.progress = (0, len(lines))

        def _progress(sent: int, total: int) -> None:
            self.progress = (sent, total)
            if on_progress is not None:
                on_progress(sent, total)

        job = self._executor.start(lines, on_progress=_progress, delay=delay)
        if not self._executor.wait(timeout):
            logger.warning("Program still streaming after %ss (%d/%d)", timeout, job.cursor, job.total)

        error = self._executor.last_error
        if job.status is JobStatus.STOPPED and error is not None:
            logger.error("Program stopped at %d/%d: %s", job.cursor, job.total, error)
            raise error
        return ProgramSummary(sent=job.cursor, total=job.total, status=job.status, error=job.error)

