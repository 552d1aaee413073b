"""
Cooperative cancellation and I/O deadlines.

Nothing here interrupts running code: long loops call
``control.checkpoint(where)`` between sheets, every few hundred rows and
between stages, and the checkpoint raises when the job should stop.
"""

import threading
import time

from sheetpipe.exceptions.pipeline_exceptions import IOFailureError, JobCancelledError

CHECKPOINT_ROWS = 500


class CancellationToken:
    """Thread-safe flag set by whoever wants the job to stop."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class Deadline:
    """Monotonic deadline; ``None`` seconds means no limit."""

    def __init__(self, seconds: float | None = None) -> None:
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds if seconds is not None else None

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at


class JobControl:
    """
    Cancellation token plus deadline for one job.

    Args:
        token: Shared token, or None for a private one.
        timeout_seconds: I/O deadline in seconds, or None.
        resource: Name used in timeout errors (usually the file being read
            or written).
    """

    def __init__(
        self,
        token: CancellationToken | None = None,
        timeout_seconds: float | None = None,
        resource: str = "job",
    ) -> None:
        self.token = token or CancellationToken()
        self.deadline = Deadline(timeout_seconds)
        self.resource = resource

    def checkpoint(self, where: str | None = None) -> None:
        """
        Raise if the job was cancelled or the deadline passed.

        Raises:
            JobCancelledError: The token was cancelled.
            IOFailureError: The deadline expired.
        """
        if self.token.cancelled:
            raise JobCancelledError(where)
        if self.deadline.expired:
            raise IOFailureError(
                path=self.resource,
                operation=where or "process",
                reason=f"timed out after {self.deadline.seconds}s",
            )


NO_CONTROL = JobControl()
