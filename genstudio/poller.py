"""Polling for asynchronous remote generation jobs.

A remote job service hands back an opaque job id on submission and exposes the
job's status through a separate read call. ``poll_job`` waits a fixed interval,
reads the status, and repeats until the job reaches a terminal state, the
attempt/time bound runs out, or the caller cancels.
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Union

from .errors import JobFailedError, JobTimeoutError
from .logging import get_logger
from .tasks import TaskCancelledError

LOGGER = get_logger("poller")


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    THROTTLED = "THROTTLED"


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.THROTTLED})


def parse_job_status(raw: Any) -> Union[JobStatus, str]:
    """Map a vendor status string onto JobStatus; unknown values stay raw strings."""
    normalized = str(raw or "").strip().upper()
    try:
        return JobStatus(normalized)
    except ValueError:
        return normalized


def is_terminal(status: Union[JobStatus, str]) -> bool:
    return isinstance(status, JobStatus) and status in TERMINAL_STATUSES


@dataclass(frozen=True)
class JobSnapshot:
    id: str
    status: Union[JobStatus, str]
    output: Optional[Union[str, list[str]]] = None
    failure: Optional[str] = None
    progress: Optional[float] = None

    @property
    def status_name(self) -> str:
        return self.status.value if isinstance(self.status, JobStatus) else str(self.status)


def resolve_job_output(snapshot: JobSnapshot) -> str:
    """Return the canonical output URI of a finished job or raise JobFailedError."""
    if snapshot.status != JobStatus.SUCCEEDED:
        raise JobFailedError(snapshot.status_name, snapshot.failure)
    output = snapshot.output
    if isinstance(output, (list, tuple)):
        output = output[0] if output else None
    if not output:
        raise JobFailedError(JobStatus.SUCCEEDED.value, "no output was returned")
    return str(output)


def poll_job(
    fetch: Callable[[str], JobSnapshot],
    job_id: str,
    *,
    interval_sec: float = 10.0,
    max_attempts: Optional[int] = None,
    timeout_sec: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    on_status: Optional[Callable[[JobSnapshot, int], None]] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> JobSnapshot:
    """Poll ``fetch(job_id)`` until the job reaches a terminal state.

    Each cycle waits ``interval_sec`` first, then issues exactly one status
    read. Errors raised by ``fetch`` end the loop immediately. Returns the
    terminal snapshot; the caller decides whether it is a success.

    Raises:
        TaskCancelledError: ``cancel_event`` was set before or during a wait.
        JobTimeoutError: ``max_attempts`` reads or ``timeout_sec`` seconds
            elapsed without a terminal state.
    """
    started_at = time.monotonic()
    attempt = 0
    while True:
        if max_attempts is not None and attempt >= max_attempts:
            raise JobTimeoutError(f"Task {job_id} did not finish after {attempt} status checks")
        if timeout_sec is not None and time.monotonic() - started_at >= timeout_sec:
            raise JobTimeoutError(f"Task {job_id} did not finish within {timeout_sec:g} seconds")

        if cancel_event is not None:
            if cancel_event.wait(interval_sec):
                LOGGER.info("job poll cancelled id=%s attempt=%d", job_id, attempt)
                raise TaskCancelledError(f"Polling for task {job_id} was cancelled")
        elif sleep is not None:
            sleep(interval_sec)
        else:
            time.sleep(interval_sec)

        attempt += 1
        snapshot = fetch(job_id)
        LOGGER.info("job poll id=%s status=%s attempt=%d", job_id, snapshot.status_name, attempt)
        if not isinstance(snapshot.status, JobStatus):
            LOGGER.warning("job poll unknown status id=%s status=%r", job_id, snapshot.status_name)
        if on_status is not None:
            on_status(snapshot, attempt)
        if is_terminal(snapshot.status):
            return snapshot
