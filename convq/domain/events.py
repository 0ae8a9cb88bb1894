"""Domain events for the conversion supervisor.

Events represent lifecycle changes and notifications that flow through the
EventBus, decoupling the scheduler and process supervisor from whatever UI is
listening.

Every job-scoped event carries ``job_id``. Ordering per job is:
``JobQueued`` → ``JobStarted`` → ``JobLogLine``/``JobProgressUpdated``* →
``JobCompleted`` | ``JobFailed``. ``JobRemoved`` may follow a terminal event or
replace the whole running part of the sequence for a job removed while queued.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pathlib import Path
from typing import Optional
from pydantic import BaseModel


class Event(BaseModel):
    """Base class for all domain events."""

    pass


class JobEvent(Event):
    """Base class for events related to a specific conversion job."""

    job_id: str


class JobQueued(JobEvent):
    """Emitted when a submission enters the waiting list."""

    input_path: Path
    output_path: Path
    position: int


class JobStarted(JobEvent):
    """Emitted when a job is admitted and its encoder process was spawned."""

    pid: Optional[int] = None


class JobProgressUpdated(JobEvent):
    """Emitted as the encoder reports progress.

    ``progress_percent`` is None while the total duration is unknown
    (indeterminate progress).
    """

    progress_percent: Optional[float] = None
    elapsed_seconds: Optional[float] = None


class JobLogLine(JobEvent):
    """One raw diagnostic line from the encoder's stderr."""

    line: str


class JobCompleted(JobEvent):
    """Emitted when the encoder exits with code 0."""

    output_path: Path


class JobFailed(JobEvent):
    """Emitted on spawn failure, nonzero exit or termination."""

    error_message: str
    progress_percent: Optional[float] = None


class JobRemoved(JobEvent):
    """Emitted when a non-running job is dropped from the scheduler."""

    pass


class ConcurrencyChanged(Event):
    """Emitted when the maximum number of concurrent jobs changes."""

    old_value: int
    new_value: int


class SupervisorFault(Event):
    """System-level failure: the OS refused to spawn processes at all."""

    message: str
