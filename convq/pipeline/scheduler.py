import logging
import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Tuple

from convq.config.models import ConversionConfig
from convq.domain.errors import InvalidJobError, SpawnError, SpawnExhaustedError
from convq.domain.events import (
    ConcurrencyChanged,
    Event,
    JobCompleted,
    JobFailed,
    JobProgressUpdated,
    JobQueued,
    JobRemoved,
    JobStarted,
    SupervisorFault,
)
from convq.domain.models import ConversionJob, JobStatus, SourceMetadata
from convq.infrastructure.event_bus import EventBus
from convq.infrastructure.ffmpeg import build_output_path, compile_ffmpeg_args, effective_duration
from convq.infrastructure.supervisor import ProcessHandle, ProcessOutcome, ProcessSupervisor

TERMINATED_MESSAGE = "Terminated by user"


def default_build_args(job: ConversionJob) -> List[str]:
    return compile_ffmpeg_args(job.input_path, job.output_path, job.config, job.metadata)


class JobScheduler:
    """Admits conversion jobs under a concurrency cap and tracks their lifecycle.

    All job state lives behind one Condition. Events are collected while the
    lock is held and published once it is released, so subscribers may call
    back into the scheduler. Every terminal transition admits the next queued
    job in FIFO order; lowering the cap never preempts running jobs.
    """

    def __init__(
        self,
        event_bus: EventBus,
        supervisor: ProcessSupervisor,
        encoder_path: str = "ffmpeg",
        max_concurrency: int = 2,
        build_args: Optional[Callable[[ConversionJob], List[str]]] = None,
    ):
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.event_bus = event_bus
        self.supervisor = supervisor
        self.encoder_path = encoder_path
        self.build_args = build_args or default_build_args
        self.logger = logging.getLogger(__name__)

        self._cond = threading.Condition()
        self._max_concurrency = max_concurrency
        self._jobs: Dict[str, ConversionJob] = {}
        self._queue: Deque[str] = deque()
        self._running: Dict[str, Optional[ProcessHandle]] = {}
        self._accepting = True

        self._unsubscribe = self.event_bus.subscribe(JobProgressUpdated, self._on_progress)

    # --- introspection -------------------------------------------------

    @property
    def max_concurrency(self) -> int:
        with self._cond:
            return self._max_concurrency

    @property
    def running_count(self) -> int:
        with self._cond:
            return len(self._running)

    def running_ids(self) -> List[str]:
        with self._cond:
            return list(self._running)

    def queued_ids(self) -> List[str]:
        with self._cond:
            return list(self._queue)

    def get(self, job_id: str) -> ConversionJob:
        with self._cond:
            return self._jobs[job_id]

    def jobs(self) -> List[ConversionJob]:
        with self._cond:
            return list(self._jobs.values())

    # --- submission ----------------------------------------------------

    def submit_job(
        self,
        job_id: str,
        input_path: Path,
        output_name: Optional[str] = None,
        config: Optional[ConversionConfig] = None,
        metadata: Optional[SourceMetadata] = None,
    ) -> ConversionJob:
        """Build a job from user input and queue it."""
        config = config or ConversionConfig()
        input_path = Path(input_path)
        job = ConversionJob(
            id=job_id,
            input_path=input_path,
            output_path=build_output_path(input_path, config.container, output_name),
            config=config,
            metadata=metadata,
        )
        self.submit(job)
        return job

    def submit(self, job: ConversionJob):
        """Queue an IDLE job. Never blocks on execution.

        The job keeps a deep copy of its config, so later edits by the caller do
        not leak into the queued conversion.
        """
        if job.status != JobStatus.IDLE:
            raise InvalidJobError(f"Job {job.id} is {job.status.value}, expected IDLE")
        if not Path(job.input_path).is_file():
            raise InvalidJobError(f"Input file not found: {job.input_path}")

        with self._cond:
            if not self._accepting:
                raise InvalidJobError("Scheduler is shut down")
            existing = self._jobs.get(job.id)
            if existing is not None and not existing.status.is_terminal:
                raise InvalidJobError(f"Job id {job.id} is already in use")

            job.config = job.config.model_copy(deep=True)
            job.status = JobStatus.QUEUED
            job.submitted_at = datetime.now()
            self._jobs[job.id] = job
            self._queue.append(job.id)
            events: List[Event] = [JobQueued(
                job_id=job.id,
                input_path=job.input_path,
                output_path=job.output_path,
                position=len(self._queue),
            )]
            self.logger.info(f"JOB_QUEUED: {job.id} {job.input_path.name} -> {job.output_path.name}")
            started = self._admit_locked(events)
            self._cond.notify_all()
        self._dispatch(events, started)

    # --- admission -----------------------------------------------------

    def _admit_locked(self, events: List[Event]) -> List[Tuple[ConversionJob, ProcessHandle]]:
        """Spawn queued jobs while slots are free. Caller holds the lock."""
        started = []
        while self._queue and len(self._running) < self._max_concurrency:
            job = self._jobs[self._queue.popleft()]
            try:
                args = self.build_args(job)
                total_duration = effective_duration(job.config, job.metadata)
                handle = self.supervisor.launch(
                    job.id,
                    self.encoder_path,
                    args,
                    on_exit=self._on_exit,
                    total_duration=total_duration,
                    offset=job.config.trim_start_seconds or 0.0,
                )
            except SpawnExhaustedError as e:
                self._queue.appendleft(job.id)
                self.logger.error(f"SPAWN_EXHAUSTED: {job.id} stays queued: {e.message}")
                events.append(SupervisorFault(message=e.message))
                break
            except SpawnError as e:
                self._fail_unstarted(job, e.message, events)
                self.logger.error(f"JOB_END: {job.id} status=failed (spawn): {e.message}")
                continue
            except Exception as e:
                message = f"Cannot build ffmpeg command: {e}"
                self._fail_unstarted(job, message, events)
                self.logger.exception(f"JOB_END: {job.id} status=failed (args)")
                continue

            job.status = JobStatus.RUNNING
            job.started_at = datetime.now()
            self._running[job.id] = handle
            self.logger.info(f"JOB_START: {job.id} pid={handle.pid} running={len(self._running)}/{self._max_concurrency}")
            started.append((job, handle))
        return started

    def _fail_unstarted(self, job: ConversionJob, message: str, events: List[Event]):
        job.status = JobStatus.FAILED
        job.error_message = message
        job.finished_at = datetime.now()
        events.append(JobFailed(job_id=job.id, error_message=message, progress_percent=job.progress_percent))

    def _dispatch(self, events: List[Event], started: List[Tuple[ConversionJob, ProcessHandle]]):
        for event in events:
            self.event_bus.publish(event)
        for job, handle in started:
            self.event_bus.publish(JobStarted(job_id=job.id, pid=handle.pid))
            handle.start()

    # --- process callbacks ---------------------------------------------

    def _on_progress(self, event: JobProgressUpdated):
        if event.progress_percent is None:
            return
        with self._cond:
            job = self._jobs.get(event.job_id)
            if job is None or job.status != JobStatus.RUNNING:
                return
            if job.progress_percent is None or event.progress_percent > job.progress_percent:
                job.progress_percent = event.progress_percent

    def _on_exit(self, outcome: ProcessOutcome):
        events: List[Event] = []
        with self._cond:
            self._running.pop(outcome.job_id, None)
            job = self._jobs.get(outcome.job_id)
            if job is not None:
                job.finished_at = datetime.now()
                if outcome.succeeded:
                    job.status = JobStatus.COMPLETED
                    job.progress_percent = 100.0
                    events.append(JobCompleted(job_id=job.id, output_path=job.output_path))
                    self.logger.info(f"JOB_END: {job.id} status=completed")
                else:
                    job.status = JobStatus.FAILED
                    if outcome.terminated:
                        job.error_message = TERMINATED_MESSAGE
                    elif outcome.error is not None:
                        job.error_message = outcome.error.message
                    else:
                        job.error_message = f"ffmpeg exited with code {outcome.return_code}"
                    events.append(JobFailed(
                        job_id=job.id,
                        error_message=job.error_message,
                        progress_percent=job.progress_percent,
                    ))
                    self.logger.warning(f"JOB_END: {job.id} status=failed code={outcome.return_code} terminated={outcome.terminated}")
                    self._discard_partial_output(job)
            started = self._admit_locked(events) if self._accepting else []
            self._cond.notify_all()
        self._dispatch(events, started)

    def _discard_partial_output(self, job: ConversionJob):
        try:
            if job.output_path.exists():
                job.output_path.unlink()
        except OSError as e:
            self.logger.warning(f"Could not remove partial output {job.output_path}: {e}")

    # --- control -------------------------------------------------------

    def remove(self, job_id: str) -> bool:
        """Drop a non-running job. Returns False for a RUNNING job.

        Raises:
            KeyError: unknown job id.
        """
        with self._cond:
            job = self._jobs[job_id]
            if job.status == JobStatus.RUNNING:
                return False
            if job_id in self._queue:
                self._queue.remove(job_id)
            del self._jobs[job_id]
            self._cond.notify_all()
        self.logger.info(f"JOB_REMOVED: {job_id} (was {job.status.value})")
        self.event_bus.publish(JobRemoved(job_id=job_id))
        return True

    def terminate(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Kill a running job and block until its process exited and its slot is free.

        Returns False when the job is not RUNNING.

        Raises:
            KeyError: unknown job id.
        """
        with self._cond:
            job = self._jobs[job_id]
            if job.status != JobStatus.RUNNING:
                return False
        return self.supervisor.terminate(job_id, timeout=timeout)

    def set_max_concurrency(self, value: int):
        """Change the cap for future admissions; running jobs are never preempted."""
        if value < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {value}")
        with self._cond:
            old = self._max_concurrency
            self._max_concurrency = value
            events: List[Event] = []
            if old != value:
                events.append(ConcurrencyChanged(old_value=old, new_value=value))
                self.logger.info(f"CONCURRENCY: {old} -> {value} (running={len(self._running)})")
            started = self._admit_locked(events) if self._accepting else []
            self._cond.notify_all()
        self._dispatch(events, started)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is queued or running. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._queue and not self._running, timeout)

    def shutdown(self, timeout: Optional[float] = None):
        """Stop accepting work, drop the queue and terminate running jobs."""
        with self._cond:
            self._accepting = False
            dropped = list(self._queue)
            self._queue.clear()
            for job_id in dropped:
                self._jobs.pop(job_id, None)
            running = list(self._running)
            self._cond.notify_all()
        self.logger.info(f"SHUTDOWN: dropped={len(dropped)} terminating={len(running)}")
        for job_id in dropped:
            self.event_bus.publish(JobRemoved(job_id=job_id))
        for job_id in running:
            self.supervisor.terminate(job_id, timeout=timeout)
        self._unsubscribe()
