import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from convq.domain.models import JobStatus, SourceMetadata

METADATA_IDLE = "idle"
METADATA_LOADING = "loading"
METADATA_READY = "ready"
METADATA_ERROR = "error"


@dataclass
class JobRow:
    """What the dashboard shows for one job."""
    job_id: str
    name: str
    status: JobStatus = JobStatus.QUEUED
    progress_percent: Optional[float] = None
    elapsed_seconds: Optional[float] = None
    pid: Optional[int] = None
    error_message: Optional[str] = None
    output_path: Optional[Path] = None
    started_at: Optional[datetime] = None
    log: deque = field(default_factory=lambda: deque(maxlen=200))


class UIState:
    """Thread-safe state manager for the CLI dashboard."""

    def __init__(self, log_lines_per_job: int = 200):
        self._lock = threading.RLock()
        self.log_lines_per_job = log_lines_per_job

        self.rows: Dict[str, JobRow] = {}  # insertion order = submission order
        self.completed_count = 0
        self.failed_count = 0
        self.max_concurrency = 0
        self.last_fault: Optional[str] = None
        self.finished = False

        # Metadata lookup for the file currently being inspected
        self.metadata_status = METADATA_IDLE
        self.metadata_message: Optional[str] = None
        self.metadata: Optional[SourceMetadata] = None
        self.metadata_path: Optional[Path] = None

    def add_job(self, job_id: str, name: str, output_path: Optional[Path] = None):
        with self._lock:
            self.rows[job_id] = JobRow(
                job_id=job_id,
                name=name,
                output_path=output_path,
                log=deque(maxlen=self.log_lines_per_job),
            )

    def get_row(self, job_id: str) -> Optional[JobRow]:
        with self._lock:
            return self.rows.get(job_id)

    def snapshot(self) -> List[JobRow]:
        """Copies of all rows, safe to render without holding the lock."""
        with self._lock:
            return [
                JobRow(**{**row.__dict__, "log": deque(row.log, maxlen=row.log.maxlen)})
                for row in self.rows.values()
            ]

    def mark_started(self, job_id: str, pid: Optional[int]):
        with self._lock:
            row = self.rows.get(job_id)
            if row is None:
                return
            row.status = JobStatus.RUNNING
            row.pid = pid
            row.started_at = datetime.now()

    def update_progress(self, job_id: str, percent: Optional[float], elapsed: Optional[float]):
        with self._lock:
            row = self.rows.get(job_id)
            if row is None:
                return
            if percent is not None and (row.progress_percent is None or percent > row.progress_percent):
                row.progress_percent = percent
            if elapsed is not None:
                row.elapsed_seconds = elapsed

    def append_log(self, job_id: str, line: str):
        with self._lock:
            row = self.rows.get(job_id)
            if row is not None:
                row.log.append(line)

    def mark_completed(self, job_id: str):
        with self._lock:
            row = self.rows.get(job_id)
            if row is None:
                return
            row.status = JobStatus.COMPLETED
            row.progress_percent = 100.0
            self.completed_count += 1

    def mark_failed(self, job_id: str, message: str):
        with self._lock:
            row = self.rows.get(job_id)
            if row is None:
                return
            row.status = JobStatus.FAILED
            row.error_message = message
            self.failed_count += 1

    def remove_job(self, job_id: str):
        with self._lock:
            self.rows.pop(job_id, None)

    def counts(self) -> Dict[JobStatus, int]:
        with self._lock:
            result = {status: 0 for status in JobStatus}
            for row in self.rows.values():
                result[row.status] += 1
            return result

    def set_metadata_loading(self, path: Path):
        with self._lock:
            self.metadata_path = path
            self.metadata_status = METADATA_LOADING
            self.metadata_message = None
            self.metadata = None

    def set_metadata_ready(self, path: Path, metadata: SourceMetadata):
        with self._lock:
            self.metadata_path = path
            self.metadata_status = METADATA_READY
            self.metadata_message = None
            self.metadata = metadata

    def set_metadata_error(self, path: Path, message: str):
        with self._lock:
            self.metadata_path = path
            self.metadata_status = METADATA_ERROR
            self.metadata_message = message
            self.metadata = None
