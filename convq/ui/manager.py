import logging
import threading
from pathlib import Path
from typing import Dict, Optional

from convq.domain.errors import ProbeError
from convq.domain.events import (
    ConcurrencyChanged,
    JobCompleted,
    JobFailed,
    JobLogLine,
    JobProgressUpdated,
    JobQueued,
    JobRemoved,
    JobStarted,
    SupervisorFault,
)
from convq.domain.models import SourceMetadata
from convq.infrastructure.event_bus import EventBus
from convq.infrastructure.ffprobe import FFprobeAdapter
from convq.ui.state import UIState

logger = logging.getLogger(__name__)


class UIManager:
    """Subscribes to EventBus and updates UIState.

    Also owns the per-path metadata cache: the prober itself is stateless.
    """

    def __init__(self, bus: EventBus, state: UIState, prober: Optional[FFprobeAdapter] = None):
        self.bus = bus
        self.state = state
        self.prober = prober
        self._metadata_cache: Dict[Path, SourceMetadata] = {}
        self._cache_lock = threading.Lock()
        self._unsubscribers = []
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self._unsubscribers = [
            self.bus.subscribe(JobQueued, self.on_job_queued),
            self.bus.subscribe(JobStarted, self.on_job_started),
            self.bus.subscribe(JobProgressUpdated, self.on_job_progress),
            self.bus.subscribe(JobLogLine, self.on_job_log),
            self.bus.subscribe(JobCompleted, self.on_job_completed),
            self.bus.subscribe(JobFailed, self.on_job_failed),
            self.bus.subscribe(JobRemoved, self.on_job_removed),
            self.bus.subscribe(ConcurrencyChanged, self.on_concurrency_changed),
            self.bus.subscribe(SupervisorFault, self.on_supervisor_fault),
        ]

    def close(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def on_job_queued(self, event: JobQueued):
        self.state.add_job(event.job_id, Path(event.input_path).name, output_path=event.output_path)

    def on_job_started(self, event: JobStarted):
        self.state.mark_started(event.job_id, event.pid)

    def on_job_progress(self, event: JobProgressUpdated):
        self.state.update_progress(event.job_id, event.progress_percent, event.elapsed_seconds)

    def on_job_log(self, event: JobLogLine):
        self.state.append_log(event.job_id, event.line)

    def on_job_completed(self, event: JobCompleted):
        self.state.mark_completed(event.job_id)

    def on_job_failed(self, event: JobFailed):
        self.state.mark_failed(event.job_id, event.error_message)

    def on_job_removed(self, event: JobRemoved):
        self.state.remove_job(event.job_id)

    def on_concurrency_changed(self, event: ConcurrencyChanged):
        with self.state._lock:
            self.state.max_concurrency = event.new_value

    def on_supervisor_fault(self, event: SupervisorFault):
        with self.state._lock:
            self.state.last_fault = event.message

    def request_metadata(self, path: Path) -> Optional[SourceMetadata]:
        """Probe ``path`` (cached) and record the outcome in the UI state.

        A probe failure is not fatal: the state shows ``error`` with the
        message, and None is returned so conversion can go on with defaults.
        """
        path = Path(path)
        with self._cache_lock:
            cached = self._metadata_cache.get(path)
        if cached is not None:
            self.state.set_metadata_ready(path, cached)
            return cached

        if self.prober is None:
            self.state.set_metadata_error(path, "No prober configured")
            return None

        self.state.set_metadata_loading(path)
        try:
            metadata = self.prober.probe(path)
        except ProbeError as e:
            logger.warning(f"PROBE_FAILED: {path}: {e.message}")
            self.state.set_metadata_error(path, e.message)
            return None

        with self._cache_lock:
            self._metadata_cache[path] = metadata
        self.state.set_metadata_ready(path, metadata)
        return metadata
