import errno
import logging
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from convq.domain.errors import ConvqError, RuntimeFailure, SpawnError, SpawnExhaustedError
from convq.domain.events import JobLogLine, JobProgressUpdated
from convq.infrastructure.event_bus import EventBus
from convq.pipeline.progress import ProgressParser

READ_CHUNK_SIZE = 4096

# OS-level refusals to create a process; nothing a single job did wrong.
EXHAUSTION_ERRNOS = frozenset({errno.EMFILE, errno.ENFILE, errno.EAGAIN, errno.ENOMEM})


@dataclass
class ProcessOutcome:
    job_id: str
    return_code: Optional[int]
    terminated: bool = False
    diagnostic: str = ""
    progress_percent: Optional[float] = None
    error: Optional[ConvqError] = None

    @property
    def succeeded(self) -> bool:
        return self.return_code == 0 and not self.terminated and self.error is None


@dataclass
class ProcessHandle:
    """A spawned encoder process plus the thread draining its stderr.

    ``finished`` is set only after ``on_exit`` returned, so whoever waits on it
    observes the caller's bookkeeping already updated.
    """

    job_id: str
    process: subprocess.Popen
    parser: ProgressParser
    on_exit: Callable[[ProcessOutcome], None]
    command: List[str]
    diagnostic: deque
    finished: threading.Event = field(default_factory=threading.Event)
    terminated: bool = False
    started_at: float = field(default_factory=time.monotonic)
    _thread: Optional[threading.Thread] = None
    _supervisor: Optional["ProcessSupervisor"] = None
    _start_lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    def start(self):
        with self._start_lock:
            if self._thread is not None:
                return
            self._thread = threading.Thread(
                target=self._supervisor._drain,
                args=(self,),
                name=f"reader-{self.job_id}",
                daemon=True,
            )
            self._thread.start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.finished.wait(timeout)

    def kill(self):
        try:
            self.process.kill()
        except ProcessLookupError:
            pass


class ProcessSupervisor:
    """Spawns encoder processes and turns their stderr into events.

    One reader thread per process blocks on ``read(4096)``; there is no
    polling loop. The supervisor never touches job state; it reports through
    the event bus (log lines, progress) and the ``on_exit`` callback.
    """

    def __init__(self, event_bus: EventBus, diagnostic_lines: int = 10, terminate_grace_s: float = 3.0):
        self.event_bus = event_bus
        self.diagnostic_lines = diagnostic_lines
        self.terminate_grace_s = terminate_grace_s
        self.logger = logging.getLogger(__name__)
        self._handles: Dict[str, ProcessHandle] = {}
        self._lock = threading.Lock()

    def launch(
        self,
        job_id: str,
        executable: str,
        args: Sequence[str],
        on_exit: Callable[[ProcessOutcome], None],
        total_duration: Optional[float] = None,
        offset: float = 0.0,
    ) -> ProcessHandle:
        """Spawn the process; the caller must call ``handle.start()`` afterwards.

        Raises:
            SpawnExhaustedError: the OS refused to create the process.
            SpawnError: the executable is missing or not executable.
        """
        cmd = [executable, *args]
        self.logger.debug(f"FFMPEG_CMD: {job_id}: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise SpawnError(f"Cannot execute {executable}: {e.strerror or e}", command=cmd)
        except OSError as e:
            if e.errno in EXHAUSTION_ERRNOS:
                raise SpawnExhaustedError(f"System refused to spawn {executable}: {e.strerror or e}", command=cmd)
            raise SpawnError(f"Cannot execute {executable}: {e.strerror or e}", command=cmd)

        handle = ProcessHandle(
            job_id=job_id,
            process=process,
            parser=ProgressParser(total_duration=total_duration, offset=offset),
            on_exit=on_exit,
            command=cmd,
            diagnostic=deque(maxlen=self.diagnostic_lines),
            _supervisor=self,
        )
        with self._lock:
            self._handles[job_id] = handle
        return handle

    def get(self, job_id: str) -> Optional[ProcessHandle]:
        with self._lock:
            return self._handles.get(job_id)

    def _handle_lines(self, handle: ProcessHandle, lines):
        for parsed in lines:
            handle.diagnostic.append(parsed.text)
            self.event_bus.publish(JobLogLine(job_id=handle.job_id, line=parsed.text))
            if not parsed.is_progress:
                continue
            if parsed.advanced or parsed.percent is None:
                self.event_bus.publish(JobProgressUpdated(
                    job_id=handle.job_id,
                    progress_percent=parsed.percent,
                    elapsed_seconds=parsed.elapsed_seconds,
                ))

    def _drain(self, handle: ProcessHandle):
        process = handle.process
        outcome = None
        try:
            stream = process.stderr
            if stream is not None:
                while True:
                    chunk = stream.read(READ_CHUNK_SIZE)
                    if not chunk:
                        break
                    self._handle_lines(handle, handle.parser.feed(chunk))
                self._handle_lines(handle, handle.parser.flush())
                stream.close()
            return_code = process.wait()
            # Exit code 0 means the conversion finished before any signal landed.
            if return_code == 0:
                handle.terminated = False

            diagnostic = "\n".join(handle.diagnostic)
            error = None
            if return_code != 0 and not handle.terminated:
                error = RuntimeFailure(
                    f"ffmpeg exited with code {return_code}" + (f"\n{diagnostic}" if diagnostic else ""),
                    return_code=return_code,
                    command=handle.command,
                    output=diagnostic,
                )
            outcome = ProcessOutcome(
                job_id=handle.job_id,
                return_code=return_code,
                terminated=handle.terminated,
                diagnostic=diagnostic,
                progress_percent=handle.parser.percent,
                error=error,
            )
            elapsed = time.monotonic() - handle.started_at
            self.logger.debug(
                f"FFMPEG_EXIT: {handle.job_id} code={return_code} terminated={handle.terminated} elapsed={elapsed:.2f}s"
            )
        except Exception as e:
            self.logger.exception(f"Reader for {handle.job_id} crashed")
            process.kill()
            outcome = ProcessOutcome(
                job_id=handle.job_id,
                return_code=process.wait(),
                terminated=handle.terminated,
                diagnostic="\n".join(handle.diagnostic),
                progress_percent=handle.parser.percent,
                error=ConvqError(f"Output reader failed: {e}"),
            )
        finally:
            with self._lock:
                self._handles.pop(handle.job_id, None)
            try:
                if outcome is not None:
                    handle.on_exit(outcome)
            except Exception:
                self.logger.exception(f"Exit callback for {handle.job_id} failed")
            finally:
                handle.finished.set()

    def terminate(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """SIGTERM, then SIGKILL after the grace period, then wait for the reader to finish.

        Returns False when no live process is known for ``job_id``.
        """
        handle = self.get(job_id)
        if handle is None:
            return False

        if handle.process.poll() is not None:
            self.logger.debug(f"FFMPEG_TERMINATE: {job_id} already exited, waiting for reader")
        else:
            handle.terminated = True
            self.logger.info(f"FFMPEG_TERMINATE: {job_id} (pid={handle.pid})")
            try:
                handle.process.terminate()
            except ProcessLookupError:
                pass

            try:
                handle.process.wait(timeout=self.terminate_grace_s)
            except subprocess.TimeoutExpired:
                self.logger.warning(f"FFMPEG_KILL: {job_id} did not exit after {self.terminate_grace_s}s")
                handle.kill()

        # A handle that was never started has nobody draining its pipe yet.
        handle.start()
        return handle.wait(timeout)
