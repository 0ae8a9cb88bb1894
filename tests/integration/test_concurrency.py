"""Scheduler + ProcessSupervisor against real child processes.

The encoder is the current Python interpreter running a tiny script that
writes ffmpeg-style stderr, so these tests need no ffmpeg install.
"""
import sys
import threading
import pytest

from convq.domain.events import JobCompleted, JobFailed, JobLogLine, JobProgressUpdated, JobStarted
from convq.domain.models import JobStatus
from convq.infrastructure.event_bus import EventBus
from convq.infrastructure.supervisor import ProcessSupervisor
from convq.pipeline.scheduler import TERMINATED_MESSAGE, JobScheduler

pytestmark = pytest.mark.integration

FAKE_ENCODER = r"""
import sys, time
mode = sys.argv[1]
err = sys.stderr
err.write("Input #0, mov,mp4,m4a,3gp,3g2,mj2, from 'in.mov':\n")
err.write("  Duration: 00:00:10.00, start: 0.000000, bitrate: 100 kb/s\n")
err.flush()
if mode == "fail":
    err.write("in.mov: Invalid data found when processing input\n")
    err.flush()
    sys.exit(1)
if mode == "hang":
    err.write("frame=    1 fps=0.0 q=0.0 size=       0kB time=00:00:00.50 bitrate=N/A speed=N/A\r")
    err.flush()
    time.sleep(60)
    sys.exit(0)
for second in range(1, 11):
    err.write("frame=%5d fps=25 q=28.0 size=    %dkB time=00:00:%02d.00 bitrate= 100.0kbits/s speed=10x\r" % (second * 25, second * 12, second))
    err.flush()
    time.sleep(0.02)
err.write("\nvideo:120kB audio:10kB\n")
sys.exit(0)
"""


def _build_args(job):
    # Input stem picks the behavior: ok_*, fail_*, hang_*
    mode = job.input_path.stem.split("_")[0]
    return ["-c", FAKE_ENCODER, mode]


@pytest.fixture
def make_inputs(tmp_path):
    def _make(*names):
        paths = []
        for name in names:
            path = tmp_path / f"{name}.mov"
            path.write_bytes(b"not really a movie")
            paths.append(path)
        return paths
    return _make


@pytest.fixture
def runtime():
    bus = EventBus()
    supervisor = ProcessSupervisor(bus, diagnostic_lines=5, terminate_grace_s=2.0)
    schedulers = []

    def _scheduler(max_concurrency=2, encoder_path=sys.executable):
        scheduler = JobScheduler(
            bus,
            supervisor,
            encoder_path=encoder_path,
            max_concurrency=max_concurrency,
            build_args=_build_args,
        )
        schedulers.append(scheduler)
        return scheduler

    yield bus, _scheduler
    for scheduler in schedulers:
        scheduler.shutdown(timeout=5)


def test_running_never_exceeds_limit_and_starts_fifo(runtime, make_inputs):
    bus, make_scheduler = runtime
    scheduler = make_scheduler(max_concurrency=2)
    started = []
    peak = []
    lock = threading.Lock()

    def on_started(event):
        with lock:
            started.append(event.job_id)
            peak.append(scheduler.running_count)

    bus.subscribe(JobStarted, on_started)

    inputs = make_inputs("ok_a", "ok_b", "ok_c", "ok_d", "ok_e")
    for index, path in enumerate(inputs):
        scheduler.submit_job(f"job-{index}", path)

    assert scheduler.wait_idle(timeout=30)
    assert sorted(started) == [f"job-{i}" for i in range(5)]
    by_start = sorted(scheduler.jobs(), key=lambda job: job.started_at)
    assert [job.id for job in by_start] == [f"job-{i}" for i in range(5)]
    assert max(peak) <= 2
    assert all(job.status == JobStatus.COMPLETED for job in scheduler.jobs())
    assert all(job.progress_percent == 100.0 for job in scheduler.jobs())


def test_progress_events_are_monotonic(runtime, make_inputs):
    bus, make_scheduler = runtime
    scheduler = make_scheduler(max_concurrency=1)
    percents = []
    lines = []
    bus.subscribe(JobProgressUpdated, lambda e: percents.append(e.progress_percent))
    bus.subscribe(JobLogLine, lambda e: lines.append(e.line))

    (path,) = make_inputs("ok_single")
    scheduler.submit_job("job-1", path)

    assert scheduler.wait_idle(timeout=30)
    assert percents
    assert percents == sorted(percents)
    assert percents[-1] == pytest.approx(100.0)
    assert any("Duration: 00:00:10.00" in line for line in lines)
    assert any("video:120kB" in line for line in lines)


def test_nonzero_exit_reports_diagnostic_tail(runtime, make_inputs):
    bus, make_scheduler = runtime
    scheduler = make_scheduler()
    failures = []
    bus.subscribe(JobFailed, failures.append)

    (path,) = make_inputs("fail_broken")
    scheduler.submit_job("job-1", path)

    assert scheduler.wait_idle(timeout=30)
    job = scheduler.get("job-1")
    assert job.status == JobStatus.FAILED
    assert job.error_message.startswith("ffmpeg exited with code 1")
    assert "Invalid data found when processing input" in job.error_message
    assert [f.job_id for f in failures] == ["job-1"]


def test_terminate_frees_slot_for_next_job(runtime, make_inputs):
    bus, make_scheduler = runtime
    scheduler = make_scheduler(max_concurrency=1)
    completed = []
    bus.subscribe(JobCompleted, lambda e: completed.append(e.job_id))

    hang, ok = make_inputs("hang_first", "ok_second")
    scheduler.submit_job("job-1", hang)
    scheduler.submit_job("job-2", ok)
    assert scheduler.running_ids() == ["job-1"]
    assert scheduler.queued_ids() == ["job-2"]

    assert scheduler.terminate("job-1", timeout=10)
    first = scheduler.get("job-1")
    assert first.status == JobStatus.FAILED
    assert first.error_message == TERMINATED_MESSAGE

    assert scheduler.wait_idle(timeout=30)
    assert completed == ["job-2"]


def test_missing_encoder_fails_job_without_blocking_queue(runtime, make_inputs, tmp_path):
    bus, make_scheduler = runtime
    scheduler = make_scheduler(encoder_path=str(tmp_path / "no-such-ffmpeg"))
    failures = []
    bus.subscribe(JobFailed, failures.append)

    paths = make_inputs("ok_a", "ok_b", "ok_c")
    for index, path in enumerate(paths):
        scheduler.submit_job(f"job-{index}", path)

    assert scheduler.wait_idle(timeout=5)
    assert [f.job_id for f in failures] == ["job-0", "job-1", "job-2"]
    assert all("no-such-ffmpeg" in f.error_message for f in failures)
    assert scheduler.running_count == 0


def test_raising_limit_admits_waiting_jobs(runtime, make_inputs):
    bus, make_scheduler = runtime
    scheduler = make_scheduler(max_concurrency=1)

    paths = make_inputs("hang_a", "hang_b", "hang_c")
    for index, path in enumerate(paths):
        scheduler.submit_job(f"job-{index}", path)
    assert scheduler.running_count == 1

    scheduler.set_max_concurrency(3)
    assert sorted(scheduler.running_ids()) == ["job-0", "job-1", "job-2"]

    scheduler.set_max_concurrency(1)
    # Lowering the limit leaves running processes alone.
    assert scheduler.running_count == 3
