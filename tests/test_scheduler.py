"""
Tests for the job scheduler. Most use FakeDriver, whose runs block until the
test finishes, fails or cancels them; the last group drives scripted ffmpeg
stand-ins through the real FFmpegDriver.
"""

import asyncio
import sys

import pytest

from conftest import job, make_scheduler, make_snapshot, wait_until, write_executable
from transcodeq import ffmpeg
from transcodeq.config import Settings
from transcodeq.errors import ConfigurationError
from transcodeq.ffmpeg import FFmpegDriver
from transcodeq.hardware import MiB
from transcodeq.models import JobRequest, JobStatus, MediaDescriptor, OutputFormat
from transcodeq.scheduler import (
    CANCELLED_MESSAGE,
    SchedulerState,
    estimate_job,
    format_eta,
    resolve_output_path,
)


def status_of(sched, job_id):
    return sched.get_job(job_id).status


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------

class TestAdmission:

    def test_bounded_concurrency(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=2)
            ids = await sched.submit([job(n) for n in range(1, 6)])
            assert ids == [f"job-{n}" for n in range(1, 6)]

            status = sched.queue_status()
            assert status["active_tasks"] == 2
            assert status["queued_tasks"] == 3
            assert status["total_tasks"] == 5
            assert sched.state is SchedulerState.PROCESSING

            await wait_until(lambda: driver.is_running("job-1") and driver.is_running("job-2"))
            driver.finish("job-1")
            await wait_until(lambda: driver.is_running("job-3"))

            assert status_of(sched, "job-1") is JobStatus.COMPLETED
            assert sched.get_job("job-1").progress == 100.0
            assert sched.queue_status()["active_tasks"] == 2
            assert sched.queue_status()["queued_tasks"] == 2
            assert not driver.is_running("job-4")
            await sched.aclose()

        asyncio.run(go())

    def test_limit_never_exceeded(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=2)
            violations = []

            def check(event):
                if sched.queue_status()["active_tasks"] > 2:
                    violations.append(event)

            sched.subscribe(check)
            await sched.submit([job(n) for n in range(1, 7)])
            for n in range(1, 7):
                await wait_until(lambda n=n: driver.is_running(f"job-{n}"))
                driver.finish(f"job-{n}")
            await asyncio.wait_for(sched.join(), timeout=2)

            assert violations == []
            assert all(j.status is JobStatus.COMPLETED for j in sched.jobs())
            assert sched.state is SchedulerState.IDLE
            await sched.aclose()

        asyncio.run(go())

    def test_fifo_order(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=1)
            await sched.submit([job(n) for n in range(1, 4)])
            for n in range(1, 4):
                await wait_until(lambda n=n: driver.is_running(f"job-{n}"))
                driver.finish(f"job-{n}")
            await asyncio.wait_for(sched.join(), timeout=2)
            assert driver.started == ["job-1", "job-2", "job-3"]
            await sched.aclose()

        asyncio.run(go())

    def test_auto_detect_uses_recommended_concurrency(self):
        async def go():
            # 8 cores / 16 GiB -> 4
            sched, driver = make_scheduler(max_jobs=2, auto_detect=True,
                                           snapshot=make_snapshot(cores=8, memory_gb=16))
            await sched.submit([job(n) for n in range(1, 7)])
            assert sched.max_concurrent_jobs == 4
            assert sched.queue_status()["active_tasks"] == 4
            await sched.aclose()

        asyncio.run(go())

    def test_configured_concurrency_without_auto_detect(self):
        async def go():
            sched, _ = make_scheduler(max_jobs=3, snapshot=make_snapshot(cores=16, memory_gb=64))
            await sched.submit([job(n) for n in range(1, 7)])
            assert sched.max_concurrent_jobs == 3
            assert sched.queue_status()["active_tasks"] == 3
            await sched.aclose()

        asyncio.run(go())

    def test_raising_the_limit_admits_more(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=1)
            await sched.submit([job(n) for n in range(1, 4)])
            assert await sched.set_max_concurrent_jobs(3) == 3
            await wait_until(lambda: all(driver.is_running(f"job-{n}") for n in range(1, 4)))
            assert await sched.set_max_concurrent_jobs(50) == 8
            assert await sched.set_max_concurrent_jobs(0) == 1
            await sched.aclose()

        asyncio.run(go())

    def test_config_derived_per_job(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=2, snapshot=make_snapshot(cores=8, nvidia=True))
            await sched.submit([job(1, fmt="mp3"), job(2, fmt="mp4")])
            await wait_until(lambda: len(driver.configs) == 2)
            assert driver.configs["job-1"].enable_gpu is False
            assert driver.configs["job-2"].enable_gpu is True
            assert driver.configs["job-2"].video_codec == "h264_nvenc"
            await sched.aclose()

        asyncio.run(go())

    def test_gpu_setting_disables_acceleration(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=1, snapshot=make_snapshot(nvidia=True),
                                           gpu_acceleration=False)
            await sched.submit([job(1, fmt="mp4")])
            await wait_until(lambda: "job-1" in driver.configs)
            assert driver.configs["job-1"].enable_gpu is False
            await sched.aclose()

        asyncio.run(go())


# ---------------------------------------------------------------------------
# Pause / resume
# ---------------------------------------------------------------------------

class TestPauseResume:

    def test_pause_blocks_admission(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=1)
            await sched.submit([job(n) for n in range(1, 4)])
            await wait_until(lambda: driver.is_running("job-1"))

            await sched.pause_all()
            assert sched.state is SchedulerState.PAUSED
            assert status_of(sched, "job-1") is JobStatus.PAUSED

            driver.finish("job-1")
            await wait_until(lambda: status_of(sched, "job-1") is JobStatus.COMPLETED)
            await asyncio.sleep(0.05)
            assert not driver.is_running("job-2")
            assert sched.queue_status()["queued_tasks"] == 2
            assert sched.queue_status()["active_tasks"] == 0

            await sched.resume_all()
            await wait_until(lambda: driver.is_running("job-2"))
            assert sched.state is SchedulerState.PROCESSING
            assert status_of(sched, "job-2") is JobStatus.RUNNING
            await sched.aclose()

        asyncio.run(go())

    def test_resume_restores_running_status(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=2)
            await sched.submit([job(1), job(2)])
            await sched.pause_all()
            assert {status_of(sched, i) for i in ("job-1", "job-2")} == {JobStatus.PAUSED}
            await sched.resume_all()
            assert {status_of(sched, i) for i in ("job-1", "job-2")} == {JobStatus.RUNNING}
            await sched.aclose()

        asyncio.run(go())

    def test_submit_while_paused_resumes(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=2)
            await sched.submit([job(1)])
            await sched.pause_all()
            assert status_of(sched, "job-1") is JobStatus.PAUSED

            await sched.submit([job(2)])
            assert sched.state is SchedulerState.PROCESSING
            assert status_of(sched, "job-1") is JobStatus.RUNNING
            assert status_of(sched, "job-2") is JobStatus.RUNNING
            await wait_until(lambda: driver.is_running("job-2"))
            await sched.aclose()

        asyncio.run(go())

    def test_submit_on_paused_empty_queue_starts(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=2)
            await sched.pause_all()
            await sched.submit([job(1)])
            assert sched.queue_status()["is_paused"] is False
            await wait_until(lambda: driver.is_running("job-1"))
            await sched.aclose()

        asyncio.run(go())


# ---------------------------------------------------------------------------
# Removal and cancellation
# ---------------------------------------------------------------------------

class TestRemoveCancel:

    def test_remove_queued_job(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=1)
            events = []
            sched.subscribe(events.append)
            await sched.submit([job(n) for n in range(1, 4)])

            assert await sched.remove("job-3") is True
            assert sched.queue_status()["queued_tasks"] == 1
            assert sched.queue_status()["active_tasks"] == 1
            assert status_of(sched, "job-3") is JobStatus.CANCELLED
            assert sched.get_job("job-3").error == CANCELLED_MESSAGE
            assert "job-3" not in driver.cancel_calls

            assert await sched.remove("job-3") is False
            terminal = [e for e in events if e.job_id == "job-3" and e.status.is_terminal]
            assert len(terminal) == 1
            await sched.aclose()

        asyncio.run(go())

    def test_remove_running_job_admits_next(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=1)
            await sched.submit([job(1), job(2)])
            await wait_until(lambda: driver.is_running("job-1"))

            assert await sched.remove("job-1") is True
            assert driver.cancel_calls == ["job-1"]
            assert status_of(sched, "job-1") is JobStatus.CANCELLED
            await wait_until(lambda: driver.is_running("job-2"))
            await asyncio.sleep(0.05)
            # late exit of the cancelled run must not rewrite its status
            assert status_of(sched, "job-1") is JobStatus.CANCELLED
            await sched.aclose()

        asyncio.run(go())

    def test_remove_unknown_is_noop(self):
        async def go():
            sched, _ = make_scheduler()
            assert await sched.remove("nope") is False
            await sched.aclose()

        asyncio.run(go())

    def test_cancel_all(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=2)
            await sched.submit([job(n) for n in range(1, 5)])
            await wait_until(lambda: driver.is_running("job-1") and driver.is_running("job-2"))

            assert await sched.cancel_all() == 4
            assert all(j.status is JobStatus.CANCELLED for j in sched.jobs())
            assert sched.state is SchedulerState.IDLE
            assert sched.queue_status()["total_tasks"] == 0
            await wait_until(lambda: driver.active_jobs() == [])
            await asyncio.wait_for(sched.join(), timeout=1)
            assert driver.started == ["job-1", "job-2"]
            await sched.aclose()

        asyncio.run(go())

    def test_cancel_all_clears_pause(self):
        async def go():
            sched, _ = make_scheduler()
            await sched.submit([job(1)])
            await sched.pause_all()
            await sched.cancel_all()
            assert sched.state is SchedulerState.IDLE
            await sched.aclose()

        asyncio.run(go())


# ---------------------------------------------------------------------------
# Progress and outcomes
# ---------------------------------------------------------------------------

class TestProgress:

    def test_progress_never_decreases(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=1)
            events = []
            sched.subscribe(lambda e: events.append(e) if e.job_id == "job-1" else None)
            await sched.submit([job(1)])
            await wait_until(lambda: driver.is_running("job-1"))

            driver.emit("job-1", 40.0, speed=2.0)
            await wait_until(lambda: sched.get_job("job-1").progress == 40.0)
            driver.emit("job-1", 30.0)
            driver.emit("job-1", 55.0)
            await wait_until(lambda: sched.get_job("job-1").progress == 55.0)
            driver.finish("job-1")
            await asyncio.wait_for(sched.join(), timeout=1)

            progress = [e.progress for e in events]
            assert progress == sorted(progress)
            assert progress[-1] == 100.0
            assert [e.status for e in events][0] is JobStatus.QUEUED
            assert events[-1].status is JobStatus.COMPLETED
            running = [e for e in events if e.status is JobStatus.RUNNING]
            assert running[0].progress == 0.0
            assert running[0].eta == "Calculating..."
            assert any(e.speed == 2.0 for e in running)
            await sched.aclose()

        asyncio.run(go())

    def test_failure_is_isolated(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=2)
            await sched.submit([job(1), job(2), job(3)])
            await wait_until(lambda: driver.is_running("job-1"))

            driver.fail("job-1", "Input file not found", category="input_missing")
            await wait_until(lambda: driver.is_running("job-3"))
            failed = sched.get_job("job-1")
            assert failed.status is JobStatus.FAILED
            assert failed.error == "Input file not found"
            assert failed.ended_at is not None

            driver.finish("job-2")
            driver.finish("job-3")
            await asyncio.wait_for(sched.join(), timeout=1)
            assert status_of(sched, "job-2") is JobStatus.COMPLETED
            assert status_of(sched, "job-3") is JobStatus.COMPLETED
            await sched.aclose()

        asyncio.run(go())

    def test_clear_finished(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=2)
            await sched.submit([job(1), job(2)])
            await wait_until(lambda: driver.is_running("job-1"))
            driver.finish("job-1")
            await wait_until(lambda: status_of(sched, "job-1") is JobStatus.COMPLETED)

            assert await sched.clear_finished() == 1
            assert sched.get_job("job-1") is None
            assert sched.get_job("job-2") is not None
            await sched.aclose()

        asyncio.run(go())


# ---------------------------------------------------------------------------
# Submission validation
# ---------------------------------------------------------------------------

class TestSubmitValidation:

    def test_bad_descriptor_rejects_batch(self):
        async def go():
            sched, driver = make_scheduler()
            with pytest.raises(ConfigurationError):
                await sched.submit([job(1), job(2, fmt="flac")])
            with pytest.raises(ConfigurationError):
                await sched.submit([{"id": "x", "output_format": "mp3"}])
            with pytest.raises(ConfigurationError):
                await sched.submit([{"id": "x", "input_path": "  ", "output_format": "mp3"}])
            assert sched.jobs() == []
            assert driver.started == []
            await sched.aclose()

        asyncio.run(go())

    def test_duplicate_ids_in_batch(self):
        async def go():
            sched, _ = make_scheduler()
            with pytest.raises(ConfigurationError):
                await sched.submit([job(1), job(1)])
            assert sched.jobs() == []
            await sched.aclose()

        asyncio.run(go())

    def test_duplicate_of_present_job(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=1)
            await sched.submit([job(1), job(2)])
            with pytest.raises(ConfigurationError):
                await sched.submit([job(3), job(2)])
            assert sched.get_job("job-3") is None
            assert sched.queue_status()["total_tasks"] == 2
            await sched.aclose()

        asyncio.run(go())

    def test_resubmit_finished_id(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=1)
            await sched.submit([job(1)])
            await wait_until(lambda: driver.is_running("job-1"))
            driver.fail("job-1", "boom")
            await wait_until(lambda: status_of(sched, "job-1") is JobStatus.FAILED)

            await sched.submit([job(1)])
            await wait_until(lambda: driver.is_running("job-1"))
            assert status_of(sched, "job-1") is JobStatus.RUNNING
            assert sched.get_job("job-1").error is None
            assert len([j for j in sched.jobs() if j.id == "job-1"]) == 1
            await sched.aclose()

        asyncio.run(go())

    def test_generated_id_and_output_path(self):
        async def go():
            sched, _ = make_scheduler(output_dir="/out")
            [job_id] = await sched.submit([{"input_path": "/media/clip.mov", "output_format": "wav"}])
            assert len(job_id) == 32
            assert sched.get_job(job_id).output_path == "/out/clip.wav"
            await sched.aclose()

        asyncio.run(go())


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class TestEvents:

    def test_events_iterator(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=1)

            async def collect():
                seen = []
                async for ev in sched.events():
                    seen.append(ev.status)
                    if ev.status.is_terminal:
                        break
                return seen

            task = asyncio.create_task(collect())
            await asyncio.sleep(0)
            await sched.submit([job(1)])
            await wait_until(lambda: driver.is_running("job-1"))
            driver.finish("job-1")
            seen = await asyncio.wait_for(task, timeout=1)
            assert seen == [JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.COMPLETED]
            await sched.aclose()

        asyncio.run(go())

    def test_failing_subscriber_is_dropped(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=2)
            calls = []
            good = []

            def bad(event):
                calls.append(event)
                raise RuntimeError("subscriber broke")

            sched.subscribe(bad)
            sched.subscribe(good.append)
            await sched.submit([job(1), job(2)])
            assert len(calls) == 1
            assert len(good) == 4  # two queued, two running
            await sched.aclose()

        asyncio.run(go())

    def test_unsubscribe(self):
        async def go():
            sched, _ = make_scheduler()
            seen = []
            unsubscribe = sched.subscribe(seen.append)
            unsubscribe()
            await sched.submit([job(1)])
            assert seen == []
            await sched.aclose()

        asyncio.run(go())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:

    @pytest.mark.parametrize("progress,elapsed,expected", [
        (0, 10, "Calculating..."),
        (100, 5, "Almost done..."),
        (50, 30, "30s"),
        (10, 60, "9m 0s"),
        (1, 60, "1h 39m"),
    ])
    def test_format_eta(self, progress, elapsed, expected):
        assert format_eta(progress, elapsed) == expected

    def test_output_next_to_input(self):
        req = JobRequest(input_path="/media/a.mkv", output_format="mp3")
        assert resolve_output_path(req) == "/media/a.mp3"
        assert resolve_output_path(req, "/out") == "/out/a.mp3"

    def test_output_never_overwrites_input(self):
        req = JobRequest(input_path="/media/a.mp3", output_format="mp3")
        assert resolve_output_path(req) == "/media/a_converted.mp3"

        explicit = JobRequest(input_path="/media/a.mp3", output_path="/media/a.mp3", output_format="mp3")
        with pytest.raises(ConfigurationError):
            resolve_output_path(explicit)

    def test_estimate(self):
        media = MediaDescriptor(duration=60.0, size=100 * MiB)
        snap = make_snapshot(cores=8)

        mp4 = estimate_job(JobRequest(input_path="/a.mkv", output_format="mp4", media=media), snap)
        assert mp4.configuration.preset == "fast"
        assert mp4.estimated_time == pytest.approx(30.0)
        assert mp4.estimated_size == 50 * MiB

        mp3 = estimate_job(JobRequest(input_path="/a.mkv", output_format=OutputFormat.MP3, media=media), snap)
        assert mp3.estimated_size == int(100 * MiB * 0.1)

        gpu = estimate_job(JobRequest(input_path="/a.mkv", output_format="mp4", media=media),
                           make_snapshot(cores=8, nvidia=True))
        assert gpu.estimated_time == pytest.approx(10.0)

    def test_estimate_through_scheduler(self):
        async def go():
            sched, _ = make_scheduler()
            est = await sched.estimate(job(1, fmt="wav", media={"duration": 10.0, "size": 1000}))
            assert est.estimated_size == 1000
            assert est.configuration.enable_gpu is False
            with pytest.raises(ConfigurationError):
                await sched.estimate({"input_path": "/a", "output_format": "ogg"})

        asyncio.run(go())


# ---------------------------------------------------------------------------
# Settings changes
# ---------------------------------------------------------------------------

class TestApplySettings:

    def test_new_settings_reach_later_jobs(self):
        async def go():
            sched, driver = make_scheduler(max_jobs=1, snapshot=make_snapshot(nvidia=True))
            await sched.submit([job(1, fmt="mp4")])
            await wait_until(lambda: "job-1" in driver.configs)
            assert driver.configs["job-1"].enable_gpu is True

            applied = await sched.apply_settings(Settings(
                max_concurrent_jobs=2, auto_detect_hardware=False, gpu_acceleration=False,
                output_dir="/out", ffmpeg_bin="/opt/ff/ffmpeg", tick_interval=0.01,
            ))
            assert applied == 2
            assert driver.ffmpeg_bin == "/opt/ff/ffmpeg"

            await sched.submit([job(2, fmt="mp4")])
            await wait_until(lambda: "job-2" in driver.configs)
            assert driver.configs["job-2"].enable_gpu is False
            assert sched.get_job("job-2").output_path == "/out/in2.mp4"
            await sched.aclose()

        asyncio.run(go())

    def test_auto_detect_reports_recommended_limit(self):
        async def go():
            sched, _ = make_scheduler(max_jobs=1, snapshot=make_snapshot(cores=8, memory_gb=16))
            await sched.submit([job(1)])
            applied = await sched.apply_settings(Settings(max_concurrent_jobs=1, auto_detect_hardware=True))
            assert applied == 4
            assert sched.max_concurrent_jobs == 4
            await sched.aclose()

        asyncio.run(go())


# ---------------------------------------------------------------------------
# Real driver, scripted ffmpeg
# ---------------------------------------------------------------------------

FFMPEG_MISSING_INPUT = r'''
import sys
sys.stderr.write("ffmpeg version 6.1\n  built with gcc\n")
sys.stderr.write("/media/in1.mkv: No such file or directory\n")
sys.exit(1)
'''

FFMPEG_OK = r'''
import sys
sys.stderr.write("  Duration: 00:00:04.00, start: 0.000000, bitrate: 1000 kb/s\n")
sys.stderr.write("frame=  10 fps=0.0 q=28.0 size=  256kB time=00:00:02.00 bitrate= 100kbits/s speed=2.0x\r")
sys.stderr.write("frame=  20 fps=0.0 q=28.0 size=  512kB time=00:00:04.00 bitrate= 100kbits/s speed=2.0x\r")
sys.exit(0)
'''

FFMPEG_IGNORES_SIGTERM = r'''
import signal, sys, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
sys.stderr.write("  Duration: 00:10:00.00, start: 0.000000, bitrate: 1000 kb/s\n")
sys.stderr.write("frame=  10 fps=0.0 q=28.0 size=  256kB time=00:00:06.00 bitrate= 100kbits/s speed=1.0x\n")
sys.stderr.flush()
time.sleep(60)
'''


@pytest.mark.skipif(sys.platform.startswith("win"), reason="uses /bin/sh launchers")
class TestWithFFmpegDriver:

    def _scheduler(self, tmp_path, script):
        driver = FFmpegDriver(ffmpeg_bin=write_executable(tmp_path, "ffmpeg", script))
        sched, _ = make_scheduler(max_jobs=2, driver=driver)
        return sched, driver

    def test_missing_input_fails_job(self, tmp_path):
        async def go():
            sched, _ = self._scheduler(tmp_path, FFMPEG_MISSING_INPUT)
            events = []
            sched.subscribe(events.append)
            await sched.submit([job(1)])
            await asyncio.wait_for(sched.join(), timeout=10)

            failed = sched.get_job("job-1")
            assert failed.status is JobStatus.FAILED
            assert failed.error == "Input file not found"
            assert events[-1].status is JobStatus.FAILED
            assert events[-1].error == "Input file not found"
            await sched.aclose()

        asyncio.run(go())

    def test_completed_run_publishes_progress(self, tmp_path):
        async def go():
            sched, _ = self._scheduler(tmp_path, FFMPEG_OK)
            events = []
            sched.subscribe(events.append)
            await sched.submit([job(1)])
            await asyncio.wait_for(sched.join(), timeout=10)

            assert status_of(sched, "job-1") is JobStatus.COMPLETED
            progress = [e.progress for e in events]
            assert progress == sorted(progress)
            assert 50.0 in progress
            assert progress[-1] == 100.0
            await sched.aclose()

        asyncio.run(go())

    def test_aclose_kills_process_ignoring_sigterm(self, tmp_path, monkeypatch):
        monkeypatch.setattr(ffmpeg, "KILL_GRACE", 0.3)

        async def go():
            sched, driver = self._scheduler(tmp_path, FFMPEG_IGNORES_SIGTERM)
            await sched.submit([job(1)])
            await wait_until(lambda: sched.get_job("job-1").progress > 0, timeout=10)

            await asyncio.wait_for(sched.aclose(), timeout=8)
            assert status_of(sched, "job-1") is JobStatus.CANCELLED
            assert driver.active_jobs() == []

        asyncio.run(go())
