"""
Bounded-concurrency job scheduler.

A single coordinator task owns the pending queue, the running set and the job
table. Public operations are messages posted to its inbox and awaited for
acknowledgement; job tasks report progress and exit the same way. Nothing
outside the coordinator mutates scheduler state, so the concurrency limit
holds without locks.

Queue state machine: idle -> processing -> {paused, idle}.
"""

import asyncio
import logging
import math
import time
from collections import deque
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, Iterable, Optional, Union

from pydantic import ValidationError

from transcodeq.config import Settings, clamp_concurrency
from transcodeq.errors import CancelledError, ConfigurationError, ConversionError
from transcodeq.ffmpeg import FFmpegDriver
from transcodeq.hardware import HardwareProfiler, derive_config, recommended_concurrency
from transcodeq.models import (
    ExecutionConfig,
    HardwareSnapshot,
    Job,
    JobEstimate,
    JobRequest,
    JobStatus,
    OutputFormat,
    ProgressEvent,
    Quality,
)

logger = logging.getLogger("transcodeq.scheduler")

CANCELLED_MESSAGE = "Cancelled by user"

Subscriber = Callable[[ProgressEvent], None]


class SchedulerState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    PAUSED = "paused"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def format_eta(progress: float, elapsed: float) -> str:
    """Remaining time as '1h 5m', '4m 12s' or '37s'."""
    if progress <= 0:
        return "Calculating..."
    remaining = elapsed / progress * 100 - elapsed
    if remaining <= 0:
        return "Almost done..."
    seconds = math.floor(remaining)
    minutes = seconds // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def resolve_output_path(request: JobRequest, output_dir: Optional[str] = None) -> str:
    """Explicit output path, or <output_dir or input dir>/<stem>.<format>."""
    src = Path(request.input_path)
    if request.output_path:
        out = Path(request.output_path)
    else:
        out_dir = Path(output_dir) if output_dir else src.parent
        ext = request.output_format.value
        out = out_dir / f"{src.stem}.{ext}"
        if out.resolve() == src.resolve():
            out = out_dir / f"{src.stem}_converted.{ext}"
    if out.resolve() == src.resolve():
        raise ConfigurationError(f"Output would overwrite input: {src}")
    return str(out)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class JobScheduler:
    def __init__(
        self,
        driver: FFmpegDriver,
        profiler: HardwareProfiler,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.max_concurrent_jobs: int = self.settings.max_concurrent_jobs

        self._driver = driver
        self._profiler = profiler
        self._snapshot: Optional[HardwareSnapshot] = None

        # Owned by the coordinator
        self._queue:    deque = deque()
        self._running:  dict[str, Job] = {}
        self._finished: dict[str, Job] = {}
        self._processing = False
        self._paused = False

        self._subscribers: list[Subscriber] = []
        self._tasks: set = set()
        self._inbox: Optional[asyncio.Queue] = None
        self._idle: Optional[asyncio.Event] = None
        self._coordinator: Optional[asyncio.Task] = None
        self._ticker: Optional[asyncio.Task] = None

    # -- lifecycle ----------------------------------------------------------

    def _ensure_started(self) -> None:
        if self._coordinator is not None and not self._coordinator.done():
            return
        self._inbox = asyncio.Queue()
        self._idle = asyncio.Event()
        if not self._queue and not self._running:
            self._idle.set()
        self._coordinator = asyncio.create_task(self._coordinate(), name="scheduler-coordinator")
        self._ticker = asyncio.create_task(self._tick(), name="scheduler-ticker")

    async def aclose(self) -> None:
        """Cancel everything, wait for job tasks to unwind, stop the coordinator."""
        if self._coordinator is None or self._coordinator.done():
            return
        await self.cancel_all()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self._call("stop")
        await self._coordinator
        self._ticker.cancel()
        try:
            await self._ticker
        except asyncio.CancelledError:
            pass

    async def join(self) -> None:
        """Wait until the queue and the running set are both empty."""
        self._ensure_started()
        await self._idle.wait()

    # -- public operations --------------------------------------------------

    async def submit(self, requests: Iterable[Union[JobRequest, dict]]) -> list[str]:
        """
        Queue jobs in order. Every descriptor is validated first; a bad one
        rejects the whole batch with ConfigurationError. Returns the job ids.
        """
        jobs = self._build_jobs(requests)
        snapshot = await asyncio.to_thread(self._profiler.get_snapshot)
        return await self._call("submit", (jobs, snapshot))

    async def pause_all(self) -> None:
        await self._call("pause")

    async def resume_all(self) -> None:
        await self._call("resume")

    async def cancel_all(self) -> int:
        """Terminate running jobs, drop queued ones. Returns how many were cancelled."""
        return await self._call("cancel_all")

    async def remove(self, job_id: str) -> bool:
        """Cancel one queued or running job. Unknown or finished ids are a no-op."""
        return await self._call("remove", job_id)

    async def set_max_concurrent_jobs(self, n: int) -> int:
        return await self._call("set_max", n)

    async def clear_finished(self) -> int:
        return await self._call("clear_finished")

    async def apply_settings(self, settings: Settings) -> int:
        """
        Swap in new settings for later admissions; also reconfigures the
        profiler and the driver binaries. Returns the effective job limit.
        """
        return await self._call("apply_settings", settings)

    async def estimate(self, request: Union[JobRequest, dict]) -> JobEstimate:
        """Rough duration/size estimate for a job, plus the config it would get."""
        request = self._parse_request(request)
        snapshot = await asyncio.to_thread(self._profiler.get_snapshot)
        return estimate_job(request, snapshot, allow_gpu=self.settings.gpu_acceleration)

    # -- subscriptions ------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register an event callback. Returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            self._subscribers = [s for s in self._subscribers if s is not callback]

        return unsubscribe

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Async iterator over every event published after the call."""
        q: asyncio.Queue = asyncio.Queue()
        unsubscribe = self.subscribe(q.put_nowait)
        try:
            while True:
                yield await q.get()
        finally:
            unsubscribe()

    def _publish(self, event: ProgressEvent) -> None:
        dead = []
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Dropping subscriber {callback!r}: {e}")
                dead.append(callback)
        if dead:
            self._subscribers = [s for s in self._subscribers if s not in dead]

    # -- status queries -----------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        if self._paused:
            return SchedulerState.PAUSED
        if self._processing:
            return SchedulerState.PROCESSING
        return SchedulerState.IDLE

    def get_job(self, job_id: str) -> Optional[Job]:
        if job_id in self._running:
            return self._running[job_id]
        for job in self._queue:
            if job.id == job_id:
                return job
        return self._finished.get(job_id)

    def jobs(self) -> list[Job]:
        return list(self._running.values()) + list(self._queue) + list(self._finished.values())

    def queue_status(self) -> dict:
        return {
            "total_tasks":         len(self._queue) + len(self._running),
            "active_tasks":        len(self._running),
            "queued_tasks":        len(self._queue),
            "finished_tasks":      len(self._finished),
            "is_processing":       self._processing,
            "is_paused":           self._paused,
            "state":               self.state.value,
            "max_concurrent_jobs": self.max_concurrent_jobs,
        }

    # -- validation ---------------------------------------------------------

    @staticmethod
    def _parse_request(raw: Union[JobRequest, dict]) -> JobRequest:
        if isinstance(raw, JobRequest):
            return raw
        try:
            return JobRequest.model_validate(raw)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid job descriptor: {e}") from e

    def _build_jobs(self, requests: Iterable[Union[JobRequest, dict]]) -> list[Job]:
        jobs = []
        seen = set()
        for raw in requests:
            request = self._parse_request(raw)
            if request.id in seen:
                raise ConfigurationError(f"Duplicate job id in batch: {request.id}")
            seen.add(request.id)
            jobs.append(Job(request, resolve_output_path(request, self.settings.output_dir)))
        return jobs

    # -- coordinator --------------------------------------------------------

    async def _call(self, kind: str, payload=None):
        self._ensure_started()
        fut = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait((kind, payload, fut))
        return await fut

    def _post(self, kind: str, payload=None) -> None:
        if self._inbox is not None:
            self._inbox.put_nowait((kind, payload, None))

    def _has_work(self) -> bool:
        return bool(self._queue or self._running)

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.settings.tick_interval)
            if self._has_work():
                self._post("tick")

    async def _coordinate(self) -> None:
        handlers = {
            "submit":         self._on_submit,
            "pause":          self._on_pause,
            "resume":         self._on_resume,
            "cancel_all":     self._on_cancel_all,
            "remove":         self._on_remove,
            "set_max":        self._on_set_max,
            "clear_finished": self._on_clear_finished,
            "apply_settings": self._on_apply_settings,
            "progress":       self._on_progress,
            "finished":       self._on_finished,
            "tick":           lambda _: None,
        }
        while True:
            kind, payload, fut = await self._inbox.get()
            if kind == "stop":
                fut.set_result(None)
                return
            try:
                result = handlers[kind](payload)
                self._admit()
            except Exception as e:
                if fut is None:
                    logger.exception(f"Scheduler message {kind!r} failed")
                elif not fut.done():
                    fut.set_exception(e)
                continue
            if fut is not None and not fut.done():
                fut.set_result(result)

    def _admit(self) -> None:
        if self._processing and not self._paused:
            while self._queue and len(self._running) < self.max_concurrent_jobs:
                self._start(self._queue.popleft())

        if not self._has_work():
            if self._processing:
                logger.info("Queue processing completed")
            self._processing = False
            self._idle.set()
        else:
            self._idle.clear()

    def _start(self, job: Job) -> None:
        config = derive_config(
            self._snapshot,
            job.file_size,
            job.output_format,
            allow_gpu=self.settings.gpu_acceleration,
        )
        job.mark_started()
        job.eta = format_eta(0, 0)
        self._running[job.id] = job
        logger.info(
            f"[{job.id}] admitted ({len(self._running)}/{self.max_concurrent_jobs}) "
            f"preset={config.preset} threads={config.threads} encoder={config.encoder.value} "
            f"buffer={config.buffer_size}"
        )
        self._publish(job.to_event())

        task = asyncio.create_task(self._execute(job, config), name=f"job-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, job: Job, config: ExecutionConfig) -> None:
        # Removed before this task got scheduled: never spawn.
        if self._running.get(job.id) is not job:
            return

        status, error = JobStatus.COMPLETED, None
        try:
            await self._driver.run(
                job.id,
                job.input_path,
                job.output_path,
                job.output_format,
                job.quality,
                config,
                on_progress=lambda sample: self._post("progress", (job, sample)),
            )
        except CancelledError:
            status, error = JobStatus.CANCELLED, CANCELLED_MESSAGE
        except ConversionError as e:
            status, error = JobStatus.FAILED, e.message
        except Exception as e:
            logger.exception(f"[{job.id}] Unexpected conversion error")
            status, error = JobStatus.FAILED, str(e) or type(e).__name__
        self._post("finished", (job, status, error))

    # -- message handlers ---------------------------------------------------

    def _on_submit(self, payload) -> list[str]:
        jobs, snapshot = payload
        present = set(self._running) | {j.id for j in self._queue}
        for job in jobs:
            if job.id in present:
                raise ConfigurationError(f"Job id already queued or running: {job.id}")

        self._snapshot = snapshot
        if self.settings.auto_detect_hardware:
            self.max_concurrent_jobs = recommended_concurrency(snapshot)
        logger.info(f"Submitting {len(jobs)} job(s), max concurrent jobs: {self.max_concurrent_jobs}")

        for job in jobs:
            # A resubmitted id starts a fresh history entry.
            self._finished.pop(job.id, None)
            job.status = JobStatus.QUEUED
            self._queue.append(job)
            self._publish(job.to_event())

        self._processing = True
        # A new batch restarts a paused queue.
        self._on_resume(None)
        return [job.id for job in jobs]

    def _on_pause(self, _) -> None:
        if self._paused:
            return
        logger.info("Pausing all conversions")
        self._paused = True
        for job in self._running.values():
            job.status = JobStatus.PAUSED
            self._publish(job.to_event())

    def _on_resume(self, _) -> None:
        if not self._paused:
            return
        logger.info("Resuming all conversions")
        self._paused = False
        for job in self._running.values():
            if job.status is JobStatus.PAUSED:
                job.status = JobStatus.RUNNING
                self._publish(job.to_event())

    def _on_cancel_all(self, _) -> int:
        logger.info("Cancelling all conversions")
        self._processing = False
        self._paused = False
        self._driver.cancel_all()

        affected = list(self._running.values()) + list(self._queue)
        self._running.clear()
        self._queue.clear()
        for job in affected:
            self._finish(job, JobStatus.CANCELLED, CANCELLED_MESSAGE)
        return len(affected)

    def _on_remove(self, job_id: str) -> bool:
        for job in self._queue:
            if job.id == job_id:
                self._queue.remove(job)
                logger.info(f"[{job_id}] Removed from queue")
                self._finish(job, JobStatus.CANCELLED, CANCELLED_MESSAGE)
                return True

        job = self._running.pop(job_id, None)
        if job is None:
            return False
        self._driver.cancel(job_id)
        logger.info(f"[{job_id}] Cancelled active conversion")
        self._finish(job, JobStatus.CANCELLED, CANCELLED_MESSAGE)
        return True

    def _on_set_max(self, n: int) -> int:
        self.max_concurrent_jobs = clamp_concurrency(n)
        logger.info(f"Set max concurrent jobs to: {self.max_concurrent_jobs}")
        return self.max_concurrent_jobs

    def _on_apply_settings(self, settings: Settings) -> int:
        self.settings = settings
        self._profiler.configure(auto_detect=settings.auto_detect_hardware)
        self._driver.ffmpeg_bin = settings.ffmpeg_bin
        self._driver.ffprobe_bin = settings.ffprobe_bin
        if settings.auto_detect_hardware and self._snapshot is not None:
            self.max_concurrent_jobs = recommended_concurrency(self._snapshot)
        else:
            self.max_concurrent_jobs = settings.max_concurrent_jobs
        logger.info(
            f"Settings applied | max_jobs={self.max_concurrent_jobs} "
            f"gpu={settings.gpu_acceleration} auto_detect={settings.auto_detect_hardware}"
        )
        return self.max_concurrent_jobs

    def _on_clear_finished(self, _) -> int:
        n = len(self._finished)
        self._finished.clear()
        return n

    def _on_progress(self, payload) -> None:
        job, sample = payload
        if self._running.get(job.id) is not job:
            return
        job.progress = max(job.progress, min(sample.progress, 100.0))
        job.speed = sample.speed
        job.eta = format_eta(job.progress, job.elapsed())
        self._publish(job.to_event())

    def _on_finished(self, payload) -> None:
        job, status, error = payload
        if self._running.get(job.id) is not job:
            # Already cancelled through remove/cancel_all.
            return
        del self._running[job.id]
        if status is JobStatus.COMPLETED:
            job.progress = 100.0
            logger.info(f"[{job.id}] Conversion completed: {job.output_path}")
        elif status is JobStatus.FAILED:
            logger.error(f"[{job.id}] Conversion failed for {job.input_path}: {error}")
        self._finish(job, status, error)

    def _finish(self, job: Job, status: JobStatus, error: Optional[str]) -> None:
        job.status = status
        job.error = error
        job.eta = None
        job.ended_at = job.ended_at or time.time()
        self._finished[job.id] = job
        self._publish(job.to_event())


# ---------------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------------

PRESET_SPEED = {
    "ultrafast": 4.0,
    "fast":      2.0,
    "medium":    1.5,
    "slow":      0.8,
}

OUTPUT_SIZE_RATIO = {
    Quality.LOW:    0.3,
    Quality.MEDIUM: 0.5,
    Quality.HIGH:   0.7,
    Quality.ULTRA:  0.9,
}


def estimate_job(request: JobRequest, snapshot: HardwareSnapshot, allow_gpu: bool = True) -> JobEstimate:
    size = request.media.size if request.media else 0
    duration = request.media.duration if request.media else 0.0
    config = derive_config(snapshot, size, request.output_format, allow_gpu=allow_gpu)

    speed = 3.0 if config.enable_gpu else 1.0
    speed *= PRESET_SPEED.get(config.preset, 1.0)

    if request.output_format is OutputFormat.MP3:
        est_size = size * 0.1
    elif request.output_format is OutputFormat.MP4:
        est_size = size * OUTPUT_SIZE_RATIO[request.quality]
    else:
        est_size = size

    return JobEstimate(
        estimated_time=duration / speed,
        estimated_size=int(est_size),
        configuration=config,
    )
