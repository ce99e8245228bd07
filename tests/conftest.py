"""Shared fixtures: a scriptable in-memory driver and snapshot factories."""

import asyncio
import stat
import sys
from pathlib import Path
from typing import Optional

import pytest

from transcodeq.config import Settings
from transcodeq.errors import CancelledError, ConversionError, ProbeError
from transcodeq.hardware import GiB, HardwareProfiler
from transcodeq.models import (
    CpuInfo,
    GpuDevice,
    GpuInfo,
    HardwareSnapshot,
    MediaDescriptor,
    MemoryInfo,
    ProgressSample,
)
from transcodeq.scheduler import JobScheduler


def make_snapshot(
    cores: int = 8,
    memory_gb: float = 16,
    available_gb: Optional[float] = None,
    nvidia: bool = False,
    amd: bool = False,
    intel: bool = False,
) -> HardwareSnapshot:
    total = int(memory_gb * GiB)
    available = int((available_gb if available_gb is not None else memory_gb / 2) * GiB)
    return HardwareSnapshot(
        cpu=CpuInfo(cores=cores, threads=cores * 2, model="Test CPU"),
        gpu=GpuInfo(
            nvidia=GpuDevice(available=True, model="GeForce RTX 3060") if nvidia else GpuDevice(),
            amd=GpuDevice(available=True, model="Radeon RX 6700") if amd else GpuDevice(),
            intel=GpuDevice(available=True, model="Intel UHD 770") if intel else GpuDevice(),
        ),
        memory=MemoryInfo(total=total, available=available),
        platform="linux",
    )


class FakeDriver:
    """
    Stands in for FFmpegDriver. Each run() blocks until the test calls
    finish()/fail() for that job id, or the scheduler cancels it.
    """

    def __init__(self) -> None:
        self.ffmpeg_bin = "ffmpeg"
        self.ffprobe_bin = "ffprobe"
        self.started: list[str] = []
        self.cancel_calls: list[str] = []
        self.configs: dict = {}
        self._gates: dict[str, asyncio.Future] = {}
        self._callbacks: dict = {}

    async def run(self, job_id, input_path, output_path, output_format, quality, config, on_progress=None):
        fut = asyncio.get_running_loop().create_future()
        self._gates[job_id] = fut
        self._callbacks[job_id] = on_progress
        self.started.append(job_id)
        self.configs[job_id] = config
        try:
            outcome = await fut
        finally:
            self._gates.pop(job_id, None)
        if isinstance(outcome, BaseException):
            raise outcome

    async def probe(self, path):
        if "missing" in str(path):
            raise ProbeError(str(path), "ffprobe failed with code 1: No such file or directory")
        return MediaDescriptor(duration=60.0, format="matroska,webm", size=50 * 1024 * 1024,
                               has_video=True, has_audio=True, video_codec="h264", audio_codec="aac")

    def emit(self, job_id: str, progress: float, speed: float = 1.5) -> None:
        self._callbacks[job_id](ProgressSample(progress=progress, speed=speed))

    def finish(self, job_id: str) -> None:
        self._gates[job_id].set_result(None)

    def fail(self, job_id: str, message: str, category: str = "unknown") -> None:
        self._gates[job_id].set_result(ConversionError(message, category=category, returncode=1))

    def is_running(self, job_id: str) -> bool:
        fut = self._gates.get(job_id)
        return fut is not None and not fut.done()

    def cancel(self, job_id: str) -> bool:
        self.cancel_calls.append(job_id)
        fut = self._gates.get(job_id)
        if fut is None or fut.done():
            return False
        fut.set_result(CancelledError(f"Conversion cancelled: {job_id}"))
        return True

    def cancel_all(self) -> int:
        return sum(1 for job_id in list(self._gates) if self.cancel(job_id))

    def active_jobs(self) -> list[str]:
        return [k for k, f in self._gates.items() if not f.done()]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


def make_scheduler(max_jobs: int = 2, auto_detect: bool = False, snapshot=None, driver=None, **kw):
    driver = driver or FakeDriver()
    snapshot = snapshot or make_snapshot()
    settings = Settings(
        max_concurrent_jobs=max_jobs,
        auto_detect_hardware=auto_detect,
        tick_interval=0.01,
        **kw,
    )
    profiler = HardwareProfiler(prober=lambda: snapshot)
    return JobScheduler(driver, profiler, settings), driver


def job(n: int, fmt: str = "mp4", **kw) -> dict:
    return {"id": f"job-{n}", "input_path": f"/media/in{n}.mkv", "output_format": fmt, **kw}


def write_executable(directory: Path, name: str, body: str) -> str:
    """Python script wrapped in a /bin/sh launcher, usable as an ffmpeg binary."""
    script = directory / f"{name}.py"
    script.write_text(body)
    launcher = directory / name
    launcher.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
    launcher.chmod(launcher.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(launcher)


@pytest.fixture
def snapshot():
    return make_snapshot()
