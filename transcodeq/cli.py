"""
transcodeq command line.

    transcodeq convert a.mkv b.mov --format mp4 --quality high
    transcodeq probe a.mkv
    transcodeq hardware
    transcodeq serve --port 8080
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
import threading
from typing import Optional

from pydantic import ValidationError

from transcodeq import __version__
from transcodeq.config import Settings, load_settings, setup_logging
from transcodeq.errors import ConfigurationError, ProbeError
from transcodeq.ffmpeg import FFmpegDriver
from transcodeq.hardware import (
    HardwareProfiler,
    derive_config,
    recommended_concurrency,
)
from transcodeq.models import JobRequest, JobStatus, OutputFormat, ProgressEvent, Quality
from transcodeq.scheduler import JobScheduler

logger = logging.getLogger("transcodeq.cli")


# ---------------------------------------------------------------------------
# Progress bar
# ---------------------------------------------------------------------------

class ProgressBar:
    """Terminal progress bar fed by scheduler events."""

    def __init__(self, total: int, silent: bool = False) -> None:
        self.total = total
        self.done = 0
        self.failed = 0
        self.cancelled = 0
        self.silent = silent
        self._active: dict[str, ProgressEvent] = {}
        self._lock = threading.Lock()

    def on_event(self, event: ProgressEvent) -> None:
        with self._lock:
            if event.status.is_terminal:
                self._active.pop(event.job_id, None)
                if event.status is JobStatus.COMPLETED:
                    self.done += 1
                elif event.status is JobStatus.FAILED:
                    self.failed += 1
                else:
                    self.cancelled += 1
            elif event.status in (JobStatus.RUNNING, JobStatus.PAUSED):
                self._active[event.job_id] = event

    def render(self) -> str:
        with self._lock:
            processed = self.done + self.failed + self.cancelled
            bar_width = 30
            frac = processed / self.total if self.total else 0
            filled = int(bar_width * frac)
            bar = "#" * filled + "-" * (bar_width - filled)
            parts = []
            for ev in self._active.values():
                speed = f" {ev.speed:.1f}x" if ev.speed else ""
                parts.append(f"{ev.job_id[:8]}:{ev.progress:.0f}%{speed}")
            return (
                f"\r[{bar}] {processed}/{self.total} "
                f"done={self.done} fail={self.failed} cancel={self.cancelled} run={len(self._active)} "
                f"{' '.join(parts)}   "
            )

    def print(self) -> None:
        if self.silent:
            return
        sys.stdout.write(self.render())
        sys.stdout.flush()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _settings_from_args(args: argparse.Namespace) -> Settings:
    settings = load_settings()
    overrides = {}
    if getattr(args, "jobs", None) is not None:
        overrides["max_concurrent_jobs"] = args.jobs
        overrides["auto_detect_hardware"] = False
    if getattr(args, "no_gpu", False):
        overrides["gpu_acceleration"] = False
    if getattr(args, "no_auto_detect", False):
        overrides["auto_detect_hardware"] = False
    if getattr(args, "output", None):
        overrides["output_dir"] = args.output
    if getattr(args, "ffmpeg", None):
        overrides["ffmpeg_bin"] = args.ffmpeg
    if getattr(args, "ffprobe", None):
        overrides["ffprobe_bin"] = args.ffprobe
    try:
        return Settings(**{**settings.model_dump(), **overrides})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid option: {e}") from e


async def _convert(args: argparse.Namespace, settings: Settings) -> int:
    driver = FFmpegDriver(settings.ffmpeg_bin, settings.ffprobe_bin)
    if not await driver.check_available():
        logger.error(f"ffmpeg not usable at {settings.ffmpeg_bin!r}")
        return 1

    profiler = HardwareProfiler(auto_detect=settings.auto_detect_hardware)
    scheduler = JobScheduler(driver, profiler, settings)

    requests = []
    for path in args.inputs:
        try:
            media = await driver.probe(path)
        except ProbeError as e:
            logger.error(f"Skipping {path}: {e}")
            continue
        requests.append(JobRequest(
            input_path=path,
            output_format=args.format,
            quality=args.quality,
            media=media,
        ))

    if not requests:
        logger.info("No jobs to run.")
        return 1

    bar = ProgressBar(total=len(requests), silent=args.quiet)
    scheduler.subscribe(bar.on_event)

    loop = asyncio.get_running_loop()
    cancel_tasks: list[asyncio.Task] = []

    def handle_signal() -> None:
        logger.info("Received stop signal, cancelling conversions...")
        cancel_tasks.append(asyncio.ensure_future(scheduler.cancel_all()))

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle_signal)
        except NotImplementedError:
            pass

    try:
        await scheduler.submit(requests)
    except ConfigurationError as e:
        logger.error(str(e))
        await scheduler.aclose()
        return 2

    join_task = asyncio.ensure_future(scheduler.join())
    while not join_task.done():
        bar.print()
        await asyncio.wait({join_task}, timeout=0.5)
    bar.print()
    if not args.quiet:
        print()

    if cancel_tasks:
        await asyncio.gather(*cancel_tasks)

    for job in scheduler.jobs():
        if job.status is JobStatus.FAILED:
            logger.error(f"FAILED {job.input_path}: {job.error}")

    await scheduler.aclose()
    logger.info(f"Finished | done={bar.done} failed={bar.failed} cancelled={bar.cancelled}")
    return 0 if bar.failed == 0 and bar.cancelled == 0 else 1


async def _probe(args: argparse.Namespace, settings: Settings) -> int:
    driver = FFmpegDriver(settings.ffmpeg_bin, settings.ffprobe_bin)
    rc = 0
    for path in args.inputs:
        try:
            media = await driver.probe(path)
        except ProbeError as e:
            logger.error(str(e))
            rc = 1
            continue
        print(json.dumps({"path": path, **media.model_dump(), "fps": media.fps}, indent=2))
    return rc


def _hardware(args: argparse.Namespace, settings: Settings) -> int:
    profiler = HardwareProfiler(auto_detect=settings.auto_detect_hardware)
    snap = profiler.get_snapshot()
    size = int(args.file_size_mb * 1024 * 1024)
    out = {
        "snapshot": snap.model_dump(),
        "recommended_concurrency": recommended_concurrency(snap),
        "configs": {
            fmt.value: derive_config(snap, size, fmt, allow_gpu=settings.gpu_acceleration).model_dump(mode="json")
            for fmt in OutputFormat
        },
    }
    print(json.dumps(out, indent=2))
    return 0


# global option -> env var read by backend.main's settings loader
SERVE_ENV = {
    "ffmpeg":  "FFMPEG_BIN",
    "ffprobe": "FFPROBE_BIN",
}


def _serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    for attr, var in SERVE_ENV.items():
        value = getattr(args, attr, None)
        if value:
            os.environ[var] = value
    if args.no_auto_detect:
        os.environ["TRANSCODEQ_AUTO_DETECT"] = "false"

    uvicorn.run("backend.main:app", host=args.host, port=args.port, log_level="info")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="transcodeq",
        description="Hardware-aware batch media conversion driven by ffmpeg.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log", default=None, help="Log file path")
    parser.add_argument("--ffmpeg", default=None, help="Path to ffmpeg binary")
    parser.add_argument("--ffprobe", default=None, help="Path to ffprobe binary")
    parser.add_argument("--no-auto-detect", action="store_true", help="Skip hardware detection")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("convert", help="Convert files")
    p.add_argument("inputs", nargs="+", help="Input media files")
    p.add_argument("--format", required=True, choices=[f.value for f in OutputFormat])
    p.add_argument("--quality", default=Quality.MEDIUM.value, choices=[q.value for q in Quality])
    p.add_argument("--output", default=None, help="Output directory (default: next to input)")
    p.add_argument("--jobs", type=int, default=None, help="Concurrent jobs (disables auto sizing)")
    p.add_argument("--no-gpu", action="store_true", help="Disable GPU acceleration")
    p.add_argument("--quiet", action="store_true", help="No progress bar")

    p = sub.add_parser("probe", help="Print media info")
    p.add_argument("inputs", nargs="+")

    p = sub.add_parser("hardware", help="Print detected hardware and derived settings")
    p.add_argument("--file-size-mb", type=float, default=500.0,
        help="Input size used for the derived config preview")

    p = sub.add_parser("serve", help="Run the HTTP dashboard backend")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=8080)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    # stdout carries command output (JSON, progress bar)
    setup_logging(args.log, stream=sys.stderr)

    try:
        settings = _settings_from_args(args)
    except ConfigurationError as e:
        logger.error(str(e))
        return 2

    if args.command == "convert":
        return asyncio.run(_convert(args, settings))
    if args.command == "probe":
        return asyncio.run(_probe(args, settings))
    if args.command == "hardware":
        return _hardware(args, settings)
    return _serve(args, settings)


if __name__ == "__main__":
    sys.exit(main())
