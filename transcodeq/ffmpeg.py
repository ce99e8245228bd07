"""
ffmpeg / ffprobe process driver.

One FFmpegDriver instance supervises every ffmpeg invocation of a scheduler.
Each invocation is wrapped in a ProcessHandle, which owns the OS process and
guarantees it is signalled and reaped however the run ends.
"""

import asyncio
import codecs
import json
import logging
import os
import re
from collections import deque
from pathlib import Path
from typing import Callable, Optional

from transcodeq.errors import CancelledError, ConversionError, ProbeError
from transcodeq.models import (
    Encoder,
    ExecutionConfig,
    MediaDescriptor,
    OutputFormat,
    ProgressSample,
    Quality,
)

logger = logging.getLogger("transcodeq.ffmpeg")

PROBE_TIMEOUT = 30      # seconds
VERSION_TIMEOUT = 10    # seconds
KILL_GRACE = 5.0        # seconds between SIGTERM and SIGKILL on teardown
DIAG_TAIL_LINES = 400

AUDIO_BITRATES = {
    Quality.LOW:    "128k",
    Quality.MEDIUM: "192k",
    Quality.HIGH:   "256k",
    Quality.ULTRA:  "320k",
}

VIDEO_BITRATES = {
    Quality.LOW:    "1000k",
    Quality.MEDIUM: "2500k",
    Quality.HIGH:   "5000k",
    Quality.ULTRA:  "8000k",
}

# Constant-quality tightening on top of the bitrate target.
QUALITY_CRF = {
    Quality.HIGH:  "23",
    Quality.ULTRA: "18",
}

HWACCEL_ARGS = {
    Encoder.NVENC: ["-hwaccel", "cuda", "-hwaccel_output_format", "cuda"],
    Encoder.QSV:   ["-hwaccel", "qsv"],
    Encoder.VAAPI: ["-hwaccel", "vaapi"],
    Encoder.AMF:   ["-hwaccel", "d3d11va"],
}


# ---------------------------------------------------------------------------
# ffprobe
# ---------------------------------------------------------------------------

def parse_frame_rate(rate: Optional[str]) -> tuple[int, int]:
    """'30000/1001' -> (30000, 1001). Missing or zero denominator -> (0, 0)."""
    if not rate:
        return 0, 0
    try:
        if "/" in rate:
            num_s, den_s = rate.split("/", 1)
            num, den = int(float(num_s)), int(float(den_s))
        else:
            num, den = int(float(rate)), 1
    except ValueError:
        return 0, 0
    if den == 0:
        return 0, 0
    return num, den


def _to_float(v) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return 0.0


def _to_int(v) -> int:
    try:
        return int(float(v))
    except (TypeError, ValueError):
        return 0


def parse_probe_output(data: dict) -> MediaDescriptor:
    if not isinstance(data, dict):
        raise ValueError("ffprobe output is not a JSON object")
    fmt = data.get("format") or {}
    streams = data.get("streams") or []

    vs = next((s for s in streams if s.get("codec_type") == "video"), None)
    aus = next((s for s in streams if s.get("codec_type") == "audio"), None)

    fps_num, fps_den = parse_frame_rate(vs.get("r_frame_rate")) if vs else (0, 0)

    return MediaDescriptor(
        duration=_to_float(fmt.get("duration")),
        format=fmt.get("format_name") or "unknown",
        size=_to_int(fmt.get("size")),
        bitrate=_to_int(fmt.get("bit_rate")),
        width=_to_int(vs.get("width")) if vs else 0,
        height=_to_int(vs.get("height")) if vs else 0,
        fps_num=fps_num,
        fps_den=fps_den,
        has_audio=aus is not None,
        has_video=vs is not None,
        video_codec=vs.get("codec_name") if vs else None,
        audio_codec=aus.get("codec_name") if aus else None,
    )


# ---------------------------------------------------------------------------
# Command builder
# ---------------------------------------------------------------------------

def build_ffmpeg_args(
    input_path: str,
    output_path: str,
    output_format: OutputFormat,
    quality: Quality,
    config: ExecutionConfig,
) -> list[str]:
    """Arguments after the binary name. Output path is always last."""
    output_format = OutputFormat(output_format)
    quality = Quality(quality)
    audio_bitrate = AUDIO_BITRATES[quality]

    args = ["-i", input_path]
    args += ["-y"]
    args += ["-progress", "pipe:2"]

    # hwaccel
    if config.enable_gpu and config.encoder is not Encoder.CPU:
        args += HWACCEL_ARGS.get(config.encoder, [])

    args += ["-threads", str(config.threads)]

    if output_format is OutputFormat.MP3:
        args += ["-vn"]
        args += ["-acodec", config.audio_codec or "libmp3lame"]
        args += ["-ab", audio_bitrate]
        args += ["-ar", "44100"]
        args += ["-ac", "2"]
    elif output_format is OutputFormat.MP4:
        if config.enable_gpu and config.video_codec:
            args += ["-c:v", config.video_codec]
        else:
            args += ["-c:v", "libx264", "-preset", config.preset]
        args += ["-c:a", config.audio_codec or "aac"]
        args += ["-b:v", VIDEO_BITRATES[quality], "-b:a", audio_bitrate]
        if quality in QUALITY_CRF:
            args += ["-crf", QUALITY_CRF[quality]]
    elif output_format is OutputFormat.WAV:
        args += ["-vn", "-acodec", "pcm_s16le", "-ar", "44100", "-ac", "2"]
    elif output_format is OutputFormat.AAC:
        args += ["-vn", "-acodec", "aac", "-ab", audio_bitrate]

    args += [output_path]
    return args


# ---------------------------------------------------------------------------
# Progress parsing
# ---------------------------------------------------------------------------

DURATION_RE = re.compile(r"Duration: (\d{2}):(\d{2}):(\d{2}\.\d{2})")
PROGRESS_RE = re.compile(r"time=(\d{2}):(\d{2}):(\d{2}\.\d{2}).+speed=\s*(\d+\.?\d*)x")


def _hms(h: str, m: str, s: str) -> float:
    return int(h) * 3600 + int(m) * 60 + float(s)


class ProgressParser:
    """
    Feeds on ffmpeg diagnostic lines. The first Duration: marker fixes the
    total; later time=/speed= markers become samples. Samples never go
    backwards.
    """

    def __init__(self) -> None:
        self.total_duration: float = 0.0
        self.last_progress: float = 0.0

    def feed(self, line: str) -> Optional[ProgressSample]:
        if self.total_duration == 0.0:
            m = DURATION_RE.search(line)
            if m:
                self.total_duration = _hms(*m.groups())
                return None

        m = PROGRESS_RE.search(line)
        if not m or self.total_duration <= 0:
            return None
        try:
            current = _hms(m.group(1), m.group(2), m.group(3))
            speed = float(m.group(4))
        except ValueError:
            logger.debug(f"Unparseable progress line: {line!r}")
            return None

        progress = min(current / self.total_duration * 100.0, 100.0)
        progress = max(progress, self.last_progress)
        self.last_progress = progress
        return ProgressSample(
            progress=progress,
            speed=speed,
            current_time=current,
            total_time=self.total_duration,
        )


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

ERROR_PATTERNS = [
    ("No such file or directory",     "input_missing",     "Input file not found"),
    ("Invalid data found",            "corrupt_input",     "Invalid or corrupted input file"),
    ("Permission denied",             "permission_denied", "Permission denied - check file permissions"),
    ("Disk full",                     "disk_full",         "Not enough disk space"),
    ("No space left on device",       "disk_full",         "Not enough disk space"),
    ("codec not currently supported", "unsupported_codec", "Unsupported codec in input file"),
]

BANNER_PREFIXES = ("ffmpeg version", "  built", "  configuration", "  lib")

# -progress key=value lines and the periodic stats line
_PROGRESS_KV_RE = re.compile(r"^[a-z_]+=\S*$")
_STATS_RE = re.compile(r"^(frame|size)=")


def _is_noise(line: str) -> bool:
    if not line.strip():
        return True
    if line.startswith(BANNER_PREFIXES):
        return True
    s = line.strip()
    return bool(_PROGRESS_KV_RE.match(s) or _STATS_RE.match(s))


def classify_error(diagnostics: str) -> tuple[str, str]:
    """(category, human message) for a failed ffmpeg run."""
    for needle, category, message in ERROR_PATTERNS:
        if needle in diagnostics:
            return category, message

    meaningful = [ln for ln in diagnostics.strip().splitlines() if not _is_noise(ln)]
    if meaningful:
        return "unknown", meaningful[-1].strip()
    return "unknown", "Unknown conversion error"


# ---------------------------------------------------------------------------
# Process handle
# ---------------------------------------------------------------------------

_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")


async def iter_lines(stream: asyncio.StreamReader, chunk_size: int = 4096):
    """Yield decoded lines split on \\n or \\r (ffmpeg redraws stats with \\r)."""
    # multibyte characters may straddle chunk boundaries
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buf = ""
    while True:
        chunk = await stream.read(chunk_size)
        if not chunk:
            buf += decoder.decode(b"", final=True)
            break
        buf += decoder.decode(chunk)
        parts = _LINE_SPLIT_RE.split(buf)
        buf = parts.pop()
        for part in parts:
            if part:
                yield part
    if buf:
        yield buf


class ProcessHandle:
    """
    Owns one ffmpeg process for one job. terminate() may be called before the
    process exists; start() then signals it as soon as it is spawned. Every
    SIGTERM arms a KILL_GRACE timer that SIGKILLs a process still alive when
    it fires, so a cancelled run always reaches EOF on stderr. Leaving the
    async context terminates and waits for the process.
    """

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self.proc: Optional[asyncio.subprocess.Process] = None
        self.cancelled = False
        self._kill_timer: Optional[asyncio.TimerHandle] = None

    @property
    def exited(self) -> bool:
        return self.proc is not None and self.proc.returncode is not None

    async def start(self, cmd: list[str]) -> None:
        self.proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        if self.cancelled:
            self._signal()

    def terminate(self) -> None:
        self.cancelled = True
        self._signal()

    def _signal(self) -> None:
        if self.proc is None or self.proc.returncode is not None:
            return
        try:
            self.proc.terminate()
        except ProcessLookupError:
            return
        if self._kill_timer is None:
            self._kill_timer = asyncio.get_running_loop().call_later(KILL_GRACE, self._grace_expired)

    def _grace_expired(self) -> None:
        if self.proc is None or self.proc.returncode is not None:
            return
        logger.warning(f"[{self.job_id}] ffmpeg ignored SIGTERM, killing pid={self.proc.pid}")
        self._kill()

    def _kill(self) -> None:
        try:
            self.proc.kill()
        except ProcessLookupError:
            pass

    async def close(self) -> None:
        try:
            if self.proc is not None and self.proc.returncode is None:
                self._signal()
                await self.proc.wait()
        finally:
            if self._kill_timer is not None:
                self._kill_timer.cancel()
            # close() itself interrupted: do not leave the process behind
            if self.proc is not None and self.proc.returncode is None:
                self._kill()

    async def __aenter__(self) -> "ProcessHandle":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

class FFmpegDriver:
    """Spawns ffprobe/ffmpeg, streams progress, and cancels by job id."""

    def __init__(self, ffmpeg_bin: Optional[str] = None, ffprobe_bin: Optional[str] = None) -> None:
        self.ffmpeg_bin = ffmpeg_bin or os.environ.get("FFMPEG_BIN", "ffmpeg")
        self.ffprobe_bin = ffprobe_bin or os.environ.get("FFPROBE_BIN", "ffprobe")
        self._active: dict[str, ProcessHandle] = {}

    # -- availability -------------------------------------------------------

    async def check_available(self) -> bool:
        """True when `ffmpeg -version` runs and exits 0 within VERSION_TIMEOUT."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.ffmpeg_bin, "-version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Failed to spawn {self.ffmpeg_bin}: {e}")
            return False
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=VERSION_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error(f"{self.ffmpeg_bin} -version timed out")
            return False
        if proc.returncode != 0:
            logger.error(f"{self.ffmpeg_bin} -version failed (rc={proc.returncode}): {stderr.decode(errors='replace')[:500]}")
            return False
        return True

    # -- probe --------------------------------------------------------------

    async def probe(self, path: str) -> MediaDescriptor:
        cmd = [
            self.ffprobe_bin,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProbeError(str(path), f"Failed to start ffprobe: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=PROBE_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ProbeError(str(path), "Media info extraction timed out")

        if proc.returncode != 0:
            hint = stderr.decode(errors="replace").strip()[:2000] or "no diagnostics"
            raise ProbeError(str(path), f"ffprobe failed with code {proc.returncode}: {hint}")

        try:
            return parse_probe_output(json.loads(stdout.decode(errors="replace")))
        except ValueError as e:
            raise ProbeError(str(path), f"Failed to parse media info: {e}") from e

    # -- conversion ---------------------------------------------------------

    async def run(
        self,
        job_id: str,
        input_path: str,
        output_path: str,
        output_format: OutputFormat,
        quality: Quality,
        config: ExecutionConfig,
        on_progress: Optional[Callable[[ProgressSample], None]] = None,
    ) -> None:
        """
        Convert one file. Returns on exit code 0; raises CancelledError if
        cancel() hit this job, ConversionError for any other failure.
        """
        if job_id in self._active:
            raise ConversionError(f"Job {job_id} is already running", category="duplicate")

        cmd = [self.ffmpeg_bin] + build_ffmpeg_args(input_path, output_path, output_format, quality, config)
        logger.info(f"[{job_id}] START {Path(input_path).name} -> {Path(output_path).name}")
        logger.debug(f"[{job_id}] ffmpeg args: {' '.join(cmd)}")

        handle = ProcessHandle(job_id)
        self._active[job_id] = handle
        diag: deque = deque(maxlen=DIAG_TAIL_LINES)
        matched: set = set()
        try:
            async with handle:
                if handle.cancelled:
                    raise CancelledError(f"Conversion cancelled: {job_id}")
                try:
                    await handle.start(cmd)
                except OSError as e:
                    raise ConversionError(f"FFmpeg process error: {e}", category="spawn") from e

                parser = ProgressParser()
                async for line in iter_lines(handle.proc.stderr):
                    diag.append(line)
                    for needle, _, _ in ERROR_PATTERNS:
                        if needle in line:
                            matched.add(needle)
                    sample = parser.feed(line)
                    if sample is not None and on_progress is not None:
                        on_progress(sample)
                returncode = await handle.proc.wait()
        finally:
            if self._active.get(job_id) is handle:
                del self._active[job_id]

        if handle.cancelled:
            logger.info(f"[{job_id}] CANCELLED (rc={returncode})")
            raise CancelledError(f"Conversion cancelled: {job_id}")

        if returncode != 0:
            # Early lines may have rotated out of the tail; keep their matches.
            text = "\n".join(list(matched) + list(diag))
            category, message = classify_error(text)
            logger.error(f"[{job_id}] FAIL rc={returncode} category={category}: {message}")
            raise ConversionError(message, category=category, returncode=returncode)

        logger.info(f"[{job_id}] DONE {output_path}")

    # -- cancellation -------------------------------------------------------

    def cancel(self, job_id: str) -> bool:
        """SIGTERM the job's process and forget it. Unknown ids are a no-op."""
        handle = self._active.pop(job_id, None)
        if handle is None or handle.exited:
            return False
        handle.terminate()
        logger.info(f"[{job_id}] Cancel requested")
        return True

    def cancel_all(self) -> int:
        handles = list(self._active.values())
        self._active.clear()
        n = 0
        for handle in handles:
            if not handle.exited:
                handle.terminate()
                n += 1
        if n:
            logger.info(f"Cancelled {n} active conversion(s)")
        return n

    def active_jobs(self) -> list[str]:
        return list(self._active.keys())
