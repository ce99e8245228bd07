"""
Value types passed between the profiler, the driver, the scheduler and the
HTTP layer.

Closed sets (status, format, quality, encoder) are str enums so they serialize
as plain strings. Boundary types are pydantic models; ExecutionConfig and
HardwareSnapshot are frozen because they are shared read-only.
"""

import time
import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Closed sets
# ---------------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class OutputFormat(str, Enum):
    MP3 = "mp3"
    MP4 = "mp4"
    WAV = "wav"
    AAC = "aac"

    @property
    def is_audio_only(self) -> bool:
        return self is not OutputFormat.MP4


class Quality(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    ULTRA = "ultra"


class Encoder(str, Enum):
    CPU = "cpu"
    NVENC = "nvenc"
    AMF = "amf"
    QSV = "qsv"
    VAAPI = "vaapi"


# ---------------------------------------------------------------------------
# Hardware snapshot
# ---------------------------------------------------------------------------

class CpuInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    cores: int
    threads: int
    model: str = "Unknown CPU"
    speed: float = 0.0  # GHz


class GpuDevice(BaseModel):
    model_config = ConfigDict(frozen=True)

    available: bool = False
    model: Optional[str] = None
    memory: Optional[int] = None  # MiB of VRAM when known


class GpuInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    nvidia: GpuDevice = GpuDevice()
    amd: GpuDevice = GpuDevice()
    intel: GpuDevice = GpuDevice()


class MemoryInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int      # bytes
    available: int  # bytes


class HardwareSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    cpu: CpuInfo
    gpu: GpuInfo = GpuInfo()
    memory: MemoryInfo
    platform: str


class ExecutionConfig(BaseModel):
    """Per-job ffmpeg tuning derived from the hardware snapshot."""

    model_config = ConfigDict(frozen=True)

    preset: str
    threads: int
    enable_gpu: bool
    encoder: Encoder
    buffer_size: int  # bytes
    audio_codec: Optional[str] = None
    video_codec: Optional[str] = None


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------

class MediaDescriptor(BaseModel):
    """What ffprobe reported about one input file."""

    duration: float = 0.0  # seconds
    format: str = "unknown"
    size: int = 0  # bytes
    bitrate: int = 0
    width: int = 0
    height: int = 0
    fps_num: int = 0
    fps_den: int = 0
    has_audio: bool = False
    has_video: bool = False
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None

    @property
    def fps(self) -> float:
        if not self.fps_den:
            return 0.0
        return self.fps_num / self.fps_den


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class JobRequest(BaseModel):
    """A job descriptor as submitted by a caller."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    input_path: str
    output_path: Optional[str] = None
    output_format: OutputFormat
    quality: Quality = Quality.MEDIUM
    media: Optional[MediaDescriptor] = None

    @field_validator("id", "input_path")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v


class ProgressSample(BaseModel):
    """One parsed ffmpeg progress marker."""

    progress: float
    speed: Optional[float] = None
    current_time: float = 0.0
    total_time: float = 0.0


class ProgressEvent(BaseModel):
    """A status/progress notification published by the scheduler."""

    job_id: str
    status: JobStatus
    progress: float = 0.0
    speed: Optional[float] = None
    eta: Optional[str] = None
    error: Optional[str] = None


class JobEstimate(BaseModel):
    estimated_time: float  # seconds
    estimated_size: int    # bytes
    configuration: ExecutionConfig


class Job:
    """
    Mutable record for one conversion. Owned by the scheduler; the driver only
    ever sees its fields, never the object.
    """

    def __init__(self, request: JobRequest, output_path: str) -> None:
        self.id:            str = request.id
        self.input_path:    str = request.input_path
        self.output_path:   str = output_path
        self.output_format: OutputFormat = request.output_format
        self.quality:       Quality = request.quality
        self.media:         Optional[MediaDescriptor] = request.media
        self.status:        JobStatus = JobStatus.PENDING
        self.progress:      float = 0.0
        self.speed:         Optional[float] = None
        self.eta:           Optional[str] = None
        self.error:         Optional[str] = None
        self.started_at:    Optional[float] = None  # wall clock
        self.ended_at:      Optional[float] = None
        self._t0:           Optional[float] = None  # monotonic, for ETA

    @property
    def file_size(self) -> int:
        return self.media.size if self.media else 0

    def mark_started(self) -> None:
        self.started_at = time.time()
        self._t0 = time.monotonic()
        self.status = JobStatus.RUNNING
        self.progress = 0.0

    def elapsed(self) -> float:
        if self._t0 is None:
            return 0.0
        return time.monotonic() - self._t0

    def to_event(self) -> ProgressEvent:
        return ProgressEvent(
            job_id=self.id,
            status=self.status,
            progress=round(self.progress, 2),
            speed=self.speed,
            eta=self.eta,
            error=self.error,
        )

    def to_dict(self) -> dict:
        return {
            "id":            self.id,
            "input_path":    self.input_path,
            "output_path":   self.output_path,
            "output_format": self.output_format.value,
            "quality":       self.quality.value,
            "status":        self.status.value,
            "progress":      round(self.progress, 2),
            "speed":         self.speed,
            "eta":           self.eta,
            "error":         self.error,
            "started_at":    self.started_at,
            "ended_at":      self.ended_at,
            "media":         self.media.model_dump() if self.media else None,
        }

    def __repr__(self) -> str:
        return f"Job(id={self.id!r}, status={self.status.value}, progress={self.progress:.1f})"
