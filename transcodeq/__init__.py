"""
transcodeq - hardware-aware ffmpeg conversion queue.

Submits conversion jobs to a bounded-concurrency scheduler, drives one ffmpeg
process per job, and derives encoder settings from the host hardware.
"""

from transcodeq.errors import (
    CancelledError,
    ConfigurationError,
    ConversionError,
    DetectionError,
    ProbeError,
    TranscodeError,
)
from transcodeq.ffmpeg import FFmpegDriver
from transcodeq.hardware import HardwareProfiler, derive_config, recommended_concurrency
from transcodeq.models import (
    ExecutionConfig,
    HardwareSnapshot,
    JobRequest,
    JobStatus,
    MediaDescriptor,
    OutputFormat,
    ProgressEvent,
    Quality,
)
from transcodeq.scheduler import JobScheduler

__version__ = "1.0.0"

__all__ = [
    "CancelledError",
    "ConfigurationError",
    "ConversionError",
    "DetectionError",
    "ExecutionConfig",
    "FFmpegDriver",
    "HardwareProfiler",
    "HardwareSnapshot",
    "JobRequest",
    "JobScheduler",
    "JobStatus",
    "MediaDescriptor",
    "OutputFormat",
    "ProbeError",
    "ProgressEvent",
    "Quality",
    "TranscodeError",
    "derive_config",
    "recommended_concurrency",
]
