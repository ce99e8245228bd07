"""Error taxonomy shared by the profiler, the ffmpeg driver and the scheduler."""

from typing import Optional


class TranscodeError(Exception):
    """Base class for every error raised by transcodeq."""


class DetectionError(TranscodeError):
    """Hardware probing failed. Absorbed by the profiler, which falls back."""


class ProbeError(TranscodeError):
    """ffprobe could not describe a media file."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{message} ({path})")
        self.path = path
        self.message = message


class ConversionError(TranscodeError):
    """ffmpeg exited with a non-zero code, or could not be started."""

    def __init__(self, message: str, category: str = "unknown", returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.category = category
        self.returncode = returncode


class CancelledError(TranscodeError):
    """The ffmpeg process was terminated by a cancel request."""


class ConfigurationError(TranscodeError):
    """A job descriptor or a settings value was rejected."""
