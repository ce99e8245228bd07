"""
Settings and logging setup.

Settings are read once at startup: defaults, then an optional JSON file, then
environment overrides. The resulting Settings object is handed to the
scheduler and the driver; nothing re-reads it afterwards.
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError, field_validator

from transcodeq.errors import ConfigurationError

logger = logging.getLogger("transcodeq.config")

MIN_CONCURRENT_JOBS = 1
MAX_CONCURRENT_JOBS = 8

CONFIG_FILE = Path(os.environ.get("CONFIG_FILE", "~/.config/transcodeq/settings.json")).expanduser()

DEFAULT_SETTINGS = {
    "max_concurrent_jobs":  2,
    "gpu_acceleration":     True,
    "auto_detect_hardware": True,
    "output_dir":           None,
    "ffmpeg_bin":           "ffmpeg",
    "ffprobe_bin":          "ffprobe",
    "tick_interval":        0.1,
}

# env var -> settings key
ENV_OVERRIDES = {
    "TRANSCODEQ_MAX_JOBS":    "max_concurrent_jobs",
    "TRANSCODEQ_GPU":         "gpu_acceleration",
    "TRANSCODEQ_AUTO_DETECT": "auto_detect_hardware",
    "TRANSCODEQ_OUTPUT_DIR":  "output_dir",
    "FFMPEG_BIN":             "ffmpeg_bin",
    "FFPROBE_BIN":            "ffprobe_bin",
}


def clamp_concurrency(n: int) -> int:
    return max(MIN_CONCURRENT_JOBS, min(MAX_CONCURRENT_JOBS, int(n)))


class Settings(BaseModel):
    max_concurrent_jobs:  int = 2
    gpu_acceleration:     bool = True
    auto_detect_hardware: bool = True
    output_dir:           Optional[str] = None
    ffmpeg_bin:           str = "ffmpeg"
    ffprobe_bin:          str = "ffprobe"
    tick_interval:        float = 0.1

    @field_validator("max_concurrent_jobs")
    @classmethod
    def _clamp_jobs(cls, v: int) -> int:
        return clamp_concurrency(v)

    @field_validator("tick_interval")
    @classmethod
    def _positive_tick(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("tick_interval must be positive")
        return v


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _read_file(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            saved = json.load(f)
        if not isinstance(saved, dict):
            raise ValueError("top level is not an object")
        return saved
    except Exception as e:
        logger.warning(f"Failed to load settings from {path}: {e}, using defaults")
        return {}


def _read_env(environ) -> dict:
    out = {}
    for var, key in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        out[key] = raw
    return out


def load_settings(path: Optional[Path] = None, environ=None) -> Settings:
    """Defaults < JSON file < environment. Raises ConfigurationError on bad values."""
    environ = os.environ if environ is None else environ
    merged = {**DEFAULT_SETTINGS, **_read_file(path or CONFIG_FILE), **_read_env(environ)}
    try:
        return Settings(**{k: v for k, v in merged.items() if k in Settings.model_fields})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e


def save_settings(settings: Settings, path: Optional[Path] = None) -> None:
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(settings.model_dump(), f, indent=2)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def setup_logging(log_path: Optional[str] = None, level: int = logging.INFO, stream=None) -> None:
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    handlers = [logging.StreamHandler(stream or sys.stdout)]
    if log_path:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)
