"""
Host hardware detection and the tuning heuristics derived from it.

Detection runs once (psutil for CPU/memory, nvidia-smi and the platform's
display-adapter listing for GPUs) and is cached. Everything that turns a
snapshot into numbers (concurrency, ffmpeg preset/threads/encoder/buffer) is a
pure function of its arguments.
"""

import logging
import math
import os
import platform
import re
import subprocess
import sys
import threading
from typing import Callable, Optional

import psutil

from transcodeq.errors import DetectionError
from transcodeq.models import (
    CpuInfo,
    Encoder,
    ExecutionConfig,
    GpuDevice,
    GpuInfo,
    HardwareSnapshot,
    MemoryInfo,
    OutputFormat,
)

logger = logging.getLogger("transcodeq.hardware")

MiB = 1024 * 1024
GiB = 1024 * MiB

# Vendor keywords matched as whole words against adapter vendor/model strings.
NVIDIA_KEYWORDS = ("nvidia", "geforce", "quadro", "tesla")
AMD_KEYWORDS    = ("amd", "ati", "radeon")
INTEL_KEYWORDS  = ("intel", "iris", "uhd")

# Hardware encoder families in preference order.
GPU_PREFERENCE = (
    ("nvidia", Encoder.NVENC, "h264_nvenc"),
    ("amd",    Encoder.AMF,   "h264_amf"),
    ("intel",  Encoder.QSV,   "h264_qsv"),
)

AUDIO_CODECS = {
    OutputFormat.MP3: "libmp3lame",
    OutputFormat.AAC: "aac",
    OutputFormat.MP4: "aac",
    OutputFormat.WAV: "pcm_s16le",
}

PROBE_TIMEOUT = 10  # seconds per external listing command


# ---------------------------------------------------------------------------
# GPU listing
# ---------------------------------------------------------------------------

def _run_listing(cmd: list[str]) -> str:
    """Run a read-only listing command; empty string if it is missing or fails."""
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=PROBE_TIMEOUT)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"{cmd[0]} unavailable: {e}")
        return ""
    if result.returncode != 0:
        logger.debug(f"{cmd[0]} exited rc={result.returncode}")
        return ""
    return result.stdout


def _nvidia_smi_controllers() -> list[dict]:
    out = _run_listing([
        "nvidia-smi",
        "--query-gpu=name,memory.total",
        "--format=csv,noheader,nounits",
    ])
    controllers = []
    for line in out.splitlines():
        parts = [p.strip() for p in line.split(",")]
        if not parts or not parts[0]:
            continue
        vram = None
        if len(parts) > 1:
            try:
                vram = int(float(parts[1]))
            except ValueError:
                vram = None
        controllers.append({"vendor": "NVIDIA", "model": parts[0], "vram": vram})
    return controllers


_LSPCI_CLASSES = ("VGA compatible controller", "3D controller", "Display controller")


def _lspci_controllers() -> list[dict]:
    controllers = []
    for line in _run_listing(["lspci"]).splitlines():
        for cls in _LSPCI_CLASSES:
            marker = cls + ": "
            idx = line.find(marker)
            if idx != -1:
                desc = line[idx + len(marker):].strip()
                controllers.append({"vendor": desc, "model": desc, "vram": None})
                break
    return controllers


def _macos_controllers() -> list[dict]:
    controllers = []
    for line in _run_listing(["system_profiler", "SPDisplaysDataType"]).splitlines():
        line = line.strip()
        if line.startswith("Chipset Model:"):
            model = line.split(":", 1)[1].strip()
            controllers.append({"vendor": model, "model": model, "vram": None})
    return controllers


def _windows_controllers() -> list[dict]:
    out = _run_listing(["wmic", "path", "win32_VideoController", "get", "name"])
    controllers = []
    for line in out.splitlines()[1:]:
        name = line.strip()
        if name:
            controllers.append({"vendor": name, "model": name, "vram": None})
    return controllers


def list_gpu_controllers() -> list[dict]:
    """Every display adapter the host reports, as {vendor, model, vram} dicts."""
    controllers = _nvidia_smi_controllers()
    if sys.platform.startswith("linux"):
        controllers += _lspci_controllers()
    elif sys.platform == "darwin":
        controllers += _macos_controllers()
    elif sys.platform.startswith("win"):
        controllers += _windows_controllers()
    return controllers


def _matches(text: Optional[str], keywords: tuple) -> bool:
    if not text:
        return False
    low = text.lower()
    return any(re.search(rf"\b{kw}\b", low) for kw in keywords)


def _find_device(controllers: list[dict], keywords: tuple, default_model: str) -> GpuDevice:
    for c in controllers:
        if _matches(c.get("vendor"), keywords) or _matches(c.get("model"), keywords):
            return GpuDevice(available=True, model=c.get("model") or default_model, memory=c.get("vram"))
    return GpuDevice()


def classify_gpus(controllers: list[dict]) -> GpuInfo:
    return GpuInfo(
        nvidia=_find_device(controllers, NVIDIA_KEYWORDS, "NVIDIA GPU"),
        amd=_find_device(controllers, AMD_KEYWORDS, "AMD GPU"),
        intel=_find_device(controllers, INTEL_KEYWORDS, "Intel GPU"),
    )


# ---------------------------------------------------------------------------
# CPU / memory
# ---------------------------------------------------------------------------

def _cpu_model() -> str:
    try:
        with open("/proc/cpuinfo") as f:
            for line in f:
                if line.startswith("model name"):
                    return line.split(":", 1)[1].strip()
    except OSError:
        pass
    return platform.processor() or "Unknown CPU"


def _os_memory() -> tuple[int, int]:
    try:
        vm = psutil.virtual_memory()
        return vm.total, vm.available
    except Exception as e:
        logger.debug(f"psutil memory query failed: {e}")
    try:
        page = os.sysconf("SC_PAGE_SIZE")
        return page * os.sysconf("SC_PHYS_PAGES"), page * os.sysconf("SC_AVPHYS_PAGES")
    except (ValueError, OSError, AttributeError):
        return 0, 0


def probe_hardware(controllers_fn: Callable[[], list[dict]] = list_gpu_controllers) -> HardwareSnapshot:
    """Inspect the host. Raises DetectionError when the CPU/memory probe fails."""
    try:
        logical = psutil.cpu_count(logical=True)
        physical = psutil.cpu_count(logical=False) or logical
        vm = psutil.virtual_memory()
    except Exception as e:
        raise DetectionError(f"CPU/memory probe failed: {e}") from e

    # Frequency is informational only; some VMs do not expose it.
    try:
        freq = psutil.cpu_freq()
    except Exception:
        freq = None

    if not logical:
        raise DetectionError("CPU count unavailable")

    try:
        gpu = classify_gpus(controllers_fn())
    except Exception as e:
        raise DetectionError(f"GPU probe failed: {e}") from e

    return HardwareSnapshot(
        cpu=CpuInfo(
            cores=physical,
            threads=logical,
            model=_cpu_model(),
            speed=round(freq.max / 1000.0, 2) if freq and freq.max else 0.0,
        ),
        gpu=gpu,
        memory=MemoryInfo(total=vm.total, available=vm.available),
        platform=sys.platform,
    )


def fallback_snapshot() -> HardwareSnapshot:
    """Conservative snapshot: OS CPU count, no GPU, OS-reported memory."""
    count = os.cpu_count() or 1
    total, available = _os_memory()
    return HardwareSnapshot(
        cpu=CpuInfo(cores=count, threads=count),
        memory=MemoryInfo(total=total, available=available),
        platform=sys.platform,
    )


# ---------------------------------------------------------------------------
# Profiler
# ---------------------------------------------------------------------------

class HardwareProfiler:
    """
    Captures a HardwareSnapshot once and hands it out read-only.
    Detection never raises; probe failures fall back to fallback_snapshot().
    """

    def __init__(
        self,
        auto_detect: bool = True,
        prober: Callable[[], HardwareSnapshot] = probe_hardware,
    ) -> None:
        self.auto_detect = auto_detect
        self._prober = prober
        self._snapshot: Optional[HardwareSnapshot] = None
        self._lock = threading.Lock()

    def detect(self) -> HardwareSnapshot:
        if not self.auto_detect:
            snap = fallback_snapshot()
        else:
            logger.info("Detecting hardware capabilities...")
            try:
                snap = self._prober()
            except DetectionError as e:
                logger.warning(f"Hardware detection failed, using fallback: {e}")
                snap = fallback_snapshot()
        with self._lock:
            self._snapshot = snap
        logger.info(
            f"Hardware: cpu={snap.cpu.model!r} cores={snap.cpu.cores} threads={snap.cpu.threads} | "
            f"gpu={best_gpu(snap) or 'none'} | "
            f"mem_total={snap.memory.total // MiB}MiB avail={snap.memory.available // MiB}MiB | "
            f"platform={snap.platform}"
        )
        return snap

    def get_snapshot(self) -> HardwareSnapshot:
        with self._lock:
            snap = self._snapshot
        if snap is None:
            snap = self.detect()
        return snap

    def redetect(self) -> HardwareSnapshot:
        return self.detect()

    def configure(self, auto_detect: bool) -> None:
        """Switch detection mode; the cached snapshot is dropped on change."""
        with self._lock:
            if auto_detect != self.auto_detect:
                self.auto_detect = auto_detect
                self._snapshot = None

    @property
    def detected(self) -> bool:
        return self._snapshot is not None


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------

def is_acceleration_available(snapshot: HardwareSnapshot) -> bool:
    g = snapshot.gpu
    return g.nvidia.available or g.amd.available or g.intel.available


def best_gpu(snapshot: HardwareSnapshot) -> Optional[str]:
    """Model string of the preferred available GPU, or None."""
    for vendor, _, _ in GPU_PREFERENCE:
        dev = getattr(snapshot.gpu, vendor)
        if dev.available:
            return dev.model
    return None


def recommended_concurrency(snapshot: HardwareSnapshot) -> int:
    """Half the cores, at most one job per 2 GiB of RAM, between 1 and 4."""
    total_gb = snapshot.memory.total // GiB
    jobs = min(snapshot.cpu.cores // 2, total_gb // 2)
    return max(1, min(4, jobs))


def _preset(cores: int, file_size: int) -> str:
    if file_size > GiB:
        return "medium" if cores >= 8 else "fast"
    if file_size > 100 * MiB:
        return "medium" if cores >= 4 else "fast"
    return "fast"


def _threads(cores: int) -> int:
    return max(1, min(16, math.floor(cores * 0.75)))


def _buffer_size(available: int, file_size: int) -> int:
    ceiling = math.floor(available * 0.25)
    if file_size >= 2 * GiB:
        tier = 64 * MiB
    elif file_size >= 500 * MiB:
        tier = 32 * MiB
    else:
        tier = 16 * MiB
    return min(ceiling, tier)


def derive_config(
    snapshot: HardwareSnapshot,
    file_size: int,
    target_format: OutputFormat,
    allow_gpu: bool = True,
) -> ExecutionConfig:
    target_format = OutputFormat(target_format)

    encoder, gpu_video_codec = Encoder.CPU, None
    if allow_gpu and not target_format.is_audio_only:
        for vendor, enc, codec in GPU_PREFERENCE:
            if getattr(snapshot.gpu, vendor).available:
                encoder, gpu_video_codec = enc, codec
                break
    enable_gpu = encoder is not Encoder.CPU

    if target_format.is_audio_only:
        video_codec = None
    else:
        video_codec = gpu_video_codec or "libx264"

    return ExecutionConfig(
        preset=_preset(snapshot.cpu.cores, file_size),
        threads=_threads(snapshot.cpu.cores),
        enable_gpu=enable_gpu,
        encoder=encoder,
        buffer_size=_buffer_size(snapshot.memory.available, file_size),
        audio_codec=AUDIO_CODECS[target_format],
        video_codec=video_codec,
    )


# ---------------------------------------------------------------------------
# Live load (status surface)
# ---------------------------------------------------------------------------

def current_load() -> dict:
    result = {"cpu": 0.0, "memory": 0.0, "gpu": None}
    try:
        result["cpu"] = round(psutil.cpu_percent(interval=None), 1)
        result["memory"] = round(psutil.virtual_memory().percent, 1)
    except Exception as e:
        logger.debug(f"Load query failed: {e}")

    out = _run_listing([
        "nvidia-smi",
        "--query-gpu=utilization.gpu",
        "--format=csv,noheader,nounits",
    ])
    line = out.strip().splitlines()[0] if out.strip() else ""
    if line:
        try:
            result["gpu"] = int(float(line))
        except ValueError:
            pass
    return result
