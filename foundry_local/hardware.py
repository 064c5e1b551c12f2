"""Hardware tags, their ranking, and local hardware detection."""

from __future__ import annotations

import glob
import logging
import os
import platform
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Union

logger = logging.getLogger(__name__)


class Hardware(str, Enum):
    CPU = "cpu"
    CUDA = "cuda"
    NPU = "npu"
    GPU = "gpu"

    @classmethod
    def parse(cls, value: Union[str, "Hardware"]) -> "Hardware":
        """Accept canonical tags plus the spellings seen in manifests."""
        if isinstance(value, Hardware):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Hardware tag must be a string, got {value!r}")
        key = value.strip().lower()
        if key in _ALIASES:
            return _ALIASES[key]
        raise ValueError(
            f"Unknown hardware tag {value!r}; choose from {sorted(_ALIASES)}"
        )


_ALIASES: dict[str, Hardware] = {
    "cpu": Hardware.CPU,
    "generic-cpu": Hardware.CPU,
    "cuda": Hardware.CUDA,
    "cuda-gpu": Hardware.CUDA,
    "npu": Hardware.NPU,
    "qnn": Hardware.NPU,
    "qnn-npu": Hardware.NPU,
    "qualcomm-npu": Hardware.NPU,
    "gpu": Hardware.GPU,
    "generic-gpu": Hardware.GPU,
    "webgpu": Hardware.GPU,
    "directml": Hardware.GPU,
}

# Best first.
PREFERENCE: tuple[Hardware, ...] = (Hardware.CUDA, Hardware.NPU, Hardware.GPU, Hardware.CPU)

EXECUTION_PROVIDERS: dict[Hardware, str] = {
    Hardware.CPU: "CPUExecutionProvider",
    Hardware.CUDA: "CUDAExecutionProvider",
    Hardware.NPU: "QNNExecutionProvider",
    Hardware.GPU: "WebGpuExecutionProvider",
}

# Devices a machine with the key device can also run.
_IMPLIED: dict[Hardware, frozenset[Hardware]] = {
    Hardware.CPU: frozenset({Hardware.CPU}),
    Hardware.CUDA: frozenset({Hardware.CUDA, Hardware.GPU, Hardware.CPU}),
    Hardware.NPU: frozenset({Hardware.NPU, Hardware.CPU}),
    Hardware.GPU: frozenset({Hardware.GPU, Hardware.CPU}),
}


def rank(hardware: Hardware) -> int:
    """Lower is better."""
    return PREFERENCE.index(hardware)


@dataclass(frozen=True)
class HardwareProfile:
    devices: frozenset[Hardware]
    memory_mb: Optional[int] = None
    device_name: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "devices", frozenset(self.devices) | {Hardware.CPU})

    @classmethod
    def for_device(cls, device: Union[str, Hardware], **hints) -> "HardwareProfile":
        return cls(devices=_IMPLIED[Hardware.parse(device)], **hints)

    @classmethod
    def from_devices(cls, devices: Iterable[Union[str, Hardware]], **hints) -> "HardwareProfile":
        combined: set[Hardware] = set()
        for d in devices:
            combined |= _IMPLIED[Hardware.parse(d)]
        return cls(devices=frozenset(combined), **hints)

    @property
    def primary(self) -> Hardware:
        return min(self.devices, key=rank)

    def supports(self, hardware: Hardware) -> bool:
        return hardware in self.devices

    def device_tags(self) -> list[str]:
        return [d.value for d in sorted(self.devices, key=rank)]


def _nvidia_memory_mb() -> Optional[int]:
    """Total memory of the first CUDA device, or None if there is none."""
    exe = shutil.which("nvidia-smi")
    if exe is None:
        return None
    try:
        out = subprocess.run(
            [exe, "--query-gpu=memory.total", "--format=csv,noheader,nounits"],
            capture_output=True,
            text=True,
            timeout=10,
            check=True,
        ).stdout
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("nvidia-smi query failed: %s", e)
        return None
    lines = [line.strip() for line in out.splitlines() if line.strip()]
    if not lines:
        return None
    try:
        return int(float(lines[0]))
    except ValueError:
        return None


def _has_qualcomm_npu() -> bool:
    if platform.system() != "Windows":
        return False
    if platform.machine().lower() not in ("arm64", "aarch64"):
        return False
    ident = f"{platform.processor()} {os.environ.get('PROCESSOR_IDENTIFIER', '')}"
    return "qualcomm" in ident.lower() or "snapdragon" in ident.lower()


def _has_generic_gpu() -> bool:
    system = platform.system()
    if system == "Windows":
        return True
    if system == "Darwin":
        return platform.machine().lower() == "arm64"
    return bool(glob.glob("/dev/dri/renderD*"))


def detect_hardware(override: Optional[str] = None) -> HardwareProfile:
    """Probe the machine once.

    *override* (or ``FOUNDRY_LOCAL_HARDWARE``) is a comma-separated list of
    tags and skips probing entirely.
    """
    override = override or os.environ.get("FOUNDRY_LOCAL_HARDWARE")
    if override:
        tags = [t for t in override.split(",") if t.strip()]
        return HardwareProfile.from_devices(tags)

    devices: set[Hardware] = {Hardware.CPU}
    memory_mb = _nvidia_memory_mb()
    name = None
    if memory_mb is not None:
        devices.add(Hardware.CUDA)
        name = "nvidia"
    if _has_qualcomm_npu():
        devices.add(Hardware.NPU)
        name = name or "qualcomm"
    if _has_generic_gpu():
        devices.add(Hardware.GPU)
    profile = HardwareProfile.from_devices(devices, memory_mb=memory_mb, device_name=name)
    logger.info("Detected hardware: %s", ", ".join(profile.device_tags()))
    return profile
