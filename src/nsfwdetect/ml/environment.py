"""Execution environment detection and execution mode selection."""

from __future__ import annotations

import logging
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from onnxruntime import get_available_providers

if TYPE_CHECKING:
    from collections.abc import Iterable

    from nsfwdetect.config import Settings

logger = logging.getLogger(__name__)

CPUINFO_PATH = Path("/proc/cpuinfo")

_EMULATOR_MARKERS = ("qemu virtual cpu", "qemu tcg")

ACCELERATOR_PROVIDERS: dict[str, str] = {
    "cuda": "CUDAExecutionProvider",
    "openvino": "OpenVINOExecutionProvider",
}


class ExecutionMode(StrEnum):
    """How inference is executed.

    PORTABLE_ONLY runs on the CPU provider alone. It always works but the
    model's accuracy is measurably lower than under ACCELERATED.
    """

    ACCELERATED = "accelerated"
    PORTABLE_ONLY = "portable_only"

    @property
    def reduced_accuracy(self) -> bool:
        return self is ExecutionMode.PORTABLE_ONLY


def is_emulated(cpuinfo_path: Path = CPUINFO_PATH) -> bool:
    """Return True when the CPU is emulated and no real accelerator can be reached."""
    try:
        cpuinfo = cpuinfo_path.read_text(errors="ignore").lower()
    except OSError:
        return False
    return any(marker in cpuinfo for marker in _EMULATOR_MARKERS)


def resolve_execution_mode(
    settings: Settings,
    available_providers: Iterable[str] | None = None,
) -> ExecutionMode:
    """Pick the execution mode for this process.

    Emulated environments always get PORTABLE_ONLY: accelerated execution
    fails outright there instead of degrading.
    """
    emulated = settings.emulated if settings.emulated is not None else is_emulated()
    if emulated:
        logger.warning("Emulated environment detected: running CPU-only, accuracy is reduced")
        return ExecutionMode.PORTABLE_ONLY

    provider = ACCELERATOR_PROVIDERS.get(settings.device)
    if provider is None:
        logger.info("Device is cpu: running CPU-only")
        return ExecutionMode.PORTABLE_ONLY

    providers = set(available_providers if available_providers is not None else get_available_providers())
    if provider not in providers:
        logger.warning("%s is not available: running CPU-only, accuracy is reduced", provider)
        return ExecutionMode.PORTABLE_ONLY

    return ExecutionMode.ACCELERATED
