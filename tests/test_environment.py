"""Tests for execution mode selection."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import patch

from nsfwdetect.config import Settings
from nsfwdetect.ml.environment import ExecutionMode, is_emulated, resolve_execution_mode

if TYPE_CHECKING:
    from pathlib import Path


class TestIsEmulated:
    def test_qemu_cpu_detected(self, tmp_path: Path) -> None:
        cpuinfo = tmp_path / "cpuinfo"
        cpuinfo.write_text("processor\t: 0\nmodel name\t: QEMU Virtual CPU version 2.5+\n")
        assert is_emulated(cpuinfo) is True

    def test_physical_cpu_not_emulated(self, tmp_path: Path) -> None:
        cpuinfo = tmp_path / "cpuinfo"
        cpuinfo.write_text("processor\t: 0\nmodel name\t: AMD EPYC 7763 64-Core Processor\n")
        assert is_emulated(cpuinfo) is False

    def test_missing_cpuinfo_not_emulated(self, tmp_path: Path) -> None:
        assert is_emulated(tmp_path / "missing") is False


class TestResolveExecutionMode:
    def test_emulated_forces_portable(self) -> None:
        settings = Settings(device="cuda", emulated=True)
        mode = resolve_execution_mode(settings, available_providers=["CUDAExecutionProvider", "CPUExecutionProvider"])
        assert mode is ExecutionMode.PORTABLE_ONLY

    def test_detected_emulation_forces_portable(self) -> None:
        settings = Settings(device="cuda", emulated=None)
        with patch("nsfwdetect.ml.environment.is_emulated", return_value=True):
            mode = resolve_execution_mode(settings, available_providers=["CUDAExecutionProvider"])
        assert mode is ExecutionMode.PORTABLE_ONLY

    def test_cuda_available_is_accelerated(self) -> None:
        settings = Settings(device="cuda", emulated=False)
        mode = resolve_execution_mode(settings, available_providers=["CUDAExecutionProvider", "CPUExecutionProvider"])
        assert mode is ExecutionMode.ACCELERATED

    def test_openvino_available_is_accelerated(self) -> None:
        settings = Settings(device="openvino", emulated=False)
        mode = resolve_execution_mode(settings, available_providers=["OpenVINOExecutionProvider"])
        assert mode is ExecutionMode.ACCELERATED

    def test_missing_provider_falls_back_to_portable(self) -> None:
        settings = Settings(device="cuda", emulated=False)
        mode = resolve_execution_mode(settings, available_providers=["CPUExecutionProvider"])
        assert mode is ExecutionMode.PORTABLE_ONLY

    def test_cpu_device_is_portable(self) -> None:
        settings = Settings(device="cpu", emulated=False)
        assert resolve_execution_mode(settings) is ExecutionMode.PORTABLE_ONLY

    def test_portable_reports_reduced_accuracy(self) -> None:
        assert ExecutionMode.PORTABLE_ONLY.reduced_accuracy is True
        assert ExecutionMode.ACCELERATED.reduced_accuracy is False
