"""Toolchain driver and the subprocess machinery it runs stages with."""

from .archive import unpack_archive
from .base import BuildSystem, StageCommand
from .driver import BUILD_STAGES, BuildSession, ToolchainDriver
from .meson import MesonBuildSystem
from .process import StepResult, StepRunner, diagnostic_tail, run_step

__all__ = [
    "BUILD_STAGES",
    "BuildSession",
    "BuildSystem",
    "MesonBuildSystem",
    "StageCommand",
    "StepResult",
    "StepRunner",
    "ToolchainDriver",
    "diagnostic_tail",
    "run_step",
    "unpack_archive",
]
