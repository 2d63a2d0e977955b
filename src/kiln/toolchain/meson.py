"""Meson build system."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


@dataclass(slots=True)
class MesonBuildSystem:
    binary: str = "meson"
    name: str = "meson"

    def setup(
        self,
        *,
        build_dir: str,
        std_args: Sequence[str],
        flags: Sequence[str],
    ) -> tuple[str, ...]:
        return (self.binary, "setup", build_dir, *std_args, *flags)

    def compile(self, *, build_dir: str) -> tuple[str, ...]:
        return (self.binary, "compile", "-C", build_dir)

    def install(self, *, build_dir: str) -> tuple[str, ...]:
        return (self.binary, "install", "-C", build_dir)
