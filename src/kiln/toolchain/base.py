"""Typed interfaces for external build systems driven by the engine."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from kiln.models import Stage


@dataclass(frozen=True, slots=True)
class StageCommand:
    stage: Stage
    argv: tuple[str, ...]


class BuildSystem(Protocol):
    name: str

    def setup(
        self,
        *,
        build_dir: str,
        std_args: Sequence[str],
        flags: Sequence[str],
    ) -> tuple[str, ...]:
        """Return argv that configures *build_dir* with the resolved option flags."""

    def compile(self, *, build_dir: str) -> tuple[str, ...]:
        """Return argv that compiles an already configured *build_dir*."""

    def install(self, *, build_dir: str) -> tuple[str, ...]:
        """Return argv that installs the compiled *build_dir*."""
