"""Per-invocation toolchain configuration.

Standard build-system arguments (prefix, libdir, buildtype, wrap mode) are
process-wide in most package managers. Here they live in a frozen
:class:`ToolchainConfig` handed to the driver for one run.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Self

from kiln.errors import ConfigurationError

DEFAULT_PREFIX = Path("/usr/local")
DEFAULT_STATE_DIR = Path.home() / ".cache" / "kiln"

ENV_PREFIX = "KILN_PREFIX"
ENV_MESON = "KILN_MESON"
ENV_CC = "KILN_CC"
ENV_BUILDTYPE = "KILN_BUILDTYPE"
ENV_STAGE_TIMEOUT = "KILN_STAGE_TIMEOUT"
ENV_WORK_DIR = "KILN_WORK_DIR"
ENV_CACHE_DIR = "KILN_CACHE_DIR"

BUILDTYPES = ("plain", "debug", "debugoptimized", "release", "minsize")


@dataclass(frozen=True, slots=True)
class ToolchainConfig:
    prefix: Path = DEFAULT_PREFIX
    meson: str = "meson"
    cc: str = "cc"
    libdir: str = "lib"
    buildtype: str = "release"
    wrap_mode: str = "nofallback"
    build_subdir: str = "build"
    extra_args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    stage_timeout: float | None = None
    work_root: Path = DEFAULT_STATE_DIR / "work"
    cache_root: Path = DEFAULT_STATE_DIR / "downloads"

    def __post_init__(self) -> None:
        if self.buildtype not in BUILDTYPES:
            raise ConfigurationError(
                f"Unsupported buildtype `{self.buildtype}`.",
                hint=f"Use one of: {', '.join(BUILDTYPES)}.",
                context={"field": "buildtype"},
            )
        if self.stage_timeout is not None and self.stage_timeout <= 0:
            raise ConfigurationError(
                "Stage timeout must be positive.",
                context={"field": "stage_timeout", "value": str(self.stage_timeout)},
            )
        if not self.build_subdir or Path(self.build_subdir).is_absolute():
            raise ConfigurationError(
                "build_subdir must be a relative directory name.",
                context={"field": "build_subdir"},
            )

    def std_args(self) -> tuple[str, ...]:
        return (
            f"--prefix={self.prefix}",
            f"--libdir={self.prefix / self.libdir}",
            f"--buildtype={self.buildtype}",
            f"--wrap-mode={self.wrap_mode}",
            *self.extra_args,
        )

    def process_env(self) -> dict[str, str]:
        merged = dict(os.environ)
        merged.update(self.env)
        return merged

    def with_overrides(self, **changes: object) -> Self:
        return replace(self, **changes)  # type: ignore[arg-type]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Self:
        source = os.environ if environ is None else environ
        kwargs: dict[str, object] = {}
        if source.get(ENV_PREFIX):
            kwargs["prefix"] = Path(source[ENV_PREFIX])
        if source.get(ENV_MESON):
            kwargs["meson"] = source[ENV_MESON]
        if source.get(ENV_CC):
            kwargs["cc"] = source[ENV_CC]
        if source.get(ENV_BUILDTYPE):
            kwargs["buildtype"] = source[ENV_BUILDTYPE]
        if source.get(ENV_WORK_DIR):
            kwargs["work_root"] = Path(source[ENV_WORK_DIR])
        if source.get(ENV_CACHE_DIR):
            kwargs["cache_root"] = Path(source[ENV_CACHE_DIR])
        if source.get(ENV_STAGE_TIMEOUT):
            raw = source[ENV_STAGE_TIMEOUT]
            try:
                kwargs["stage_timeout"] = float(raw)
            except ValueError as exc:
                raise ConfigurationError(
                    f"{ENV_STAGE_TIMEOUT} must be a number of seconds.",
                    context={"value": raw},
                ) from exc
        return cls(**kwargs)  # type: ignore[arg-type]
