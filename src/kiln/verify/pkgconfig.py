"""Package-metadata collaborator: compiler and linker flags for an installed module."""

from __future__ import annotations

import os
import shlex
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from kiln.errors import VerifyCompileError
from kiln.toolchain.process import StepRunner, run_step


class PackageMetadata(Protocol):
    def flags(self, module: str, *, search_dirs: Sequence[Path], cwd: Path) -> tuple[str, ...]:
        """Return compile and link flags for *module*."""


@dataclass(slots=True)
class PkgConfig:
    binary: str = "pkg-config"
    runner: StepRunner = run_step
    timeout: float | None = 30.0

    def flags(self, module: str, *, search_dirs: Sequence[Path], cwd: Path) -> tuple[str, ...]:
        env = dict(os.environ)
        env["PKG_CONFIG_PATH"] = search_path(search_dirs, env.get("PKG_CONFIG_PATH", ""))
        result = self.runner(
            (self.binary, "--cflags", "--libs", module),
            cwd=cwd,
            env=env,
            timeout=self.timeout,
        )
        if not result.ok:
            raise VerifyCompileError(
                f"pkg-config has no usable metadata for `{module}`.",
                exit_code=result.returncode,
                stderr_tail=result.diagnostic(),
                hint="Check that the install step produced a .pc file under the prefix.",
                context={"module": module, "PKG_CONFIG_PATH": env["PKG_CONFIG_PATH"]},
            )
        return tuple(shlex.split(result.stdout))


def search_path(dirs: Sequence[Path], existing: str = "") -> str:
    parts = [str(path) for path in dirs]
    if existing:
        parts.append(existing)
    return os.pathsep.join(parts)
