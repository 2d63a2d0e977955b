"""Smoke-test verification of an installed artifact."""

from __future__ import annotations

import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path

from kiln.errors import VerifyCompileError, VerifyMismatchError, VerifyRuntimeError
from kiln.models import InstalledArtifact, VerificationResult, VerificationSpec
from kiln.toolchain.process import StepRunner, diagnostic_tail, run_step
from kiln.verify.pkgconfig import PackageMetadata, PkgConfig, search_path

PROGRAM_SOURCE = "test.c"
PROGRAM_BINARY = "test"


def check_output(output: str, expected_version: str, spec: VerificationSpec) -> VerificationResult:
    """Substring-match *output* against the expected version token."""
    expected = spec.expected_text(expected_version)
    if expected in output:
        return VerificationResult(ok=True, actual_output=output, expected=expected)
    actual = spec.extract_version(output) or output.strip()
    raise VerifyMismatchError(
        "Installed artifact reports a different version than the formula.",
        expected=expected_version,
        actual=actual,
        hint="The build produced a different release than declared; check the source ref.",
        context={"output": diagnostic_tail(output)},
    )


@dataclass(slots=True)
class Verifier:
    """Compile, run and check the formula's smoke-test program.

    Verification only reads from the install prefix, so repeating it on an
    unchanged artifact yields the same result.
    """

    compiler: str = "cc"
    pkg_config: PackageMetadata = field(default_factory=PkgConfig)
    runner: StepRunner = run_step
    timeout: float | None = 60.0
    cancel: threading.Event | None = None

    def verify(
        self,
        artifact: InstalledArtifact,
        expected_version: str,
        *,
        spec: VerificationSpec,
    ) -> VerificationResult:
        with tempfile.TemporaryDirectory(prefix="kiln-verify-") as tmp:
            workdir = Path(tmp)
            (workdir / PROGRAM_SOURCE).write_text(spec.render_program(), encoding="utf-8")
            flags = self.pkg_config.flags(
                spec.pkg_config,
                search_dirs=artifact.pkg_config_dirs,
                cwd=workdir,
            )

            compiled = self.runner(
                (self.compiler, PROGRAM_SOURCE, "-o", PROGRAM_BINARY, *flags),
                cwd=workdir,
                timeout=self.timeout,
                cancel=self.cancel,
            )
            if not compiled.ok:
                raise VerifyCompileError(
                    "Smoke-test program failed to compile.",
                    exit_code=compiled.returncode,
                    stderr_tail=compiled.diagnostic(),
                    hint="Headers or link flags exposed by the artifact are unusable.",
                    context={"formula": artifact.formula, "command": " ".join(compiled.argv)},
                )

            executed = self.runner(
                (str(workdir / PROGRAM_BINARY),),
                cwd=workdir,
                env=_runtime_env(artifact),
                timeout=self.timeout,
                cancel=self.cancel,
            )
            if not executed.ok or not executed.stdout.strip():
                raise VerifyRuntimeError(
                    "Smoke-test program did not run successfully.",
                    exit_code=executed.returncode,
                    output_tail=executed.diagnostic(),
                    hint="The artifact linked but could not run; check shared library paths.",
                    context={"formula": artifact.formula},
                )
            return check_output(executed.stdout, expected_version, spec)


def _runtime_env(artifact: InstalledArtifact) -> dict[str, str]:
    env = dict(os.environ)
    libdir = [artifact.prefix / "lib"]
    for variable in ("LD_LIBRARY_PATH", "DYLD_LIBRARY_PATH"):
        env[variable] = search_path(libdir, env.get(variable, ""))
    return env
