"""Toolchain driver: a resolved plan to ordered setup, compile and install steps."""

from __future__ import annotations

import shutil
import threading
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import InitVar, dataclass, field
from pathlib import Path

from kiln.config import ToolchainConfig
from kiln.errors import BuildStageError
from kiln.locking import path_lock
from kiln.models import InstalledArtifact, ResolvedSpec, Stage
from kiln.toolchain.archive import unpack_archive
from kiln.toolchain.base import BuildSystem, StageCommand
from kiln.toolchain.meson import MesonBuildSystem
from kiln.toolchain.process import StepResult, StepRunner, run_step

BUILD_STAGES: tuple[Stage, ...] = (Stage.CONFIGURE, Stage.COMPILE, Stage.INSTALL)


@dataclass(slots=True)
class ToolchainDriver:
    config: ToolchainConfig
    build_system: InitVar[BuildSystem | None] = None
    runner: StepRunner = run_step
    cancel: threading.Event = field(default_factory=threading.Event)
    system: BuildSystem = field(init=False)

    def __post_init__(self, build_system: BuildSystem | None) -> None:
        self.system = build_system or MesonBuildSystem(binary=self.config.meson)

    def plan(self, resolved: ResolvedSpec) -> tuple[StageCommand, ...]:
        """Return the three stage commands for *resolved*, in execution order."""
        build_dir = self.config.build_subdir
        return (
            StageCommand(
                stage=Stage.CONFIGURE,
                argv=self.system.setup(
                    build_dir=build_dir,
                    std_args=self.config.std_args(),
                    flags=resolved.flags,
                ),
            ),
            StageCommand(stage=Stage.COMPILE, argv=self.system.compile(build_dir=build_dir)),
            StageCommand(stage=Stage.INSTALL, argv=self.system.install(build_dir=build_dir)),
        )

    def work_dir_for(self, resolved: ResolvedSpec) -> Path:
        return self.config.work_root / f"{resolved.formula}-{resolved.digest[:16]}"

    def lock_path_for(self, resolved: ResolvedSpec) -> Path:
        """Builds of one formula share a lock: they install into the same prefix."""
        return self.config.work_root / resolved.formula

    @contextmanager
    def session(self, resolved: ResolvedSpec, archive: Path) -> Iterator[BuildSession]:
        """Acquire the build directory for *resolved*; release it on every exit path."""
        work_dir = self.work_dir_for(resolved)
        with ExitStack() as stack:
            try:
                stack.enter_context(path_lock(self.lock_path_for(resolved)))
                # Leftovers belong to a run that died without cleanup.
                shutil.rmtree(work_dir, ignore_errors=True)
                work_dir.mkdir(parents=True)
            except OSError as exc:
                raise BuildStageError(
                    "Build directory could not be prepared.",
                    stage=Stage.CONFIGURE,
                    exit_code=1,
                    stderr_tail=str(exc),
                    hint="Point KILN_WORK_DIR at a writable directory.",
                    context={"work_dir": str(work_dir)},
                ) from exc
            try:
                yield BuildSession(
                    driver=self,
                    resolved=resolved,
                    archive=archive,
                    work_dir=work_dir,
                    commands=self.plan(resolved),
                )
            finally:
                shutil.rmtree(work_dir, ignore_errors=True)

    def run_all(self, resolved: ResolvedSpec, archive: Path) -> InstalledArtifact:
        with self.session(resolved, archive) as session:
            session.configure()
            session.compile()
            session.install()
            return session.artifact()


class BuildSession:
    """One pass through configure, compile and install inside a scoped work dir.

    Each stage may be attempted once, and only after every earlier stage
    succeeded.
    """

    def __init__(
        self,
        *,
        driver: ToolchainDriver,
        resolved: ResolvedSpec,
        archive: Path,
        work_dir: Path,
        commands: tuple[StageCommand, ...],
    ) -> None:
        self.driver = driver
        self.resolved = resolved
        self.archive = archive
        self.work_dir = work_dir
        self.source_dir = work_dir / "src"
        self.commands = {command.stage: command for command in commands}
        self.completed: list[Stage] = []
        self.failed: Stage | None = None

    def configure(self) -> StepResult:
        self._begin(Stage.CONFIGURE)
        try:
            unpack_archive(self.archive, self.source_dir)
        except BuildStageError:
            self.failed = Stage.CONFIGURE
            raise
        return self._run(Stage.CONFIGURE)

    def compile(self) -> StepResult:
        self._begin(Stage.COMPILE)
        return self._run(Stage.COMPILE)

    def install(self) -> StepResult:
        self._begin(Stage.INSTALL)
        return self._run(Stage.INSTALL)

    def artifact(self) -> InstalledArtifact:
        if Stage.INSTALL not in self.completed:
            raise RuntimeError("artifact() is only available after a successful install.")
        return InstalledArtifact(
            formula=self.resolved.formula,
            version=self.resolved.version,
            prefix=self.driver.config.prefix,
        )

    def _begin(self, stage: Stage) -> None:
        if self.failed is not None:
            raise RuntimeError(f"Stage {stage} requested after {self.failed} failed.")
        expected = BUILD_STAGES[len(self.completed)] if len(self.completed) < 3 else None
        if stage != expected:
            raise RuntimeError(f"Stage {stage} requested out of order; expected {expected}.")

    def _run(self, stage: Stage) -> StepResult:
        config = self.driver.config
        command = self.commands[stage]
        try:
            result = self.driver.runner(
                command.argv,
                cwd=self.source_dir,
                env=config.process_env(),
                timeout=config.stage_timeout,
                cancel=self.driver.cancel,
            )
        except BaseException:
            self.failed = stage
            raise
        if not result.ok:
            self.failed = stage
            reason = (
                f"timed out after {config.stage_timeout}s"
                if result.timed_out
                else f"exited with status {result.returncode}"
            )
            raise BuildStageError(
                f"Build stage `{stage}` {reason}.",
                stage=stage,
                exit_code=result.returncode,
                stderr_tail=result.diagnostic(),
                hint="Inspect the toolchain output; fix the environment and re-run.",
                context={"command": " ".join(command.argv), "timed_out": str(result.timed_out)},
            )
        self.completed.append(stage)
        return result
