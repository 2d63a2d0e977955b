"""Execution orchestrator: the resolve, fetch, build, verify state machine."""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kiln.errors import (
    BuildStageError,
    CancelledError,
    KilnError,
    VerifyCompileError,
    VerifyMismatchError,
    VerifyRuntimeError,
)
from kiln.fetch import Fetcher, verify_archive
from kiln.models import (
    ExecutionResult,
    Formula,
    InstalledArtifact,
    ResolvedSpec,
    Stage,
    State,
    VerificationResult,
)
from kiln.observability import StructuredLogger
from kiln.platforms import PlatformDescriptor, detect_platform
from kiln.policy import Policy
from kiln.recipe import load_formula, parse_formula
from kiln.resolver import FeatureSet, resolve
from kiln.toolchain import ToolchainDriver, diagnostic_tail
from kiln.verify import Verifier

RecipeInput = Formula | Mapping[str, Any] | str | Path


@dataclass(slots=True)
class _Run:
    formula: str
    state: State = State.INIT
    failed_stage: Stage | None = None
    installed: bool = False
    plan_digest: str | None = None
    verification: VerificationResult | None = None
    first_record: int = 0


@dataclass(slots=True)
class Orchestrator:
    """Drive one formula through every stage, at most one attempt per stage.

    Failures are re-raised unchanged in type, annotated with ``stage`` and the
    terminal ``result``, after the build directory has been released.
    """

    fetcher: Fetcher
    driver: ToolchainDriver
    verifier: Verifier = field(default_factory=Verifier)
    platform: PlatformDescriptor = field(default_factory=detect_platform)
    policy: Policy = field(default_factory=Policy)
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self) -> None:
        self.driver.cancel = self.cancel_event
        self.verifier.cancel = self.cancel_event

    def cancel(self) -> None:
        """Request cancellation; the running step is terminated and the run fails."""
        self.cancel_event.set()

    def install(
        self,
        recipe: RecipeInput,
        features: FeatureSet | None = None,
        *,
        source: str | None = None,
    ) -> ExecutionResult:
        run = _Run(formula=_recipe_label(recipe), first_record=len(self.logger.records))
        try:
            with self._stage(run, Stage.RESOLVE, reaches=State.RESOLVED):
                formula = _load(recipe)
                run.formula = formula.name
                resolved = resolve(
                    formula,
                    self.platform,
                    features,
                    source=source,
                    policy=self.policy,
                )
                run.plan_digest = resolved.digest
                self._log(
                    run, "resolved", Stage.RESOLVE, "Resolved build plan.", _plan_extra(resolved)
                )

            with self._stage(run, Stage.FETCH, reaches=State.FETCHED):
                archive = self.fetcher.fetch(resolved.source)
                verify_archive(archive, resolved.source)

            with self.driver.session(resolved, archive) as session:
                with self._stage(run, Stage.CONFIGURE, reaches=State.CONFIGURED):
                    session.configure()
                with self._stage(run, Stage.COMPILE, reaches=State.COMPILED):
                    session.compile()
                with self._stage(run, Stage.INSTALL, reaches=State.INSTALLED):
                    session.install()
                    run.installed = True
                artifact = session.artifact()

            with self._stage(run, Stage.VERIFY, reaches=State.VERIFIED):
                run.verification = self._verify(artifact, resolved)
        except KeyboardInterrupt as exc:
            cancelled = CancelledError(
                "Run interrupted.",
                context={"formula": run.formula, "state": run.state.value},
            )
            self._fail(run, cancelled, run.failed_stage or _next_stage(run.state))
            raise cancelled from exc
        except KilnError as exc:
            self._fail(run, exc, run.failed_stage or _next_stage(run.state))
            raise

        run.state = State.DONE
        self._log(run, "run_complete", None, "Formula installed and verified.")
        return self._result(run)

    def _verify(self, artifact: InstalledArtifact, resolved: ResolvedSpec) -> VerificationResult:
        return self.verifier.verify(artifact, resolved.version, spec=resolved.verification)

    @contextmanager
    def _stage(self, run: _Run, stage: Stage, *, reaches: State) -> Iterator[None]:
        if self.cancel_event.is_set():
            run.failed_stage = stage
            raise CancelledError(
                "Run cancelled before stage start.",
                context={"formula": run.formula, "stage": stage.value},
            )
        started = time.monotonic()
        self._log(run, "stage_start", stage, f"Starting {stage}.")
        try:
            yield
        except BaseException:
            run.failed_stage = stage
            raise
        run.state = reaches
        self._log(
            run,
            "stage_complete",
            stage,
            f"Completed {stage}.",
            {"state": reaches.value, "duration": round(time.monotonic() - started, 3)},
        )

    def _fail(self, run: _Run, exc: KilnError, stage: Stage) -> None:
        run.failed_stage = stage
        if exc.stage is None:
            exc.stage = stage.value
        self._log(
            run,
            "stage_failed",
            stage,
            exc.message,
            {"code": exc.code, "reached": run.state.value, "installed": run.installed},
            level="error",
        )
        exc.result = self._result(run, error=exc)

    def _result(self, run: _Run, *, error: KilnError | None = None) -> ExecutionResult:
        records = tuple(self.logger.records[run.first_record :])
        if error is None:
            return ExecutionResult(
                formula=run.formula,
                state=State.DONE,
                reached=State.DONE,
                exit_status=0,
                installed=run.installed,
                verification=run.verification,
                plan_digest=run.plan_digest,
                records=records,
            )
        return ExecutionResult(
            formula=run.formula,
            state=State.FAILED,
            reached=run.state,
            failed_stage=run.failed_stage,
            error_code=error.code,
            exit_status=_exit_status(error),
            diagnostic=_diagnostic(error),
            installed=run.installed,
            plan_digest=run.plan_digest,
            records=records,
        )

    def _log(
        self,
        run: _Run,
        operation: str,
        stage: Stage | None,
        message: str,
        extra: dict[str, Any] | None = None,
        *,
        level: str = "info",
    ) -> None:
        self.logger.log(
            operation=operation,
            formula=run.formula,
            stage=None if stage is None else stage.value,
            message=message,
            level=level,
            extra=extra,
        )


def _load(recipe: RecipeInput) -> Formula:
    if isinstance(recipe, Formula):
        return recipe
    if isinstance(recipe, (str, Path)):
        return load_formula(recipe)
    return parse_formula(recipe)


def _recipe_label(recipe: RecipeInput) -> str:
    if isinstance(recipe, Formula):
        return recipe.name
    if isinstance(recipe, (str, Path)):
        return Path(recipe).stem
    name = recipe.get("name") if isinstance(recipe, Mapping) else None
    return name if isinstance(name, str) and name else "<recipe>"


_STAGE_AFTER: dict[State, Stage] = {
    State.INIT: Stage.RESOLVE,
    State.RESOLVED: Stage.FETCH,
    State.FETCHED: Stage.CONFIGURE,
    State.CONFIGURED: Stage.COMPILE,
    State.COMPILED: Stage.INSTALL,
    State.INSTALLED: Stage.VERIFY,
}


def _next_stage(state: State) -> Stage:
    return _STAGE_AFTER.get(state, Stage.VERIFY)


def _exit_status(error: KilnError) -> int | None:
    if isinstance(error, (BuildStageError, VerifyCompileError, VerifyRuntimeError)):
        return error.exit_code
    return None


def _diagnostic(error: KilnError) -> str:
    if isinstance(error, (BuildStageError, VerifyCompileError)) and error.stderr_tail:
        return error.stderr_tail
    if isinstance(error, VerifyRuntimeError) and error.output_tail:
        return error.output_tail
    if isinstance(error, VerifyMismatchError):
        return f"expected version {error.expected}, artifact reports {error.actual}"
    return diagnostic_tail(str(error))


def _plan_extra(resolved: ResolvedSpec) -> dict[str, Any]:
    return {
        "digest": resolved.digest,
        "platform": str(resolved.platform),
        "source": resolved.source.label,
        "dependencies": list(resolved.dependency_names),
        "flags": list(resolved.flags),
    }
