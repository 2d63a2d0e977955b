"""Synchronous subprocess steps with timeouts and cooperative cancellation."""

from __future__ import annotations

import subprocess
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from kiln.errors import CancelledError

DIAGNOSTIC_TAIL_CHARS = 2000
POLL_INTERVAL = 0.1
TERMINATE_GRACE = 5.0
# Exit status reported for a step that could not be started.
LAUNCH_FAILURE_EXIT = 127


@dataclass(frozen=True, slots=True)
class StepResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def diagnostic(self) -> str:
        return diagnostic_tail(self.stderr or self.stdout)


class StepRunner(Protocol):
    def __call__(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> StepResult:
        """Run one step to completion and return its outcome."""


def diagnostic_tail(text: str, limit: int = DIAGNOSTIC_TAIL_CHARS) -> str:
    text = text.rstrip()
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]


def run_step(
    argv: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> StepResult:
    """Run *argv* and block until it exits, times out, or is cancelled.

    A timeout terminates the child and returns ``timed_out=True``. The cancel
    event and ``KeyboardInterrupt`` terminate the child and raise
    :class:`CancelledError`; no further steps should run after that.
    """
    command = tuple(argv)
    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            command,
            cwd=str(cwd),
            env=dict(env) if env is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as exc:
        return StepResult(
            argv=command,
            returncode=LAUNCH_FAILURE_EXIT,
            stderr=f"could not start {command[0]}: {exc}",
        )

    deadline = None if timeout is None else started + timeout
    try:
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    _terminate(proc)
                    raise CancelledError(
                        "Step cancelled.",
                        context={"command": " ".join(command)},
                    ) from None
                if deadline is not None and time.monotonic() >= deadline:
                    stdout, stderr = _terminate(proc)
                    return StepResult(
                        argv=command,
                        returncode=proc.returncode,
                        stdout=stdout,
                        stderr=stderr,
                        duration=time.monotonic() - started,
                        timed_out=True,
                    )
    except KeyboardInterrupt:
        _terminate(proc)
        raise CancelledError(
            "Step interrupted.",
            context={"command": " ".join(command)},
        ) from None

    return StepResult(
        argv=command,
        returncode=proc.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        duration=time.monotonic() - started,
    )


def _terminate(proc: subprocess.Popen[str]) -> tuple[str, str]:
    proc.terminate()
    try:
        stdout, stderr = proc.communicate(timeout=TERMINATE_GRACE)
    except subprocess.TimeoutExpired:
        proc.kill()
        stdout, stderr = proc.communicate()
    return stdout or "", stderr or ""
