"""Typed engine error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kiln.models import ExecutionResult


class ErrorCode(StrEnum):
    """Stable error identifiers used across API surfaces."""

    SPEC_VALIDATION = "E_SPEC_VALIDATION"
    UNSUPPORTED_PLATFORM = "E_UNSUPPORTED_PLATFORM"
    INTEGRITY = "E_INTEGRITY"
    NETWORK = "E_NETWORK"
    POLICY = "E_POLICY"
    CONFIG = "E_CONFIG"
    BUILD_STAGE = "E_BUILD_STAGE"
    CANCELLED = "E_CANCELLED"
    VERIFY_COMPILE = "E_VERIFY_COMPILE"
    VERIFY_RUNTIME = "E_VERIFY_RUNTIME"
    VERIFY_MISMATCH = "E_VERIFY_MISMATCH"


class KilnError(Exception):
    """Base error class that carries code, optional hint, and context.

    The orchestrator annotates errors it re-raises with the failing ``stage``
    and the terminal ``result`` of the run.
    """

    code: str
    hint: str | None
    context: Mapping[str, str]
    stage: str | None
    result: ExecutionResult | None

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})
        self.stage = None
        self.result = None

    @property
    def message(self) -> str:
        return super().__str__()

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        if self.stage is not None:
            payload["stage"] = self.stage
        return payload


class SpecValidationError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.SPEC_VALIDATION, hint=hint, context=context)


class UnsupportedPlatformError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.UNSUPPORTED_PLATFORM, hint=hint, context=context)


class IntegrityError(KilnError):
    """Digest mismatch on a fetched or cached archive. Never retried."""

    def __init__(
        self,
        message: str,
        *,
        expected: str,
        actual: str,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        merged = {**dict(context or {}), "expected": expected, "actual": actual}
        super().__init__(message, code=ErrorCode.INTEGRITY, hint=hint, context=merged)
        self.expected = expected
        self.actual = actual


class NetworkError(KilnError):
    """Transient transport failure; callers may retry with backoff."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.NETWORK, hint=hint, context=context)


class PolicyError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.POLICY, hint=hint, context=context)


class ConfigurationError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CONFIG, hint=hint, context=context)


class BuildStageError(KilnError):
    """A toolchain stage exited non-zero, timed out, or could not start."""

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        exit_code: int,
        stderr_tail: str = "",
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        merged = {
            **dict(context or {}),
            "stage": stage,
            "exit_code": str(exit_code),
            "stderr": stderr_tail,
        }
        super().__init__(message, code=ErrorCode.BUILD_STAGE, hint=hint, context=merged)
        self.stage = stage
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class CancelledError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CANCELLED, hint=hint, context=context)


class VerificationError(KilnError):
    """Base for smoke-test failures after a successful install."""


class VerifyCompileError(VerificationError):
    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stderr_tail: str = "",
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        merged = dict(context or {})
        if exit_code is not None:
            merged["exit_code"] = str(exit_code)
        merged["stderr"] = stderr_tail
        super().__init__(message, code=ErrorCode.VERIFY_COMPILE, hint=hint, context=merged)
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class VerifyRuntimeError(VerificationError):
    def __init__(
        self,
        message: str,
        *,
        exit_code: int,
        output_tail: str = "",
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        merged = {**dict(context or {}), "exit_code": str(exit_code), "output": output_tail}
        super().__init__(message, code=ErrorCode.VERIFY_RUNTIME, hint=hint, context=merged)
        self.exit_code = exit_code
        self.output_tail = output_tail


class VerifyMismatchError(VerificationError):
    """The artifact ran but reports a different identity than expected."""

    def __init__(
        self,
        message: str,
        *,
        expected: str,
        actual: str,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        merged = {**dict(context or {}), "expected": expected, "actual": actual}
        super().__init__(message, code=ErrorCode.VERIFY_MISMATCH, hint=hint, context=merged)
        self.expected = expected
        self.actual = actual


__all__ = [
    "BuildStageError",
    "CancelledError",
    "ConfigurationError",
    "ErrorCode",
    "IntegrityError",
    "KilnError",
    "NetworkError",
    "PolicyError",
    "SpecValidationError",
    "UnsupportedPlatformError",
    "VerificationError",
    "VerifyCompileError",
    "VerifyMismatchError",
    "VerifyRuntimeError",
]
