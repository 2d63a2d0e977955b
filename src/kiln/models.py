"""Core typed dataclasses for formulas, resolved build plans and run results."""

from __future__ import annotations

import hashlib
import json
import re
import string
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlsplit

import cbor2

from kiln.errors import ErrorCode, SpecValidationError
from kiln.platforms import OsFamily, PlatformDescriptor, PlatformPredicate

DependencyKind = Literal["build-time", "runtime"]

SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")

PLACEHOLDER_DIGESTS = frozenset(
    {
        "placeholder",
        "todo",
        "tbd",
        "fixme",
        "changeme",
        "skip",
        ":no_check",
        "no_check",
        "0" * 64,
    }
)

DEFAULT_OPTION_TEMPLATE = "-D{name}={value}"
# Bare version token, used when `expect` gives no surrounding text.
VERSION_TOKEN_PATTERN = r"(\d+(?:\.\d+)+)"
_TEMPLATE_FIELDS = frozenset({"name", "value", "bool"})


class Stage(StrEnum):
    """Discrete pipeline steps, in execution order."""

    RESOLVE = "resolve"
    FETCH = "fetch"
    CONFIGURE = "configure"
    COMPILE = "compile"
    INSTALL = "install"
    VERIFY = "verify"


class State(StrEnum):
    INIT = "init"
    RESOLVED = "resolved"
    FETCHED = "fetched"
    CONFIGURED = "configured"
    COMPILED = "compiled"
    INSTALLED = "installed"
    VERIFIED = "verified"
    DONE = "done"
    FAILED = "failed"


# CLI exit codes by failing stage.
STAGE_EXIT_CODES: dict[Stage, int] = {
    Stage.RESOLVE: 10,
    Stage.FETCH: 20,
    Stage.CONFIGURE: 30,
    Stage.COMPILE: 30,
    Stage.INSTALL: 30,
    Stage.VERIFY: 40,
}
CANCELLED_EXIT_CODE = 130


def is_placeholder_digest(value: str) -> bool:
    return value.strip().lower() in PLACEHOLDER_DIGESTS


def canonical_digest(payload: Any) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class SourceRef:
    url: str
    sha256: str
    version: str | None = None
    label: str = "default"

    def __post_init__(self) -> None:
        if not self.url:
            raise SpecValidationError(
                "Source URL must be non-empty.",
                context={"field": "sources.url", "label": self.label},
            )
        try:
            parsed = urlsplit(self.url)
        except ValueError as exc:
            raise SpecValidationError(
                "Source URL is malformed.",
                hint=str(exc),
                context={"field": "sources.url", "label": self.label, "url": self.url},
            ) from exc
        if not parsed.scheme or not (parsed.netloc or parsed.path):
            raise SpecValidationError(
                "Source URL must be absolute, with a scheme such as https or file.",
                context={"field": "sources.url", "label": self.label, "url": self.url},
            )
        if not self.sha256 or is_placeholder_digest(self.sha256):
            raise SpecValidationError(
                "Source integrity digest is missing or a placeholder.",
                hint="Pin the sha256 of the exact archive before fetching it.",
                context={"field": "sources.sha256", "label": self.label, "url": self.url},
            )
        if not SHA256_PATTERN.fullmatch(self.sha256):
            raise SpecValidationError(
                "Source integrity digest is not a lowercase sha256 hex string.",
                context={"field": "sources.sha256", "label": self.label, "value": self.sha256},
            )

    def to_dict(self) -> dict[str, object]:
        return {
            "label": self.label,
            "url": self.url,
            "sha256": self.sha256,
            "version": self.version,
        }


@dataclass(frozen=True, slots=True)
class Dependency:
    name: str
    kind: DependencyKind = "runtime"
    platforms: PlatformPredicate = field(default_factory=PlatformPredicate)
    when: str | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise SpecValidationError("Dependency names must be non-empty.")
        if self.kind not in ("build-time", "runtime"):
            raise SpecValidationError(
                f"Unsupported dependency kind `{self.kind}`.",
                hint="Use `build-time` or `runtime`.",
                context={"field": "dependencies.kind", "dependency": self.name},
            )

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"name": self.name, "kind": self.kind}
        if not self.platforms.is_empty():
            payload["platforms"] = self.platforms.to_dict()
        if self.when is not None:
            payload["when"] = self.when
        return payload


@dataclass(frozen=True, slots=True)
class BuildOption:
    name: str
    default: bool
    template: str = DEFAULT_OPTION_TEMPLATE

    def __post_init__(self) -> None:
        if not self.name:
            raise SpecValidationError("Build option names must be non-empty.")
        fields = {
            parsed[1] for parsed in string.Formatter().parse(self.template) if parsed[1] is not None
        }
        unknown = fields - _TEMPLATE_FIELDS
        if unknown:
            raise SpecValidationError(
                "Build option template uses unknown placeholders.",
                hint="Templates may reference {name}, {value} and {bool}.",
                context={
                    "field": "options.template",
                    "option": self.name,
                    "placeholders": ",".join(sorted(unknown)),
                },
            )

    def render(self, enabled: bool) -> str:
        return self.template.format(
            name=self.name,
            value="enabled" if enabled else "disabled",
            bool="true" if enabled else "false",
        )


@dataclass(frozen=True, slots=True)
class VerificationSpec:
    """Smoke-test template: a C program printing constants exposed by the artifact."""

    pkg_config: str
    headers: tuple[str, ...]
    format: str
    constants: tuple[str, ...] = ()
    expect: str = "{version}"

    def __post_init__(self) -> None:
        if not self.pkg_config:
            raise SpecValidationError(
                "Verification requires a pkg-config module name.",
                context={"field": "verification.pkg_config"},
            )
        if not self.headers:
            raise SpecValidationError(
                "Verification requires at least one header include.",
                context={"field": "verification.headers"},
            )
        if '"' in self.format:
            raise SpecValidationError(
                "Verification format must not contain double quotes.",
                context={"field": "verification.format"},
            )
        if self.expect.count("{version}") != 1:
            raise SpecValidationError(
                "Verification expectation must contain `{version}` exactly once.",
                context={"field": "verification.expect", "value": self.expect},
            )

    def render_program(self) -> str:
        includes = [f"#include <{header}>" for header in self.headers]
        if "stdio.h" not in self.headers:
            includes.append("#include <stdio.h>")
        literal = self.format.replace("\n", "\\n").replace("\t", "\\t")
        args = "".join(f", {constant}" for constant in self.constants)
        return (
            "\n".join(includes)
            + "\n"
            + "int main(void) {\n"
            + f'  printf("{literal}"{args});\n'
            + "  return 0;\n"
            + "}\n"
        )

    def expected_text(self, version: str) -> str:
        return self.expect.replace("{version}", version)

    def extract_version(self, output: str) -> str | None:
        prefix, _, suffix = self.expect.partition("{version}")
        if not prefix and not suffix:
            pattern = VERSION_TOKEN_PATTERN
        else:
            pattern = re.escape(prefix) + r"(\S+?)" + (re.escape(suffix) if suffix else r"(?=\s|$)")
        match = re.search(pattern, output)
        return match.group(1) if match else None

    def to_dict(self) -> dict[str, object]:
        return {
            "pkg_config": self.pkg_config,
            "headers": list(self.headers),
            "format": self.format,
            "constants": list(self.constants),
            "expect": self.expect,
        }


@dataclass(frozen=True, slots=True)
class Formula:
    """Declarative recipe for one installable artifact. Read-only for a run."""

    name: str
    version: str
    sources: tuple[SourceRef, ...]
    verification: VerificationSpec
    description: str = ""
    homepage: str = ""
    license: str = ""
    dependencies: tuple[Dependency, ...] = ()
    options: tuple[BuildOption, ...] = ()
    platforms: tuple[OsFamily, ...] = ()

    def __post_init__(self) -> None:
        if not self.name:
            raise SpecValidationError("Formula name must be non-empty.", context={"field": "name"})
        if not self.version:
            raise SpecValidationError(
                "Formula version must be non-empty.",
                context={"field": "version", "formula": self.name},
            )
        if not self.sources:
            raise SpecValidationError(
                "Formula declares no sources.",
                hint="Add at least one [[sources]] entry with url and sha256.",
                context={"field": "sources", "formula": self.name},
            )
        _ensure_unique("sources.label", self.name, [source.label for source in self.sources])
        _ensure_unique("dependencies", self.name, [dep.name for dep in self.dependencies])
        _ensure_unique("options", self.name, [option.name for option in self.options])
        option_names = {option.name for option in self.options}
        for dep in self.dependencies:
            if dep.when is not None and dep.when not in option_names:
                raise SpecValidationError(
                    f"Dependency `{dep.name}` is gated on unknown option `{dep.when}`.",
                    context={"field": "dependencies.when", "formula": self.name},
                )

    def source(self, label: str | None = None) -> SourceRef:
        if label is None:
            return self.sources[0]
        for source in self.sources:
            if source.label == label:
                return source
        raise SpecValidationError(
            f"Formula `{self.name}` has no source labelled `{label}`.",
            hint=f"Available sources: {', '.join(s.label for s in self.sources)}.",
            context={"field": "sources.label", "formula": self.name},
        )

    def option(self, name: str) -> BuildOption | None:
        for option in self.options:
            if option.name == name:
                return option
        return None


def _ensure_unique(field_name: str, formula: str, names: list[str]) -> None:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            raise SpecValidationError(
                f"Duplicate entry `{name}` in {field_name}.",
                context={"field": field_name, "formula": formula},
            )
        seen.add(name)


@dataclass(frozen=True, slots=True)
class ResolvedOption:
    name: str
    enabled: bool
    flag: str
    overridden: bool = False


@dataclass(frozen=True, slots=True)
class ResolvedSpec:
    """Immutable build plan for a single execution."""

    formula: str
    version: str
    source: SourceRef
    platform: PlatformDescriptor
    dependencies: tuple[Dependency, ...]
    options: tuple[ResolvedOption, ...]
    verification: VerificationSpec

    @property
    def flags(self) -> tuple[str, ...]:
        return tuple(option.flag for option in self.options)

    @property
    def dependency_names(self) -> tuple[str, ...]:
        return tuple(dep.name for dep in self.dependencies)

    @property
    def build_dependencies(self) -> tuple[Dependency, ...]:
        return tuple(dep for dep in self.dependencies if dep.kind == "build-time")

    @property
    def runtime_dependencies(self) -> tuple[Dependency, ...]:
        return tuple(dep for dep in self.dependencies if dep.kind == "runtime")

    def option_enabled(self, name: str) -> bool:
        for option in self.options:
            if option.name == name:
                return option.enabled
        raise KeyError(name)

    @property
    def digest(self) -> str:
        return canonical_digest(self.to_payload())

    def to_payload(self) -> dict[str, Any]:
        return {
            "formula": self.formula,
            "version": self.version,
            "source": self.source.to_dict(),
            "platform": {"os": self.platform.os, "arch": self.platform.arch},
            "dependencies": [dep.to_dict() for dep in self.dependencies],
            "options": {option.name: option.enabled for option in self.options},
            "flags": list(self.flags),
            "verification": self.verification.to_dict(),
        }

    def to_json(self) -> str:
        payload = {**self.to_payload(), "digest": self.digest}
        return json.dumps(payload, indent=2, sort_keys=True) + "\n"


@dataclass(frozen=True, slots=True)
class InstalledArtifact:
    formula: str
    version: str
    prefix: Path

    @property
    def pkg_config_dirs(self) -> tuple[Path, ...]:
        return (self.prefix / "lib" / "pkgconfig", self.prefix / "share" / "pkgconfig")


@dataclass(frozen=True, slots=True)
class VerificationResult:
    ok: bool
    actual_output: str
    expected: str = ""


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Terminal record of one run, consumed by the CLI layer."""

    formula: str
    state: State
    reached: State
    failed_stage: Stage | None = None
    error_code: str | None = None
    exit_status: int | None = None
    diagnostic: str = ""
    installed: bool = False
    verification: VerificationResult | None = None
    plan_digest: str | None = None
    records: tuple[dict[str, Any], ...] = ()

    @property
    def ok(self) -> bool:
        return self.state is State.DONE

    @property
    def exit_code(self) -> int:
        if self.ok:
            return 0
        if self.error_code == ErrorCode.CANCELLED.value:
            return CANCELLED_EXIT_CODE
        if self.failed_stage is None:
            return 1
        return STAGE_EXIT_CODES[self.failed_stage]

    def describe(self) -> str:
        if self.ok:
            return f"{self.formula}: done (installed and verified)"
        status = "n/a" if self.exit_status is None else str(self.exit_status)
        lines = [
            f"{self.formula}: failed at stage {self.failed_stage or 'unknown'} "
            f"[{self.error_code}] (exit status {status})",
        ]
        if self.installed:
            lines.append("  artifact was installed; verification did not pass")
        if self.diagnostic:
            lines.append("  diagnostic tail:")
            lines.extend(f"    {line}" for line in self.diagnostic.rstrip().splitlines())
        return "\n".join(lines)

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(self._payload(), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded

    def _payload(self) -> dict[str, object]:
        verification: dict[str, object] | None = None
        if self.verification is not None:
            verification = {
                "ok": self.verification.ok,
                "actual_output": self.verification.actual_output,
                "expected": self.verification.expected,
            }
        return {
            "formula": self.formula,
            "state": self.state.value,
            "reached": self.reached.value,
            "failed_stage": None if self.failed_stage is None else self.failed_stage.value,
            "error_code": self.error_code,
            "exit_status": self.exit_status,
            "exit_code": self.exit_code,
            "diagnostic": self.diagnostic,
            "installed": self.installed,
            "verification": verification,
            "plan_digest": self.plan_digest,
            "logs": list(self.records),
        }
