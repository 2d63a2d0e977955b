import json
from pathlib import Path

import cbor2
import pytest

from kiln.errors import (
    BuildStageError,
    CancelledError,
    ConfigurationError,
    ErrorCode,
    IntegrityError,
    NetworkError,
    PolicyError,
    SpecValidationError,
    UnsupportedPlatformError,
    VerifyCompileError,
    VerifyMismatchError,
    VerifyRuntimeError,
)
from kiln.models import (
    BuildOption,
    Dependency,
    ExecutionResult,
    Formula,
    SourceRef,
    Stage,
    State,
    VerificationSpec,
)


def test_error_codes_are_stable_and_machine_readable() -> None:
    errors = [
        SpecValidationError("bad recipe"),
        UnsupportedPlatformError("no variant"),
        IntegrityError("digest drift", expected="a" * 64, actual="b" * 64),
        NetworkError("connection reset"),
        PolicyError("offline"),
        ConfigurationError("bad timeout"),
        BuildStageError("setup failed", stage="configure", exit_code=1),
        CancelledError("interrupted"),
        VerifyCompileError("no header"),
        VerifyRuntimeError("segfault", exit_code=139),
        VerifyMismatchError("wrong version", expected="10.7.0", actual="10.6.0"),
    ]
    assert [error.code for error in errors] == [
        ErrorCode.SPEC_VALIDATION.value,
        ErrorCode.UNSUPPORTED_PLATFORM.value,
        ErrorCode.INTEGRITY.value,
        ErrorCode.NETWORK.value,
        ErrorCode.POLICY.value,
        ErrorCode.CONFIG.value,
        ErrorCode.BUILD_STAGE.value,
        ErrorCode.CANCELLED.value,
        ErrorCode.VERIFY_COMPILE.value,
        ErrorCode.VERIFY_RUNTIME.value,
        ErrorCode.VERIFY_MISMATCH.value,
    ]


def test_error_payload_carries_hint_and_context() -> None:
    error = BuildStageError(
        "Build stage `compile` exited with status 2.",
        stage="compile",
        exit_code=2,
        stderr_tail="undefined reference to `sf_open`",
        hint="Install libsndfile.",
    )
    payload = error.to_dict()

    assert payload["code"] == "E_BUILD_STAGE"
    assert payload["hint"] == "Install libsndfile."
    assert payload["stage"] == "compile"
    assert payload["context"] == {
        "stage": "compile",
        "exit_code": "2",
        "stderr": "undefined reference to `sf_open`",
    }
    assert "Hint: Install libsndfile." in str(error)
    assert error.message == "Build stage `compile` exited with status 2."


@pytest.mark.parametrize("digest", ["", "PLACEHOLDER", "todo", ":no_check", "0" * 64])
def test_source_rejects_missing_or_placeholder_digest(digest: str) -> None:
    with pytest.raises(SpecValidationError) as excinfo:
        SourceRef(url="https://example.invalid/wfdb.tar.gz", sha256=digest)

    assert excinfo.value.context["field"] == "sources.sha256"


@pytest.mark.parametrize("url", ["not-a-url", "wfdb-10.7.0.tar.gz", "http://[::1/wfdb.tar.gz"])
def test_source_rejects_urls_without_scheme_or_host(url: str) -> None:
    with pytest.raises(SpecValidationError) as excinfo:
        SourceRef(url=url, sha256="a" * 64)

    assert excinfo.value.context["field"] == "sources.url"


def test_source_rejects_malformed_digest() -> None:
    with pytest.raises(SpecValidationError):
        SourceRef(url="https://example.invalid/wfdb.tar.gz", sha256="ABC123")


def test_formula_requires_at_least_one_source() -> None:
    with pytest.raises(SpecValidationError) as excinfo:
        Formula(name="wfdb", version="10.7.0", sources=(), verification=_verification())

    assert excinfo.value.context["field"] == "sources"


def test_formula_rejects_dependency_gated_on_unknown_option() -> None:
    with pytest.raises(SpecValidationError):
        Formula(
            name="wfdb",
            version="10.7.0",
            sources=(_source(),),
            verification=_verification(),
            dependencies=(Dependency(name="curl", when="netfiles"),),
        )


def test_formula_rejects_duplicate_option_names() -> None:
    with pytest.raises(SpecValidationError):
        Formula(
            name="wfdb",
            version="10.7.0",
            sources=(_source(),),
            verification=_verification(),
            options=(BuildOption(name="docs", default=False), BuildOption("docs", default=True)),
        )


def test_formula_source_lookup_by_label() -> None:
    release = _source(label="release")
    nightly = SourceRef(
        url="https://example.invalid/nightly.tar.gz", sha256="b" * 64, label="nightly"
    )
    formula = Formula(
        name="wfdb",
        version="10.7.0",
        sources=(release, nightly),
        verification=_verification(),
    )

    assert formula.source() == release
    assert formula.source("nightly") == nightly
    with pytest.raises(SpecValidationError):
        formula.source("beta")


def test_build_option_renders_meson_feature_flags() -> None:
    option = BuildOption(name="flac", default=True)
    boolean = BuildOption(name="docs", default=False, template="-D{name}={bool}")

    assert option.render(True) == "-Dflac=enabled"
    assert option.render(False) == "-Dflac=disabled"
    assert boolean.render(True) == "-Ddocs=true"


def test_build_option_rejects_unknown_template_fields() -> None:
    with pytest.raises(SpecValidationError):
        BuildOption(name="flac", default=True, template="-D{name}={feature}")


def test_verification_program_prints_requested_constants() -> None:
    program = _verification().render_program()

    assert "#include <wfdb/wfdb.h>" in program
    assert "#include <stdio.h>" in program
    assert 'printf("WFDB %d.%d.%d\\n", WFDB_MAJOR, WFDB_MINOR, WFDB_RELEASE);' in program


def test_verification_extracts_reported_version() -> None:
    spec = _verification()

    assert spec.expected_text("10.7.0") == "WFDB 10.7.0"
    assert spec.extract_version("WFDB 10.6.0\n") == "10.6.0"
    assert spec.extract_version("garbage") is None


def test_execution_result_exit_codes_follow_failing_stage() -> None:
    assert _failed(Stage.RESOLVE, "E_SPEC_VALIDATION").exit_code == 10
    assert _failed(Stage.FETCH, "E_INTEGRITY").exit_code == 20
    assert _failed(Stage.CONFIGURE, "E_BUILD_STAGE").exit_code == 30
    assert _failed(Stage.INSTALL, "E_BUILD_STAGE").exit_code == 30
    assert _failed(Stage.VERIFY, "E_VERIFY_MISMATCH").exit_code == 40
    assert _failed(Stage.COMPILE, "E_CANCELLED").exit_code == 130


def test_execution_result_describe_names_stage_and_diagnostic() -> None:
    result = ExecutionResult(
        formula="wfdb",
        state=State.FAILED,
        reached=State.INSTALLED,
        failed_stage=Stage.VERIFY,
        error_code="E_VERIFY_MISMATCH",
        diagnostic="expected version 10.7.0, artifact reports 10.6.0",
        installed=True,
    )
    text = result.describe()

    assert "failed at stage verify [E_VERIFY_MISMATCH] (exit status n/a)" in text
    assert "artifact was installed" in text
    assert "artifact reports 10.6.0" in text


def test_execution_result_serializes_to_json_and_cbor(tmp_path: Path) -> None:
    result = _failed(Stage.COMPILE, "E_BUILD_STAGE")

    json_path = tmp_path / "report.json"
    result.to_json(json_path)
    report = json.loads(json_path.read_text(encoding="utf-8"))
    decoded = cbor2.loads(result.to_cbor())

    assert report["failed_stage"] == "compile"
    assert report["exit_code"] == 30
    assert decoded == report
    assert result.to_cbor() == result.to_cbor()


def _source(label: str = "default") -> SourceRef:
    return SourceRef(url="https://example.invalid/wfdb.tar.gz", sha256="a" * 64, label=label)


def _verification() -> VerificationSpec:
    return VerificationSpec(
        pkg_config="wfdb",
        headers=("wfdb/wfdb.h",),
        format="WFDB %d.%d.%d\n",
        constants=("WFDB_MAJOR", "WFDB_MINOR", "WFDB_RELEASE"),
        expect="WFDB {version}",
    )


def _failed(stage: Stage, code: str) -> ExecutionResult:
    return ExecutionResult(
        formula="wfdb",
        state=State.FAILED,
        reached=State.INIT,
        failed_stage=stage,
        error_code=code,
    )
