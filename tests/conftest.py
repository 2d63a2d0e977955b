"""Shared test fixtures and fake collaborators."""

from __future__ import annotations

import hashlib
import io
import sys
import tarfile
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from kiln.config import ToolchainConfig
from kiln.models import SourceRef
from kiln.toolchain.process import StepResult

FORMULAS_DIR = Path(__file__).resolve().parents[1] / "examples" / "formulas"


def step_key(argv: Sequence[str]) -> str:
    """Name a step by what it does: meson subcommand, pkg-config, cc, or run."""
    program = Path(argv[0]).name
    if program == "meson":
        return argv[1]
    if program == "pkg-config":
        return "pkg-config"
    if program == "test":
        return "run"
    return "cc"


@dataclass
class RecordingRunner:
    """Step runner double: records argv and replays scripted outcomes."""

    outcomes: dict[str, tuple[int, str, str]] = field(default_factory=dict)
    timed_out: set[str] = field(default_factory=set)
    raises: dict[str, BaseException] = field(default_factory=dict)
    calls: list[tuple[str, ...]] = field(default_factory=list)
    cwds: list[Path] = field(default_factory=list)

    def __call__(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> StepResult:
        command = tuple(argv)
        self.calls.append(command)
        self.cwds.append(cwd)
        key = step_key(command)
        if key in self.raises:
            raise self.raises[key]
        returncode, stdout, stderr = self.outcomes.get(key, (0, "", ""))
        return StepResult(
            argv=command,
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
            timed_out=key in self.timed_out,
        )

    def keys(self) -> list[str]:
        return [step_key(call) for call in self.calls]


@dataclass
class ScriptedBuildSystem:
    """Build system whose stages are Python snippets run by the real step runner."""

    setup_code: str = "pass"
    compile_code: str = "pass"
    install_code: str = "pass"
    name: str = "scripted"

    def setup(
        self, *, build_dir: str, std_args: Sequence[str], flags: Sequence[str]
    ) -> tuple[str, ...]:
        return (sys.executable, "-c", self.setup_code)

    def compile(self, *, build_dir: str) -> tuple[str, ...]:
        return (sys.executable, "-c", self.compile_code)

    def install(self, *, build_dir: str) -> tuple[str, ...]:
        return (sys.executable, "-c", self.install_code)


@dataclass
class StaticPkgConfig:
    result: tuple[str, ...] = ("-I/opt/kiln/include", "-L/opt/kiln/lib", "-lwfdb")
    calls: list[str] = field(default_factory=list)

    def flags(self, module: str, *, search_dirs: Sequence[Path], cwd: Path) -> tuple[str, ...]:
        self.calls.append(module)
        return self.result


@dataclass
class FakeFetcher:
    archive: Path
    calls: list[SourceRef] = field(default_factory=list)

    def fetch(self, source: SourceRef) -> Path:
        self.calls.append(source)
        return self.archive


def make_source_archive(directory: Path, *, top: str = "wfdb-10.7.0") -> tuple[Path, str]:
    """Write a small source tarball and return its path and sha256."""
    directory.mkdir(parents=True, exist_ok=True)
    archive = directory / "source.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        for name, content in (
            ("meson.build", "project('wfdb', 'c', version: '10.7.0')\n"),
            ("lib/wfdb.h", "#define WFDB_MAJOR 10\n"),
        ):
            payload = content.encode("utf-8")
            info = tarfile.TarInfo(f"{top}/{name}")
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))
    return archive, hashlib.sha256(archive.read_bytes()).hexdigest()


def recipe_payload(
    *,
    sha256: str = "a" * 64,
    url: str = "https://example.invalid/wfdb-10.7.0.tar.gz",
    version: str = "10.7.0",
) -> dict[str, Any]:
    return {
        "name": "wfdb",
        "description": "WaveForm Database library and tools for physiologic signals",
        "homepage": "https://physionet.org/",
        "license": "LGPL-2.0-or-later",
        "version": version,
        "sources": [{"label": "release", "url": url, "sha256": sha256}],
        "dependencies": [
            {"name": "meson", "kind": "build"},
            {"name": "gcc", "kind": "build", "exclude_os": ["macos"]},
            {"name": "curl"},
            {"name": "gtk+3", "exclude_os": ["macos"], "when": "wave"},
        ],
        "options": [
            {"name": "wave", "default": "enabled"},
            {"name": "docs", "default": "disabled"},
        ],
        "verification": {
            "pkg_config": "wfdb",
            "headers": ["wfdb/wfdb.h"],
            "format": "WFDB %d.%d.%d\\n",
            "constants": ["WFDB_MAJOR", "WFDB_MINOR", "WFDB_RELEASE"],
            "expect": "WFDB {version}",
        },
    }


@pytest.fixture
def toolchain_config(tmp_path: Path) -> ToolchainConfig:
    return ToolchainConfig(
        prefix=tmp_path / "prefix",
        work_root=tmp_path / "work",
        cache_root=tmp_path / "downloads",
    )


@pytest.fixture
def source_archive(tmp_path: Path) -> tuple[Path, str]:
    return make_source_archive(tmp_path / "upstream")
