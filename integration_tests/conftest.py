"""Shared helpers for integration tests."""

from __future__ import annotations

import hashlib
import shutil
import tarfile
from pathlib import Path

import pytest

TOOLS = ("meson", "ninja", "cc", "pkg-config")

MESON_BUILD = """\
project('wfdb', 'c', version: '10.7.0')
lib = library('wfdb', 'wfdb.c', install: true)
install_headers('wfdb.h', subdir: 'wfdb')
if get_option('docs').enabled()
  install_data('README', install_dir: get_option('datadir') / 'doc' / 'wfdb')
endif
pkg = import('pkgconfig')
pkg.generate(lib, name: 'wfdb', description: 'WFDB fixture library')
"""

MESON_OPTIONS = "option('docs', type: 'feature', value: 'disabled')\n"

HEADER = """\
#ifndef WFDB_H
#define WFDB_H
#define WFDB_MAJOR 10
#define WFDB_MINOR 7
#define WFDB_RELEASE 0
int wfdb_version_major(void);
#endif
"""

SOURCE = """\
#include "wfdb.h"

int wfdb_version_major(void) { return WFDB_MAJOR; }
"""


@pytest.fixture
def toolchain_available() -> None:
    missing = [tool for tool in TOOLS if shutil.which(tool) is None]
    if missing:
        pytest.skip(f"toolchain not available: {', '.join(missing)}")


@pytest.fixture
def fixture_project(tmp_path: Path, toolchain_available: None) -> tuple[Path, str]:
    """Write a tiny meson C library and pack it as ``wfdb-10.7.0.tar.gz``."""
    root = tmp_path / "upstream"
    project = root / "wfdb-10.7.0"
    project.mkdir(parents=True)
    (project / "meson.build").write_text(MESON_BUILD, encoding="utf-8")
    (project / "meson_options.txt").write_text(MESON_OPTIONS, encoding="utf-8")
    (project / "wfdb.h").write_text(HEADER, encoding="utf-8")
    (project / "wfdb.c").write_text(SOURCE, encoding="utf-8")
    (project / "README").write_text("WFDB fixture\n", encoding="utf-8")

    archive = root / "wfdb-10.7.0.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(project, arcname=project.name)
    return archive, hashlib.sha256(archive.read_bytes()).hexdigest()
