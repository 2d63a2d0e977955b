"""Fetch collaborator protocol and engine-side integrity verification."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Protocol

from kiln.errors import IntegrityError
from kiln.models import SourceRef


class Fetcher(Protocol):
    def fetch(self, source: SourceRef) -> Path:
        """Return a local path to the archive for *source*.

        Raises ``NetworkError`` on transport failure and ``IntegrityError`` when
        the collaborator itself detects a digest mismatch.
        """


def sha256_file(path: Path) -> str:
    with open(path, "rb") as fh:
        return hashlib.file_digest(fh, "sha256").hexdigest()


def verify_archive(path: Path, source: SourceRef) -> str:
    """Recompute the digest of *path* and compare it with the declared one."""
    actual = sha256_file(path)
    if actual != source.sha256:
        raise IntegrityError(
            "Fetched archive digest does not match the formula.",
            expected=source.sha256,
            actual=actual,
            hint="The source may be corrupted or tampered with; do not build it.",
            context={"operation": "fetch", "url": source.url, "path": str(path)},
        )
    return actual
