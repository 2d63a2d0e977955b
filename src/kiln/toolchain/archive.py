"""Source archive unpacking."""

from __future__ import annotations

import shutil
import tarfile
import zipfile
from pathlib import Path

from kiln.errors import BuildStageError
from kiln.models import Stage


def unpack_archive(archive: Path, destination: Path) -> Path:
    """Extract *archive* into *destination*, stripping a single top-level directory."""
    staging = destination.with_name(f"{destination.name}.unpack")
    shutil.rmtree(staging, ignore_errors=True)
    staging.mkdir(parents=True)
    try:
        if tarfile.is_tarfile(archive):
            with tarfile.open(archive) as tar:
                tar.extractall(staging, filter="data")
        elif zipfile.is_zipfile(archive):
            with zipfile.ZipFile(archive) as zf:
                zf.extractall(staging)
        else:
            raise BuildStageError(
                "Source archive format is not recognised.",
                stage=Stage.CONFIGURE,
                exit_code=1,
                hint="Only tar (optionally compressed) and zip archives are supported.",
                context={"archive": str(archive)},
            )
        entries = list(staging.iterdir())
        root = entries[0] if len(entries) == 1 and entries[0].is_dir() else staging
        shutil.move(str(root), destination)
    except (tarfile.TarError, zipfile.BadZipFile, OSError) as exc:
        raise BuildStageError(
            "Source archive could not be unpacked.",
            stage=Stage.CONFIGURE,
            exit_code=1,
            stderr_tail=str(exc),
            context={"archive": str(archive)},
        ) from exc
    finally:
        shutil.rmtree(staging, ignore_errors=True)
    return destination
