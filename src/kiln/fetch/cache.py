"""Content-addressed download cache with per-digest mutual exclusion."""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Iterator
from contextlib import ExitStack, contextmanager
from pathlib import Path

from kiln.errors import ConfigurationError
from kiln.fetch.base import verify_archive
from kiln.locking import KeyedLocks, path_lock
from kiln.models import SourceRef

Downloader = Callable[[SourceRef, Path], None]


class DownloadCache:
    """Archives stored as ``<root>/<sha256>``.

    Concurrent requests for the same digest, whether from threads of this
    process or from other processes, are serialised; the first one downloads
    and the rest reuse the verified file. The root is created on first use.
    """

    _process_locks = KeyedLocks()

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, source: SourceRef) -> Path:
        return self.root / source.sha256

    def contains(self, source: SourceRef) -> bool:
        return self.path_for(source).exists()

    def get_or_fetch(self, source: SourceRef, download: Downloader) -> Path:
        artifact_path = self.path_for(source)
        with self._entry(source):
            if artifact_path.exists():
                verify_archive(artifact_path, source)
                return artifact_path

            temp_path = artifact_path.with_name(f"{artifact_path.name}.{uuid.uuid4().hex}.part")
            try:
                download(source, temp_path)
                verify_archive(temp_path, source)
                self._store(temp_path, artifact_path)
            finally:
                temp_path.unlink(missing_ok=True)
        return artifact_path

    def evict(self, source: SourceRef) -> None:
        with self._entry(source):
            self.path_for(source).unlink(missing_ok=True)

    @contextmanager
    def _entry(self, source: SourceRef) -> Iterator[None]:
        with self._process_locks.hold(source.sha256), ExitStack() as stack:
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                stack.enter_context(path_lock(self.path_for(source)))
            except OSError as exc:
                raise self._unusable(exc) from exc
            yield

    def _store(self, temp_path: Path, artifact_path: Path) -> None:
        try:
            os.replace(temp_path, artifact_path)
        except OSError as exc:
            raise self._unusable(exc) from exc

    def _unusable(self, exc: OSError) -> ConfigurationError:
        return ConfigurationError(
            "Download cache directory is not usable.",
            hint="Point KILN_CACHE_DIR at a writable directory.",
            context={"operation": "fetch", "path": str(self.root), "reason": str(exc)},
        )
