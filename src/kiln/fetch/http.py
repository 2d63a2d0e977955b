"""Integrity-enforced HTTP/file fetch implementation."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from urllib.request import urlopen

from kiln.errors import NetworkError
from kiln.fetch.cache import DownloadCache
from kiln.models import SourceRef
from kiln.policy import Policy, ensure_network_allowed


@dataclass(slots=True)
class HttpFetcher:
    cache: DownloadCache
    policy: Policy = field(default_factory=Policy)
    timeout: float = 60.0
    chunk_size: int = 1 << 16

    def fetch(self, source: SourceRef) -> Path:
        """Fetch content and return a content-addressed cached path."""
        return self.cache.get_or_fetch(source, self._download)

    def _download(self, source: SourceRef, destination: Path) -> None:
        ensure_network_allowed(policy=self.policy, operation="fetch")
        try:
            with (
                urlopen(source.url, timeout=self.timeout) as response,  # noqa: S310
                open(destination, "wb") as fh,
            ):
                shutil.copyfileobj(response, fh, self.chunk_size)
        # URLError, timeouts and connection resets are all OSError subclasses.
        except (OSError, ValueError) as exc:
            raise NetworkError(
                "Source download failed.",
                hint="Check connectivity and the source URL, then retry.",
                context={"operation": "fetch", "url": source.url, "reason": str(exc)},
            ) from exc
