import hashlib
import threading
import time
from pathlib import Path

import pytest

from kiln.errors import ConfigurationError, IntegrityError, NetworkError, PolicyError
from kiln.fetch import DownloadCache, HttpFetcher, verify_archive
from kiln.locking import KeyedLocks
from kiln.models import SourceRef
from kiln.policy import Policy


def test_fetch_caches_by_content_hash(tmp_path: Path) -> None:
    upstream = tmp_path / "wfdb.tar.gz"
    payload = b"wfdb source archive"
    upstream.write_bytes(payload)
    source = _source(upstream, hashlib.sha256(payload).hexdigest())
    fetcher = HttpFetcher(cache=DownloadCache(tmp_path / "cache"))

    first = fetcher.fetch(source)
    upstream.write_bytes(b"mutated upstream content")
    second = fetcher.fetch(source)

    assert first == second
    assert first.name == source.sha256
    assert second.read_bytes() == payload


def test_fetch_raises_on_hash_mismatch_and_keeps_cache_clean(tmp_path: Path) -> None:
    upstream = tmp_path / "wfdb.tar.gz"
    upstream.write_bytes(b"tampered")
    cache = DownloadCache(tmp_path / "cache")
    source = _source(upstream, "1" * 64)

    with pytest.raises(IntegrityError) as excinfo:
        HttpFetcher(cache=cache).fetch(source)

    assert excinfo.value.expected == "1" * 64
    assert excinfo.value.actual == hashlib.sha256(b"tampered").hexdigest()
    assert not cache.contains(source)
    assert not list((tmp_path / "cache").glob("*.part"))


def test_corrupted_cache_entry_is_not_trusted(tmp_path: Path) -> None:
    upstream = tmp_path / "wfdb.tar.gz"
    upstream.write_bytes(b"payload")
    source = _source(upstream, hashlib.sha256(b"payload").hexdigest())
    cache = DownloadCache(tmp_path / "cache")
    cache.root.mkdir()
    cache.path_for(source).write_bytes(b"bit rot")

    with pytest.raises(IntegrityError):
        HttpFetcher(cache=cache).fetch(source)

    cache.evict(source)
    assert HttpFetcher(cache=cache).fetch(source).read_bytes() == b"payload"


def test_missing_upstream_is_a_network_error(tmp_path: Path) -> None:
    source = _source(tmp_path / "absent.tar.gz", "2" * 64)

    with pytest.raises(NetworkError) as excinfo:
        HttpFetcher(cache=DownloadCache(tmp_path / "cache")).fetch(source)

    assert excinfo.value.context["operation"] == "fetch"


def test_unsendable_url_is_a_network_error(tmp_path: Path) -> None:
    source = SourceRef(url="http://example.invalid/wfdb\x01.tar.gz", sha256="3" * 64)

    with pytest.raises(NetworkError) as excinfo:
        HttpFetcher(cache=DownloadCache(tmp_path / "cache")).fetch(source)

    assert isinstance(excinfo.value.__cause__, ValueError)
    assert not list((tmp_path / "cache").glob("*.part"))


def test_unusable_cache_root_is_a_configuration_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    cache = DownloadCache(blocker / "cache")
    upstream = tmp_path / "wfdb.tar.gz"
    upstream.write_bytes(b"payload")
    source = _source(upstream, hashlib.sha256(b"payload").hexdigest())

    with pytest.raises(ConfigurationError) as excinfo:
        HttpFetcher(cache=cache).fetch(source)

    assert excinfo.value.context["path"] == str(blocker / "cache")


def test_offline_policy_blocks_downloads_but_serves_cache(tmp_path: Path) -> None:
    upstream = tmp_path / "wfdb.tar.gz"
    upstream.write_bytes(b"payload")
    source = _source(upstream, hashlib.sha256(b"payload").hexdigest())
    cache = DownloadCache(tmp_path / "cache")
    offline = HttpFetcher(cache=cache, policy=Policy(network_mode="offline"))

    with pytest.raises(PolicyError):
        offline.fetch(source)

    HttpFetcher(cache=cache).fetch(source)
    assert offline.fetch(source).read_bytes() == b"payload"


def test_concurrent_requests_for_same_digest_download_once(tmp_path: Path) -> None:
    payload = b"shared archive"
    source = SourceRef(
        url="https://example.invalid/wfdb.tar.gz",
        sha256=hashlib.sha256(payload).hexdigest(),
    )
    cache = DownloadCache(tmp_path / "cache")
    downloads: list[Path] = []

    def download(_: SourceRef, destination: Path) -> None:
        downloads.append(destination)
        time.sleep(0.05)
        destination.write_bytes(payload)

    results: list[Path] = []
    threads = [
        threading.Thread(target=lambda: results.append(cache.get_or_fetch(source, download)))
        for _ in range(4)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(downloads) == 1
    assert len(set(results)) == 1
    assert len(DownloadCache._process_locks) == 0
    assert results[0].read_bytes() == payload


def test_keyed_locks_forget_released_keys() -> None:
    locks = KeyedLocks()

    with locks.hold("a" * 64):
        with locks.hold("b" * 64):
            assert len(locks) == 2
        assert len(locks) == 1

    assert len(locks) == 0


def test_verify_archive_returns_digest(tmp_path: Path) -> None:
    archive = tmp_path / "archive.tar.gz"
    archive.write_bytes(b"abc")
    digest = hashlib.sha256(b"abc").hexdigest()

    assert verify_archive(archive, _source(archive, digest)) == digest


def _source(path: Path, sha256: str) -> SourceRef:
    return SourceRef(url=path.as_uri(), sha256=sha256, version="10.7.0")
