"""Source retrieval: the fetch collaborator interface and its HTTP implementation."""

from .base import Fetcher, sha256_file, verify_archive
from .cache import DownloadCache
from .http import HttpFetcher

__all__ = ["DownloadCache", "Fetcher", "HttpFetcher", "sha256_file", "verify_archive"]
