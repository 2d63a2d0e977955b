"""Post-install smoke-test verification."""

from .pkgconfig import PackageMetadata, PkgConfig
from .verifier import Verifier, check_output

__all__ = ["PackageMetadata", "PkgConfig", "Verifier", "check_output"]
