"""Public package entrypoint for the kiln formula execution engine."""

from .config import ToolchainConfig
from .errors import (
    BuildStageError,
    CancelledError,
    ConfigurationError,
    ErrorCode,
    IntegrityError,
    KilnError,
    NetworkError,
    PolicyError,
    SpecValidationError,
    UnsupportedPlatformError,
    VerificationError,
    VerifyCompileError,
    VerifyMismatchError,
    VerifyRuntimeError,
)
from .models import (
    BuildOption,
    Dependency,
    ExecutionResult,
    Formula,
    InstalledArtifact,
    ResolvedOption,
    ResolvedSpec,
    SourceRef,
    Stage,
    State,
    VerificationResult,
    VerificationSpec,
)
from .orchestrator import Orchestrator
from .platforms import PlatformDescriptor, PlatformPredicate, detect_platform, parse_platform
from .policy import Policy
from .recipe import find_formula, load_formula, parse_formula
from .resolver import resolve

__all__ = [
    "BuildOption",
    "BuildStageError",
    "CancelledError",
    "ConfigurationError",
    "Dependency",
    "ErrorCode",
    "ExecutionResult",
    "Formula",
    "InstalledArtifact",
    "IntegrityError",
    "KilnError",
    "NetworkError",
    "Orchestrator",
    "PlatformDescriptor",
    "PlatformPredicate",
    "Policy",
    "PolicyError",
    "ResolvedOption",
    "ResolvedSpec",
    "SourceRef",
    "SpecValidationError",
    "Stage",
    "State",
    "ToolchainConfig",
    "UnsupportedPlatformError",
    "VerificationError",
    "VerificationResult",
    "VerificationSpec",
    "VerifyCompileError",
    "VerifyMismatchError",
    "VerifyRuntimeError",
    "detect_platform",
    "find_formula",
    "load_formula",
    "parse_formula",
    "parse_platform",
    "resolve",
]
