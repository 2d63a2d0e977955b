"""Policy configuration and enforcement helpers."""

from __future__ import annotations

import re
import warnings
from dataclasses import dataclass
from typing import Literal

from kiln.errors import ConfigurationError, PolicyError
from kiln.models import SourceRef

MutableRefPolicy = Literal["warn", "error", "allow"]
NetworkMode = Literal["online", "offline"]

# Archive URLs that track a branch rather than a tag or commit.
MUTABLE_SOURCE_PATTERN = re.compile(r"/(refs/heads/|archive/(master|main|trunk)\.)")


class MutableRefWarning(UserWarning):
    """Warning raised when a source URL points at a moving branch archive."""


@dataclass(frozen=True, slots=True)
class Policy:
    mutable_ref_policy: MutableRefPolicy = "warn"
    network_mode: NetworkMode = "online"


def ensure_network_allowed(*, policy: Policy, operation: str) -> None:
    if policy.network_mode == "offline":
        raise PolicyError(
            "Network operations are disabled by policy.",
            hint="Switch policy.network_mode to 'online' for this operation.",
            context={"operation": operation},
        )


def is_mutable_source(source: SourceRef) -> bool:
    return MUTABLE_SOURCE_PATTERN.search(source.url) is not None


def enforce_mutable_ref_policy(*, source: SourceRef, policy: Policy) -> None:
    if not is_mutable_source(source):
        return
    mode = policy.mutable_ref_policy
    if mode == "allow":
        return
    if mode == "warn":
        warnings.warn(
            f"Source `{source.url}` tracks a branch; its digest will drift upstream.",
            MutableRefWarning,
            stacklevel=3,
        )
        return
    if mode == "error":
        raise PolicyError(
            "Branch-tracking source archives are not allowed by policy.",
            hint="Pin a tagged release archive or relax mutable_ref_policy.",
            context={"operation": "resolve", "url": source.url, "policy": mode},
        )
    raise ConfigurationError(f"Unsupported mutable_ref_policy value: {mode}")
