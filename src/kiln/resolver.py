"""Variant resolution: a formula plus an execution context to a concrete plan."""

from __future__ import annotations

from collections.abc import Mapping

from kiln.errors import SpecValidationError, UnsupportedPlatformError
from kiln.models import Dependency, Formula, ResolvedOption, ResolvedSpec
from kiln.platforms import PlatformDescriptor
from kiln.policy import Policy, enforce_mutable_ref_policy

FeatureSet = Mapping[str, bool]


def resolve(
    formula: Formula,
    platform: PlatformDescriptor,
    features: FeatureSet | None = None,
    *,
    source: str | None = None,
    policy: Policy | None = None,
) -> ResolvedSpec:
    """Pick the dependency set, option values and source for one execution.

    Explicit feature overrides replace the formula default outright. Platform
    predicates are evaluated once against *platform*.
    """
    overrides = dict(features or {})
    unknown = sorted(name for name in overrides if formula.option(name) is None)
    if unknown:
        raise SpecValidationError(
            f"Formula `{formula.name}` has no option(s) {', '.join(unknown)}.",
            hint=f"Known options: {', '.join(o.name for o in formula.options) or 'none'}.",
            context={"formula": formula.name, "field": "features"},
        )

    if formula.platforms and platform.os not in formula.platforms:
        raise UnsupportedPlatformError(
            f"Formula `{formula.name}` does not support {platform.os}.",
            hint=f"Supported: {', '.join(formula.platforms)}.",
            context={"formula": formula.name, "platform": str(platform)},
        )

    active_source = formula.source(source)
    enforce_mutable_ref_policy(source=active_source, policy=policy or Policy())

    options = tuple(
        ResolvedOption(
            name=option.name,
            enabled=overrides.get(option.name, option.default),
            flag=option.render(overrides.get(option.name, option.default)),
            overridden=option.name in overrides,
        )
        for option in formula.options
    )
    enabled = {option.name: option.enabled for option in options}

    dependencies = tuple(
        dep for dep in formula.dependencies if _included(dep, platform=platform, enabled=enabled)
    )
    # Runtime deps left switched on by options must keep at least one survivor on this platform.
    wanted_runtime = [
        dep
        for dep in formula.dependencies
        if dep.kind == "runtime" and (dep.when is None or enabled[dep.when])
    ]
    if wanted_runtime and not any(dep.kind == "runtime" for dep in dependencies):
        raise UnsupportedPlatformError(
            f"Formula `{formula.name}` has no viable variant for {platform}.",
            hint="Every runtime dependency is excluded on this platform.",
            context={
                "formula": formula.name,
                "platform": str(platform),
                "excluded": ",".join(dep.name for dep in wanted_runtime),
            },
        )

    return ResolvedSpec(
        formula=formula.name,
        version=active_source.version or formula.version,
        source=active_source,
        platform=platform,
        dependencies=dependencies,
        options=options,
        verification=formula.verification,
    )


def _included(
    dep: Dependency, *, platform: PlatformDescriptor, enabled: Mapping[str, bool]
) -> bool:
    if not dep.platforms.matches(platform):
        return False
    if dep.when is not None and not enabled[dep.when]:
        return False
    return True
