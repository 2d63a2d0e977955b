"""Recipe parsing: TOML/JSON documents to validated :class:`Formula` values."""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from kiln.errors import SpecValidationError
from kiln.models import (
    DEFAULT_OPTION_TEMPLATE,
    BuildOption,
    Dependency,
    DependencyKind,
    Formula,
    SourceRef,
    VerificationSpec,
)
from kiln.platforms import PlatformPredicate, normalize_arch, normalize_os

RECIPE_SUFFIXES = (".toml", ".json")
FORMULA_PATH_ENV = "KILN_FORMULA_PATH"

_KIND_ALIASES: dict[str, DependencyKind] = {
    "build": "build-time",
    "build-time": "build-time",
    "runtime": "runtime",
    "run": "runtime",
}
_OPTION_VALUES = {"enabled": True, "disabled": False}


def parse_formula(payload: Mapping[str, Any]) -> Formula:
    if not isinstance(payload, Mapping):
        raise SpecValidationError("Recipe payload must be a table/object.")

    name = _required_str(payload, "name")
    sources = _parse_sources(payload, default_version=payload.get("version"))
    version = payload.get("version") or sources[0].version
    if not isinstance(version, str) or not version:
        raise SpecValidationError(
            "Recipe `version` is missing.",
            hint="Declare a top-level version or a version on the first source.",
            context={"field": "version", "formula": name},
        )

    platforms_raw = _optional_str_list(payload, "platforms")
    return Formula(
        name=name,
        version=version,
        sources=sources,
        verification=_parse_verification(payload.get("verification"), formula=name),
        description=_optional_str(payload, "description"),
        homepage=_optional_str(payload, "homepage"),
        license=_optional_str(payload, "license"),
        dependencies=tuple(
            _parse_dependency(item, formula=name) for item in _list(payload, "dependencies")
        ),
        options=tuple(_parse_option(item, formula=name) for item in _list(payload, "options")),
        platforms=tuple(normalize_os(value) for value in platforms_raw),
    )


def load_formula(path: str | Path) -> Formula:
    recipe_path = Path(path)
    try:
        raw = recipe_path.read_bytes()
    except FileNotFoundError as exc:
        raise SpecValidationError(
            "Recipe file does not exist.",
            context={"path": str(recipe_path)},
        ) from exc

    if recipe_path.suffix == ".toml":
        try:
            payload = tomllib.loads(raw.decode("utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise SpecValidationError(
                "Invalid recipe TOML.", hint=str(exc), context={"path": str(recipe_path)}
            ) from exc
    elif recipe_path.suffix == ".json":
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise SpecValidationError(
                "Invalid recipe JSON.", hint=str(exc), context={"path": str(recipe_path)}
            ) from exc
    else:
        raise SpecValidationError(
            f"Unsupported recipe format `{recipe_path.suffix}`.",
            hint="Use a .toml or .json recipe.",
            context={"path": str(recipe_path)},
        )
    return parse_formula(payload)


def formula_search_path(extra: Iterable[str | Path] = ()) -> tuple[Path, ...]:
    dirs = [Path(item) for item in extra]
    env_value = os.environ.get(FORMULA_PATH_ENV, "")
    dirs.extend(Path(item) for item in env_value.split(os.pathsep) if item)
    return tuple(dirs)


def find_formula(identifier: str, search_path: Iterable[str | Path] = ()) -> Path:
    """Locate a recipe by path or by bare name in the search directories."""
    candidate = Path(identifier)
    if candidate.suffix in RECIPE_SUFFIXES and candidate.exists():
        return candidate
    for directory in formula_search_path(search_path):
        for suffix in RECIPE_SUFFIXES:
            path = directory / f"{identifier}{suffix}"
            if path.exists():
                return path
    raise SpecValidationError(
        f"No recipe found for `{identifier}`.",
        hint=f"Pass a recipe path, --formula-dir, or set {FORMULA_PATH_ENV}.",
        context={"formula": identifier},
    )


def _parse_sources(payload: Mapping[str, Any], *, default_version: object) -> tuple[SourceRef, ...]:
    entries = _list(payload, "sources")
    sources: list[SourceRef] = []
    for index, item in enumerate(entries):
        if not isinstance(item, Mapping):
            raise SpecValidationError("Invalid source entry.", context={"field": "sources"})
        version = item.get("version", default_version)
        label = item.get("label") or ("default" if index == 0 else f"source-{index}")
        sources.append(
            SourceRef(
                url=_required_str(item, "url", prefix="sources"),
                sha256=_required_str(item, "sha256", prefix="sources"),
                version=version if isinstance(version, str) else None,
                label=label if isinstance(label, str) else "default",
            )
        )
    if not sources:
        raise SpecValidationError(
            "Formula declares no sources.",
            hint="Add at least one [[sources]] entry with url and sha256.",
            context={"field": "sources", "formula": str(payload.get("name", ""))},
        )
    return tuple(sources)


def _parse_dependency(item: Any, *, formula: str) -> Dependency:
    if isinstance(item, str):
        return Dependency(name=item)
    if not isinstance(item, Mapping):
        raise SpecValidationError(
            "Invalid dependency entry.", context={"field": "dependencies", "formula": formula}
        )
    kind_raw = item.get("kind", "runtime")
    kind = _KIND_ALIASES.get(kind_raw) if isinstance(kind_raw, str) else None
    if kind is None:
        raise SpecValidationError(
            f"Unsupported dependency kind `{kind_raw}`.",
            hint="Use `build` or `runtime`.",
            context={"field": "dependencies.kind", "formula": formula},
        )
    predicate = PlatformPredicate(
        only_os=tuple(normalize_os(v) for v in _optional_str_list(item, "only_os")),
        exclude_os=tuple(normalize_os(v) for v in _optional_str_list(item, "exclude_os")),
        only_arch=tuple(normalize_arch(v) for v in _optional_str_list(item, "only_arch")),
    )
    when = item.get("when")
    if when is not None and (not isinstance(when, str) or not when):
        raise SpecValidationError(
            "Dependency `when` must name a build option.",
            context={"field": "dependencies.when", "formula": formula},
        )
    return Dependency(
        name=_required_str(item, "name", prefix="dependencies"),
        kind=kind,
        platforms=predicate,
        when=when,
    )


def _parse_option(item: Any, *, formula: str) -> BuildOption:
    if not isinstance(item, Mapping):
        raise SpecValidationError(
            "Invalid option entry.", context={"field": "options", "formula": formula}
        )
    name = _required_str(item, "name", prefix="options")
    if "default" not in item:
        raise SpecValidationError(
            f"Option `{name}` has no default value.",
            hint="Every option needs an explicit enabled/disabled default.",
            context={"field": "options.default", "formula": formula},
        )
    template = item.get("template", DEFAULT_OPTION_TEMPLATE)
    if not isinstance(template, str) or not template:
        raise SpecValidationError(
            "Invalid option `template` value.",
            context={"field": "options.template", "formula": formula},
        )
    return BuildOption(
        name=name,
        default=parse_option_value(item["default"], option=name),
        template=template,
    )


def parse_option_value(value: object, *, option: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in _OPTION_VALUES:
        return _OPTION_VALUES[value.lower()]
    raise SpecValidationError(
        f"Invalid value for option `{option}`.",
        hint="Use enabled/disabled or a boolean.",
        context={"field": "options", "value": str(value)},
    )


def _parse_verification(item: Any, *, formula: str) -> VerificationSpec:
    if not isinstance(item, Mapping):
        raise SpecValidationError(
            "Recipe is missing its [verification] table.",
            context={"field": "verification", "formula": formula},
        )
    return VerificationSpec(
        pkg_config=_required_str(item, "pkg_config", prefix="verification"),
        headers=tuple(_optional_str_list(item, "headers")),
        format=_required_str(item, "format", prefix="verification"),
        constants=tuple(_optional_str_list(item, "constants")),
        expect=_optional_str(item, "expect") or "{version}",
    )


def _list(payload: Mapping[str, Any], key: str) -> list[Any]:
    value = payload.get(key, [])
    if not isinstance(value, list):
        raise SpecValidationError(f"Invalid recipe `{key}` value.", context={"field": key})
    return value


def _required_str(payload: Mapping[str, Any], key: str, *, prefix: str | None = None) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        field_name = f"{prefix}.{key}" if prefix else key
        raise SpecValidationError(
            f"Invalid recipe `{field_name}` value.", context={"field": field_name}
        )
    return value


def _optional_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key, "")
    if not isinstance(value, str):
        raise SpecValidationError(f"Invalid recipe `{key}` value.", context={"field": key})
    return value


def _optional_str_list(payload: Mapping[str, Any], key: str) -> list[str]:
    value = payload.get(key, [])
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise SpecValidationError(f"Invalid recipe `{key}` value.", context={"field": key})
    return list(value)
