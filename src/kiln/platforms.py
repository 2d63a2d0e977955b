"""Platform descriptors and the predicates dependencies are filtered by."""

from __future__ import annotations

import platform as _platform
import sys
from dataclasses import dataclass
from typing import Literal, cast, get_args

from kiln.errors import SpecValidationError

OsFamily = Literal["linux", "macos", "freebsd", "windows"]
Arch = Literal["x86_64", "aarch64"]

OS_FAMILIES: tuple[str, ...] = get_args(OsFamily)
ARCHES: tuple[str, ...] = get_args(Arch)

_OS_ALIASES = {
    "darwin": "macos",
    "mac": "macos",
    "osx": "macos",
    "win32": "windows",
}
_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
}


@dataclass(frozen=True, slots=True)
class PlatformDescriptor:
    os: OsFamily
    arch: Arch

    def __str__(self) -> str:
        return f"{self.os}/{self.arch}"


@dataclass(frozen=True, slots=True)
class PlatformPredicate:
    """Pure predicate over a :class:`PlatformDescriptor`.

    An empty predicate matches every platform.
    """

    only_os: tuple[OsFamily, ...] = ()
    exclude_os: tuple[OsFamily, ...] = ()
    only_arch: tuple[Arch, ...] = ()

    def matches(self, descriptor: PlatformDescriptor) -> bool:
        if self.only_os and descriptor.os not in self.only_os:
            return False
        if descriptor.os in self.exclude_os:
            return False
        if self.only_arch and descriptor.arch not in self.only_arch:
            return False
        return True

    def is_empty(self) -> bool:
        return not (self.only_os or self.exclude_os or self.only_arch)

    def to_dict(self) -> dict[str, list[str]]:
        payload: dict[str, list[str]] = {}
        if self.only_os:
            payload["only_os"] = list(self.only_os)
        if self.exclude_os:
            payload["exclude_os"] = list(self.exclude_os)
        if self.only_arch:
            payload["only_arch"] = list(self.only_arch)
        return payload


def normalize_os(value: str) -> OsFamily:
    name = value.strip().lower()
    name = _OS_ALIASES.get(name, name)
    if name.startswith("linux"):
        name = "linux"
    elif name.startswith("freebsd"):
        name = "freebsd"
    if name not in OS_FAMILIES:
        raise SpecValidationError(
            f"Unknown operating system family `{value}`.",
            hint=f"Use one of: {', '.join(OS_FAMILIES)}.",
            context={"field": "os"},
        )
    return cast(OsFamily, name)


def normalize_arch(value: str) -> Arch:
    name = value.strip().lower()
    name = _ARCH_ALIASES.get(name, name)
    if name not in ARCHES:
        raise SpecValidationError(
            f"Unknown architecture `{value}`.",
            hint=f"Use one of: {', '.join(ARCHES)}.",
            context={"field": "arch"},
        )
    return cast(Arch, name)


def parse_platform(text: str) -> PlatformDescriptor:
    """Parse ``os/arch`` (for example ``linux/x86_64`` or ``macos/arm64``)."""
    os_part, sep, arch_part = text.partition("/")
    if not sep or not os_part or not arch_part:
        raise SpecValidationError(
            f"Invalid platform `{text}`.",
            hint="Use the form os/arch, for example linux/x86_64.",
            context={"field": "platform"},
        )
    return PlatformDescriptor(os=normalize_os(os_part), arch=normalize_arch(arch_part))


def detect_platform() -> PlatformDescriptor:
    """Describe the host this process runs on."""
    return PlatformDescriptor(
        os=normalize_os(sys.platform),
        arch=normalize_arch(_platform.machine()),
    )


__all__ = [
    "ARCHES",
    "OS_FAMILIES",
    "Arch",
    "OsFamily",
    "PlatformDescriptor",
    "PlatformPredicate",
    "detect_platform",
    "normalize_arch",
    "normalize_os",
    "parse_platform",
]
