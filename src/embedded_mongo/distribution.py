"""
Distribution identity types.

A Distribution is the (Version, Platform) pair that identifies exactly one
downloadable archive and one cache entry. All types here are frozen pydantic
models: they compare and hash by value, so resolving the same request twice
produces interchangeable keys.
"""
from __future__ import annotations

import platform as _host
import re
import struct
from enum import Enum
from typing import Dict, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

__all__ = [
    "OS",
    "Architecture",
    "Version",
    "Platform",
    "Distribution",
    "VERSION_ALIASES",
    "TESTABLE_VERSIONS",
]


class OS(str, Enum):
    LINUX = "Linux"
    OS_X = "OS_X"
    WINDOWS = "Windows"
    SOLARIS = "Solaris"
    FREEBSD = "FreeBSD"


class Architecture(str, Enum):
    X86_32 = "x86_32"
    X86_64 = "x86_64"
    ARM_64 = "arm_64"

    @property
    def bit_size(self) -> int:
        return 32 if self is Architecture.X86_32 else 64


# Newest patch release known for each main line, plus the named channels.
VERSION_ALIASES: Dict[str, str] = {
    "2.6": "2.6.12",
    "3.0": "3.0.15",
    "3.2": "3.2.22",
    "3.4": "3.4.24",
    "3.6": "3.6.23",
    "4.0": "4.0.28",
    "4.2": "4.2.24",
    "4.4": "4.4.29",
    "production": "4.2.24",
    "development": "4.4.29",
}

# One release per main line, used to exercise every rule of the feature matrix.
TESTABLE_VERSIONS: Tuple[str, ...] = (
    "2.6.12",
    "3.0.15",
    "3.2.22",
    "3.4.24",
    "3.6.23",
    "4.0.28",
    "4.2.0",
    "4.4.29",
)

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)(?:\.(\d+))?(?:[-.]?(rc\d+|alpha\d*|beta\d*))?$")


class Version(BaseModel):
    """
    A server version, identified by its dotted identifier ("4.2.0").

    Two versions are equal iff their identifiers are equal. Capability flags
    are not stored here; ask the feature matrix.
    """
    model_config = ConfigDict(frozen=True)

    identifier: str

    @field_validator("identifier")
    @classmethod
    def _check_identifier(cls, value: str) -> str:
        value = value.strip()
        if not _VERSION_RE.match(value):
            raise ValueError(f"invalid version identifier: {value!r}")
        return value

    @classmethod
    def of(cls, value: "Version | str") -> "Version":
        """Build a Version from an identifier or alias ("4.2", "production")."""
        if isinstance(value, Version):
            return value
        text = value.strip()
        return cls(identifier=VERSION_ALIASES.get(text.lower(), text))

    @property
    def numbers(self) -> Tuple[int, int, int]:
        """Numeric (major, minor, patch), ignoring any pre-release suffix."""
        match = _VERSION_RE.match(self.identifier)
        major, minor, patch = match.group(1), match.group(2), match.group(3)
        return int(major), int(minor), int(patch or 0)

    @property
    def is_prerelease(self) -> bool:
        return _VERSION_RE.match(self.identifier).group(4) is not None

    @property
    def precedence(self) -> Tuple[int, int, int, int]:
        """
        Sort key used for range comparisons.

        A pre-release sorts below its release: 4.2.0-rc1 < 4.2.0 < 4.2.1-rc0.
        """
        return self.numbers + (0 if self.is_prerelease else 1,)

    def __str__(self) -> str:
        return self.identifier


class Platform(BaseModel):
    """Operating system and architecture of a distribution."""
    model_config = ConfigDict(frozen=True)

    operating_system: OS
    architecture: Architecture

    @classmethod
    def detect(cls) -> "Platform":
        """Return the platform of the current host."""
        system = _host.system()
        if system == "Linux":
            operating_system = OS.LINUX
        elif system == "Darwin":
            operating_system = OS.OS_X
        elif system == "Windows":
            operating_system = OS.WINDOWS
        elif system in ("SunOS", "Solaris"):
            operating_system = OS.SOLARIS
        elif system == "FreeBSD":
            operating_system = OS.FREEBSD
        else:
            raise ValueError(f"Unknown operating system: {system}")

        machine = _host.machine().lower()
        if machine in ("arm64", "aarch64"):
            architecture = Architecture.ARM_64
        elif struct.calcsize("P") * 8 == 32:
            architecture = Architecture.X86_32
        else:
            architecture = Architecture.X86_64
        return cls(operating_system=operating_system, architecture=architecture)

    def __str__(self) -> str:
        return f"{self.operating_system.value}/{self.architecture.value}"


class Distribution(BaseModel):
    """Canonical (version, platform) pair; the unit of caching and process selection."""
    model_config = ConfigDict(frozen=True)

    version: Version
    platform: Platform

    @classmethod
    def of(cls, version: "Version | str", platform: Platform) -> "Distribution":
        return cls(version=Version.of(version), platform=platform)

    def __str__(self) -> str:
        return f"{self.version}:{self.platform}"
