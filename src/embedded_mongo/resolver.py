"""
Distribution resolution.

Turns a (version, operating system, architecture) request into a canonical
Distribution, or rejects it with UnsupportedDistribution naming the rule that
fired. Pure functions over static tables; safe to call from any thread.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from pydantic import ValidationError

from .distribution import OS, Architecture, Distribution, Platform, Version
from .errors import UnsupportedDistribution
from .features import DEFAULT_MATRIX, Feature, FeatureMatrix

__all__ = ["PlatformConstraint", "PLATFORM_CONSTRAINTS", "resolve", "check_supported"]


@dataclass(frozen=True)
class PlatformConstraint:
    """Rejects platforms matching `applies_to` when `feature` is enabled for the version."""
    feature: Feature
    applies_to: Callable[[Platform], bool]
    reason: str


PLATFORM_CONSTRAINTS: Tuple[PlatformConstraint, ...] = (
    PlatformConstraint(
        Feature.NO_FREEBSD_SUPPORT,
        lambda p: p.operating_system is OS.FREEBSD,
        "no FreeBSD builds",
    ),
    PlatformConstraint(
        Feature.NO_SOLARIS_SUPPORT,
        lambda p: p.operating_system is OS.SOLARIS,
        "no Solaris builds for this version",
    ),
    PlatformConstraint(
        Feature.ONLY_64BIT,
        lambda p: p.architecture.bit_size == 32,
        "only 64-bit builds for this version",
    ),
    PlatformConstraint(
        Feature.NO_32BIT_OSX,
        lambda p: p.operating_system is OS.OS_X and p.architecture.bit_size == 32,
        "no 32-bit OS X builds",
    ),
    PlatformConstraint(
        Feature.NO_32BIT_SOLARIS,
        lambda p: p.operating_system is OS.SOLARIS and p.architecture.bit_size == 32,
        "no 32-bit Solaris builds",
    ),
)


def _check(version: Version, platform: Platform, matrix: FeatureMatrix) -> None:
    for constraint in PLATFORM_CONSTRAINTS:
        if constraint.applies_to(platform) and matrix.enabled(version, constraint.feature):
            raise UnsupportedDistribution(
                f"{version} is not available for {platform}: {constraint.reason} "
                f"({constraint.feature.name})",
                rule=constraint.feature.name,
            )

    # ARM builds are opt-in per version rather than opt-out
    if platform.architecture is Architecture.ARM_64:
        if platform.operating_system is not OS.LINUX or not matrix.enabled(version, Feature.ARM64_SUPPORT):
            raise UnsupportedDistribution(
                f"{version} is not available for {platform}: no 64-bit ARM build "
                f"({Feature.ARM64_SUPPORT.name})",
                rule=Feature.ARM64_SUPPORT.name,
            )


def resolve(
    version: Version | str,
    operating_system: Optional[OS] = None,
    architecture: Optional[Architecture] = None,
    *,
    matrix: FeatureMatrix = DEFAULT_MATRIX,
) -> Distribution:
    """
    Resolve a request into a canonical Distribution.

    Args:
        version: Version, identifier or alias ("4.2.0", "4.2", "production")
        operating_system: Target OS (defaults to the current host)
        architecture: Target architecture (defaults to the current host)
        matrix: Feature rule table to consult

    Returns:
        Distribution for the request

    Raises:
        UnsupportedDistribution: If the version cannot be parsed or a rule
            rejects the platform
    """
    try:
        version = Version.of(version)
    except ValidationError as e:
        raise UnsupportedDistribution(f"invalid version {version!r}: {e.errors()[0]['msg']}") from e

    if operating_system is None or architecture is None:
        host = Platform.detect()
        operating_system = operating_system or host.operating_system
        architecture = architecture or host.architecture

    platform = Platform(operating_system=OS(operating_system), architecture=Architecture(architecture))
    _check(version, platform, matrix)
    return Distribution(version=version, platform=platform)


def check_supported(distribution: Distribution, *, matrix: FeatureMatrix = DEFAULT_MATRIX) -> None:
    """Raise UnsupportedDistribution if the rule table rejects an already-built Distribution."""
    _check(distribution.version, distribution.platform, matrix)
