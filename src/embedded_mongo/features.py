"""
Feature matrix: which capability flags apply to which server versions.

Rules are plain data kept in one ordered table. For a (version, feature)
pair the rules for that feature are scanned in table order and the first
rule whose version range contains the version decides. Later rules are
never consulted, so a narrow exception must be listed before the broad
rule it overrides. A feature with no matching rule is disabled.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Tuple

from .distribution import Version

__all__ = ["Feature", "FeatureRule", "FeatureMatrix", "FEATURE_RULES", "DEFAULT_MATRIX", "enabled", "features_of"]


class Feature(str, Enum):
    TEXT_SEARCH = "text_search"
    SYNC_DELAY = "sync_delay"
    STORAGE_ENGINE = "storage_engine"
    ONLY_64BIT = "only_64bit"
    NO_SOLARIS_SUPPORT = "no_solaris_support"
    ONLY_WINDOWS_2008_SERVER = "only_windows_2008_server"
    ONLY_WITH_SSL = "only_with_ssl"
    NO_HTTP_INTERFACE_ARG = "no_http_interface_arg"
    ARM64_SUPPORT = "arm64_support"
    NO_32BIT_OSX = "no_32bit_osx"
    NO_32BIT_SOLARIS = "no_32bit_solaris"
    NO_FREEBSD_SUPPORT = "no_freebsd_support"


def _parse_bound(bound: Optional[str]) -> Optional[Tuple[int, int, int, int]]:
    if bound is None:
        return None
    return Version(identifier=bound).precedence


@dataclass(frozen=True)
class FeatureRule:
    """
    One row of the rule table.

    Covers the half-open range [since, until); a missing bound is open.
    enabled=False rows exist to carve exceptions out of later, broader rows.
    """
    feature: Feature
    since: Optional[str] = None
    until: Optional[str] = None
    enabled: bool = True

    def __post_init__(self):
        low, high = _parse_bound(self.since), _parse_bound(self.until)
        if low is not None and high is not None and low >= high:
            raise ValueError(f"empty version range [{self.since}, {self.until}) for {self.feature.value}")

    def matches(self, version: Version) -> bool:
        key = version.precedence
        low, high = _parse_bound(self.since), _parse_bound(self.until)
        if low is not None and key < low:
            return False
        if high is not None and key >= high:
            return False
        return True


FEATURE_RULES: Tuple[FeatureRule, ...] = (
    FeatureRule(Feature.TEXT_SEARCH, since="2.4"),
    FeatureRule(Feature.SYNC_DELAY),
    FeatureRule(Feature.STORAGE_ENGINE, since="3.0"),
    FeatureRule(Feature.ONLY_64BIT, since="3.4"),
    FeatureRule(Feature.NO_SOLARIS_SUPPORT, since="3.4"),
    FeatureRule(Feature.ONLY_WINDOWS_2008_SERVER, since="3.0"),
    FeatureRule(Feature.ONLY_WITH_SSL, since="4.2", enabled=False),
    FeatureRule(Feature.ONLY_WITH_SSL, since="3.6"),
    FeatureRule(Feature.NO_HTTP_INTERFACE_ARG, since="3.6"),
    FeatureRule(Feature.ARM64_SUPPORT, since="4.2"),
    FeatureRule(Feature.NO_32BIT_OSX),
    FeatureRule(Feature.NO_32BIT_SOLARIS),
    FeatureRule(Feature.NO_FREEBSD_SUPPORT),
)


class FeatureMatrix:
    """First-match-wins evaluation over an ordered rule table."""

    def __init__(self, rules: Iterable[FeatureRule] = FEATURE_RULES):
        self.rules: Tuple[FeatureRule, ...] = tuple(rules)

    def enabled(self, version: Version | str, feature: Feature) -> bool:
        version = Version.of(version)
        for rule in self.rules:
            if rule.feature is feature and rule.matches(version):
                return rule.enabled
        return False

    def features_of(self, version: Version | str) -> FrozenSet[Feature]:
        """All features enabled for a version."""
        return frozenset(f for f in Feature if self.enabled(version, f))


DEFAULT_MATRIX = FeatureMatrix()


def enabled(version: Version | str, feature: Feature) -> bool:
    """Check a feature against the packaged rule table."""
    return DEFAULT_MATRIX.enabled(version, feature)


def features_of(version: Version | str) -> FrozenSet[Feature]:
    return DEFAULT_MATRIX.features_of(version)
