"""Feature gates known to the registration components."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Mapping

CLUSTER_CLAIM = "ClusterClaim"
"""Runs the cluster-claim controller in the agent and reports claims in cluster status."""

ADDON_MANAGEMENT = "AddonManagement"
"""Runs the agent controllers that register add-ons and watch their leases."""

ALL_ALPHA = "AllAlpha"
ALL_BETA = "AllBeta"

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


class PreRelease(str, enum.Enum):
    ALPHA = "ALPHA"
    BETA = "BETA"
    GA = ""
    DEPRECATED = "DEPRECATED"


@dataclass(frozen=True)
class FeatureSpec:
    default: bool
    pre_release: PreRelease = PreRelease.ALPHA
    lock_to_default: bool = False


def _parse_bool(text: str) -> bool:
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ValueError(f'strconv.ParseBool: parsing "{text}": invalid syntax')


class FeatureGate:
    """A set of named features, each with a default that can be overridden."""

    def __init__(self) -> None:
        self._known: dict[str, FeatureSpec] = {
            ALL_ALPHA: FeatureSpec(False, PreRelease.ALPHA),
            ALL_BETA: FeatureSpec(False, PreRelease.BETA),
        }
        self._enabled: dict[str, bool] = {}

    def add(self, features: Mapping[str, FeatureSpec]) -> None:
        """Register features; re-adding one with a different spec raises ValueError."""
        known = dict(self._known)
        for name, spec in features.items():
            existing = known.get(name)
            if existing is not None:
                if existing == spec:
                    continue
                raise ValueError(
                    f'feature gate "{name}" with different spec already exists: {existing}'
                )
            known[name] = spec
        self._known = known

    def set(self, value: str) -> None:
        """Apply a comma separated list of ``Name=bool`` pairs."""
        values: dict[str, bool] = {}
        for item in value.split(","):
            if not item:
                continue
            name, sep, raw = item.partition("=")
            name = name.strip()
            if not sep:
                raise ValueError(f"missing bool value for {name}")
            raw = raw.strip()
            try:
                values[name] = _parse_bool(raw)
            except ValueError as exc:
                raise ValueError(f"invalid value of {name}={raw}, err: {exc}") from exc
        self.set_from_map(values)

    def set_from_map(self, values: Mapping[str, bool]) -> None:
        """Override features by name; nothing changes if any entry is rejected."""
        enabled = dict(self._enabled)
        for name, value in values.items():
            if name in (ALL_ALPHA, ALL_BETA):
                stage = PreRelease.ALPHA if name == ALL_ALPHA else PreRelease.BETA
                for other, spec in self._known.items():
                    if spec.pre_release is stage and other not in enabled:
                        enabled[other] = value
                enabled[name] = value
                continue
            spec = self._known.get(name)
            if spec is None:
                raise ValueError(f"unrecognized feature gate: {name}")
            if spec.lock_to_default and spec.default != value:
                raise ValueError(
                    f"cannot set feature gate {name} to {str(value).lower()}, "
                    f"feature is locked to {str(spec.default).lower()}"
                )
            enabled[name] = value
        self._enabled = enabled

    def enabled(self, key: str) -> bool:
        """Return whether ``key`` is on; unknown features raise KeyError."""
        if key in self._enabled:
            return self._enabled[key]
        spec = self._known.get(key)
        if spec is None:
            raise KeyError(f'feature "{key}" is not registered in FeatureGate')
        return spec.default

    def known_features(self) -> list[str]:
        """Describe every non-GA, non-deprecated feature, sorted."""
        return sorted(
            f"{name}=true|false ({spec.pre_release.value} - "
            f"default={str(spec.default).lower()})"
            for name, spec in self._known.items()
            if spec.pre_release not in (PreRelease.GA, PreRelease.DEPRECATED)
        )

    def __str__(self) -> str:
        return ",".join(
            f"{name}={str(value).lower()}" for name, value in sorted(self._enabled.items())
        )


DEFAULT_REGISTRATION_FEATURE_GATES: dict[str, FeatureSpec] = {
    CLUSTER_CLAIM: FeatureSpec(default=True, pre_release=PreRelease.BETA),
    ADDON_MANAGEMENT: FeatureSpec(default=False, pre_release=PreRelease.ALPHA),
}


def new_default_feature_gate() -> FeatureGate:
    """Return a fresh gate holding every registration feature at its default."""
    gate = FeatureGate()
    gate.add(DEFAULT_REGISTRATION_FEATURE_GATES)
    return gate


DEFAULT_MUTABLE_FEATURE_GATE = new_default_feature_gate()