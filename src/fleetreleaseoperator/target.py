"""Parsing of InstallationTarget and CapacityTarget custom resources."""

from __future__ import annotations

__all__ = ("CapacityTarget", "InstallationTarget")

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from fleetreleaseoperator import labels
from fleetreleaseoperator.chartrepo import ChartReference


@dataclass(frozen=True)
class InstallationTarget:
    """The desired chart and values of one release on a set of clusters."""

    name: str
    namespace: str
    chart: ChartReference
    clusters: tuple[str, ...] = ()
    labels: Mapping[str, str] = field(default_factory=dict)
    values: Mapping[str, Any] | None = None
    can_override: bool = True
    uid: str | None = None

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> InstallationTarget:
        """Parse an ``InstallationTarget`` resource body."""
        meta = body["metadata"]
        spec = body.get("spec") or {}
        return cls(
            name=meta["name"],
            namespace=meta.get("namespace") or "default",
            chart=ChartReference.from_spec(spec["chart"]),
            clusters=tuple(spec.get("clusters") or ()),
            labels=dict(meta.get("labels") or {}),
            values=spec.get("values"),
            can_override=spec.get("canOverride", True),
            uid=meta.get("uid"),
        )

    @property
    def release_name(self) -> str:
        """The name charts are rendered with."""
        return self.name

    @property
    def helm_workaround(self) -> bool:
        """Whether the compatibility opt-out label is set."""
        return self.labels.get(labels.HELM_WORKAROUND_LABEL) == labels.TRUE

    @property
    def anchor_name(self) -> str:
        return f"{self.name}{labels.ANCHOR_SUFFIX}"

    def injected_labels(self) -> dict[str, str]:
        """Labels added to every object installed for this target."""
        injected = {
            labels.RELEASE_LABEL: self.labels.get(
                labels.RELEASE_LABEL, self.name
            ),
            labels.MANAGED_BY_LABEL: labels.OPERATOR_NAME,
        }
        if labels.APP_LABEL in self.labels:
            injected[labels.APP_LABEL] = self.labels[labels.APP_LABEL]
        return injected


@dataclass(frozen=True)
class CapacityTarget:
    """The clusters whose pods are reported on for one release."""

    name: str
    namespace: str
    release: str
    clusters: tuple[str, ...] = ()

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> CapacityTarget:
        meta = body["metadata"]
        spec = body.get("spec") or {}
        clusters = [
            c["name"] if isinstance(c, Mapping) else c
            for c in spec.get("clusters") or ()
        ]
        return cls(
            name=meta["name"],
            namespace=meta.get("namespace") or "default",
            release=(meta.get("labels") or {}).get(
                labels.RELEASE_LABEL, meta["name"]
            ),
            clusters=tuple(clusters),
        )
