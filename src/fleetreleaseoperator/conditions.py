"""Per-cluster status conditions of installation targets."""

__all__ = (
    "OPERATIONAL",
    "READY",
    "cluster_status",
    "failed_conditions",
    "installed_conditions",
    "make_condition",
    "set_condition",
    "unknown_conditions",
)

from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from fleetreleaseoperator.errors import ClusterClientError, FleetReleaseError

OPERATIONAL = "Operational"
READY = "Ready"

TRUE = "True"
FALSE = "False"
UNKNOWN = "Unknown"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def make_condition(
    type_: str, status: str, reason: str = "", message: str = ""
) -> dict[str, str]:
    condition = {
        "type": type_,
        "status": status,
        "lastTransitionTime": _now(),
    }
    if reason:
        condition["reason"] = reason
    if message:
        condition["message"] = message
    return condition


def installed_conditions() -> list[dict[str, str]]:
    return [
        make_condition(OPERATIONAL, TRUE),
        make_condition(READY, TRUE),
    ]


def unknown_conditions() -> list[dict[str, str]]:
    return [
        make_condition(OPERATIONAL, UNKNOWN),
        make_condition(READY, UNKNOWN),
    ]


def failed_conditions(error: FleetReleaseError) -> list[dict[str, str]]:
    """Conditions recording a failure, with the error kind as the reason and
    its message verbatim.

    Failures to reach a cluster make it not operational and leave readiness
    unknown. Any other failure leaves the cluster operational but not ready.
    """
    if isinstance(error, ClusterClientError):
        return [
            make_condition(OPERATIONAL, FALSE, error.kind, str(error)),
            make_condition(READY, UNKNOWN),
        ]
    return [
        make_condition(OPERATIONAL, TRUE),
        make_condition(READY, FALSE, error.kind, str(error)),
    ]


def set_condition(
    conditions: Iterable[Mapping[str, Any]], new: Mapping[str, Any]
) -> list[dict[str, Any]]:
    """Replace the condition of the same type, keeping its transition time
    if the status did not change.
    """
    result = []
    replaced = False
    for condition in conditions:
        if condition.get("type") != new["type"]:
            result.append(dict(condition))
            continue
        updated = dict(new)
        if condition.get("status") == new["status"]:
            updated["lastTransitionTime"] = condition.get(
                "lastTransitionTime", new.get("lastTransitionTime")
            )
        result.append(updated)
        replaced = True
    if not replaced:
        result.append(dict(new))
    return result


def cluster_status(
    name: str,
    conditions: Iterable[Mapping[str, Any]],
    previous: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the ``status.clusters[]`` entry of one cluster, merging
    ``conditions`` into those of the ``previous`` entry.
    """
    merged = [dict(c) for c in (previous or {}).get("conditions") or []]
    for condition in conditions:
        merged = set_condition(merged, condition)
    return {"name": name, "conditions": merged}
