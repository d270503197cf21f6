"""Aggregate pod and container health into cluster capacity reports.

A report groups pods by each (type, status, reason) pod condition they
carry. Under every such group, containers are grouped by name and then by
(state, reason), keeping the count and the name of the first pod observed in
that state. Pods are processed in name order and every level of the report
is emitted sorted, so the same pods always produce the same report no matter
the order they were listed in.
"""

from __future__ import annotations

__all__ = (
    "ContainerStateBreakdown",
    "PodConditionBreakdown",
    "ReportBuilder",
    "build_report",
    "collect_capacity_reports",
    "container_state",
    "list_release_pods",
)

from collections.abc import Callable, Iterable, Mapping
from typing import Any

import structlog

from fleetreleaseoperator import labels
from fleetreleaseoperator.clusterstore import ClusterClient, ClusterClientStore
from fleetreleaseoperator.errors import ClusterClientError
from fleetreleaseoperator.k8s import REQUEST_ERRORS, list_pods
from fleetreleaseoperator.target import CapacityTarget

AGENT_NAME = "capacity-controller"


class ContainerStateBreakdown:
    """Counts of one container's states across pods."""

    def __init__(self, container_name: str) -> None:
        self.container_name = container_name
        self._states: dict[tuple[str, str], dict[str, Any]] = {}

    def add_state(
        self,
        count: int,
        example_pod: str,
        state_type: str,
        reason: str,
        message: str = "",
    ) -> ContainerStateBreakdown:
        key = (state_type, reason)
        state = self._states.get(key)
        if state is None:
            example = {"pod": example_pod}
            if message:
                example["message"] = message
            self._states[key] = {
                "type": state_type,
                "reason": reason,
                "count": count,
                "example": example,
            }
        else:
            # The first pod observed stays the example.
            state["count"] += count
        return self

    def build(self) -> dict[str, Any]:
        return {
            "name": self.container_name,
            "states": [
                {**state, "example": dict(state["example"])}
                for _, state in sorted(self._states.items())
            ],
        }


class PodConditionBreakdown:
    """Pods sharing one pod condition, and the states of their containers."""

    def __init__(
        self,
        initial_pod_count: int,
        condition_type: str,
        condition_status: str,
        condition_reason: str,
    ) -> None:
        self.pod_count = initial_pod_count
        self.condition_type = condition_type
        self.condition_status = condition_status
        self.condition_reason = condition_reason
        self._containers: dict[str, ContainerStateBreakdown] = {}

    @property
    def key(self) -> tuple[str, str, str]:
        return (
            self.condition_type,
            self.condition_status,
            self.condition_reason,
        )

    def container(self, container_name: str) -> ContainerStateBreakdown:
        breakdown = self._containers.get(container_name)
        if breakdown is None:
            breakdown = ContainerStateBreakdown(container_name)
            self._containers[container_name] = breakdown
        return breakdown

    def add_container_state(
        self,
        container_name: str,
        container_count: int,
        example_pod: str,
        state_type: str,
        reason: str,
        message: str = "",
    ) -> PodConditionBreakdown:
        self.container(container_name).add_state(
            container_count, example_pod, state_type, reason, message
        )
        return self

    def increment_count(self) -> PodConditionBreakdown:
        self.pod_count += 1
        return self

    def build(self) -> dict[str, Any]:
        return {
            "type": self.condition_type,
            "status": self.condition_status,
            "reason": self.condition_reason,
            "count": self.pod_count,
            "containers": [
                self._containers[name].build()
                for name in sorted(self._containers)
            ],
        }


def container_state(status: Mapping[str, Any]) -> tuple[str, str, str]:
    """Get the state type, reason and message of a container status."""
    state = status.get("state") or {}
    for key, state_type in (
        ("waiting", "Waiting"),
        ("terminated", "Terminated"),
        ("running", "Running"),
    ):
        if state.get(key) is not None:
            detail = state[key] or {}
            return (
                state_type,
                detail.get("reason") or "",
                detail.get("message") or "",
            )
    return ("Unknown", "", "")


class ReportBuilder:
    """Build the capacity report of one owner from its pods."""

    def __init__(self, owner_name: str) -> None:
        self.owner_name = owner_name
        self._breakdowns: dict[
            tuple[str, str, str], PodConditionBreakdown
        ] = {}

    def add_pod(self, pod: Mapping[str, Any]) -> ReportBuilder:
        pod_name = pod["metadata"]["name"]
        status = pod.get("status") or {}
        for condition in status.get("conditions") or []:
            key = (
                condition.get("type") or "",
                condition.get("status") or "",
                condition.get("reason") or "",
            )
            breakdown = self._breakdowns.get(key)
            if breakdown is None:
                breakdown = PodConditionBreakdown(0, *key)
                self._breakdowns[key] = breakdown
            breakdown.increment_count()

            for container in status.get("containerStatuses") or []:
                state_type, reason, message = container_state(container)
                breakdown.add_container_state(
                    container["name"], 1, pod_name, state_type, reason, message
                )
        return self

    def build(self) -> dict[str, Any]:
        return {
            "owner": {"name": self.owner_name},
            "breakdown": [
                self._breakdowns[key].build()
                for key in sorted(self._breakdowns)
            ],
        }


def build_report(
    owner_name: str, pods: Iterable[Mapping[str, Any]]
) -> dict[str, Any]:
    """Build a capacity report from a list of pods.

    Parameters
    ----------
    owner_name : `str`
        The name of the object the report is about, usually the release.
    pods : iterable of `dict`
        Raw Pod manifests, in any order.

    Returns
    -------
    report : `dict`
        The report, with ``owner`` and ``breakdown`` fields.
    """
    builder = ReportBuilder(owner_name)
    for pod in sorted(pods, key=lambda p: p["metadata"]["name"]):
        builder.add_pod(pod)
    return builder.build()


PodLister = Callable[[ClusterClient, str, str], list[dict[str, Any]]]


def list_release_pods(
    client: ClusterClient, namespace: str, release: str
) -> list[dict[str, Any]]:
    return list_pods(
        namespace=namespace,
        label_selector=f"{labels.RELEASE_LABEL}={release}",
        api_client=client.kube_client,
    )


def collect_capacity_reports(
    target: CapacityTarget,
    *,
    store: ClusterClientStore,
    pod_lister: PodLister = list_release_pods,
    logger: Any | None = None,
) -> list[dict[str, Any]]:
    """Build the ``status.clusters`` entries of a capacity target, one
    report per cluster.

    Clusters without a ready client get an entry without reports.
    """
    if logger is None:
        logger = structlog.getLogger(__name__)

    statuses = []
    for name in target.clusters:
        try:
            client = store.get_client(name, AGENT_NAME)
        except ClusterClientError as err:
            logger.warning(f"Skipping capacity report for {name}: {err}")
            statuses.append({"name": name, "reports": []})
            continue
        try:
            pods = pod_lister(client, target.namespace, target.release)
        except REQUEST_ERRORS as err:
            logger.warning(f"Could not list pods on {name}: {err}")
            statuses.append({"name": name, "reports": []})
            continue
        statuses.append(
            {"name": name, "reports": [build_report(target.release, pods)]}
        )
    return statuses
