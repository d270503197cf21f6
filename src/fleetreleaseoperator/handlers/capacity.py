"""Kopf handler that reports the capacity of a CapacityTarget's release."""

__all__ = ("report_capacity",)

from typing import Any

import kopf

from fleetreleaseoperator import labels, state
from fleetreleaseoperator.capacity import collect_capacity_reports
from fleetreleaseoperator.target import CapacityTarget


@kopf.timer(  # type: ignore[arg-type]
    labels.GROUP,
    labels.VERSION,
    labels.CAPACITY_TARGETS,
    interval=state.capacity_interval,
)
def report_capacity(
    *,
    body: dict[str, Any],
    patch: kopf.Patch,
    logger: Any,
    **kwargs: Any,
) -> None:
    """Aggregate the pods of a CapacityTarget's release on each of its
    clusters into ``status.clusters[].reports``.
    """
    if state.store is None:
        raise kopf.TemporaryError("cluster client store is not started")
    target = CapacityTarget.from_body(body)
    patch.status["clusters"] = collect_capacity_reports(
        target, store=state.store, logger=logger
    )
