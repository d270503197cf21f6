"""Kopf handler that installs an InstallationTarget's chart on its clusters."""

__all__ = ("reconcile_installation_target",)

from typing import Any

import kopf

from fleetreleaseoperator import labels, state
from fleetreleaseoperator.chartrepo import fetch_chart_func
from fleetreleaseoperator.installer import (
    build_cluster_statuses,
    install_target,
)
from fleetreleaseoperator.target import InstallationTarget


@kopf.on.resume(labels.GROUP, labels.VERSION, labels.INSTALLATION_TARGETS)  # type: ignore[arg-type]
@kopf.on.create(labels.GROUP, labels.VERSION, labels.INSTALLATION_TARGETS)  # type: ignore[arg-type]
@kopf.on.update(labels.GROUP, labels.VERSION, labels.INSTALLATION_TARGETS)  # type: ignore[arg-type]
def reconcile_installation_target(
    *,
    body: dict[str, Any],
    status: dict[str, Any],
    patch: kopf.Patch,
    retry: int,
    logger: Any,
    **kwargs: Any,
) -> None:
    """Install the chart of an InstallationTarget on every one of its
    clusters and record the outcome per cluster in ``status.clusters``.

    Parameters
    ----------
    body : dict
        The full body of the ``InstallationTarget`` as a read-only dict.
    status : dict
        The ``status`` field of the ``InstallationTarget``.
    patch : kopf.Patch
        The patch applied to the ``InstallationTarget`` after the handler.
    retry : int
        How many times kopf has retried this handler for this change.
    logger : Any
        The kopf logger.
    **kwargs : Any
        Additional keyword arguments provided by kopf.

    Raises
    ------
    kopf.TemporaryError
        Raised if a cluster failed for a reason that may go away by itself,
        such as a cluster that has no client yet or a chart repository that
        cannot be reached. A chart fetch failure is already written to
        ``status.clusters`` when this is raised.
    kopf.PermanentError
        Raised if the chart cannot be rendered or is invalid. Retrying the
        same chart cannot succeed, so the handler waits for a change.
    """
    if state.store is None or state.catalog is None:
        raise kopf.TemporaryError("operator is not started")
    target = InstallationTarget.from_body(body)
    results = install_target(
        target,
        store=state.store,
        fetcher=fetch_chart_func(state.catalog),
        logger=logger,
    )
    patch.status["clusters"] = build_cluster_statuses(
        results,
        (status or {}).get("clusters") or [],
        retry=retry,
        max_retries=state.max_retries,
    )

    failed = [r for r in results if not r.ok]
    transient = [r for r in failed if r.error.retryable]
    if transient:
        summary = "; ".join(f"{r.cluster}: {r.error}" for r in transient)
        raise kopf.TemporaryError(
            f"installation not complete: {summary}", delay=state.retry_delay
        )
    if failed:
        raise kopf.PermanentError(str(failed[0].error))
    logger.info(f"Installed on clusters {', '.join(target.clusters)}")
