"""Code intended to run on start-up and shut-down of the operator, around
the handlers.
"""

__all__ = ("start_operator", "stop_operator")

import threading
from typing import Any

import structlog

from fleetreleaseoperator import state
from fleetreleaseoperator.chartrepo import ChartCatalog
from fleetreleaseoperator.clusterstore import (
    ClusterClientStore,
    build_api_client,
    build_dynamic_client,
    remove_credential_files,
)
from fleetreleaseoperator.k8s import create_k8sclient


def start_operator(logger: Any | None = None) -> None:
    """Start up the operator: create the chart catalog and the cluster
    client store, and start the store's watch loop in its own thread.
    """
    if logger is None:
        logger = structlog.getLogger(__name__)

    state.catalog = ChartCatalog(state.chart_cache_dir)
    logger.info(f"Chart cache stored at {state.chart_cache_dir}")

    state.store = ClusterClientStore(
        build_dynamic_client,
        build_api_client,
        namespace=state.namespace,
        k8s_client=create_k8sclient(),
        release_entry=remove_credential_files,
    )
    state.stop_event = threading.Event()
    state.store_thread = threading.Thread(
        target=state.store.run,
        args=(state.stop_event,),
        name="cluster-client-store",
        daemon=True,
    )
    state.store_thread.start()
    logger.info(
        f"Watching cluster credentials in namespace {state.namespace}"
    )


def stop_operator(logger: Any | None = None, timeout: float = 5.0) -> None:
    """Signal the cluster client store to stop and wait for it briefly."""
    if logger is None:
        logger = structlog.getLogger(__name__)

    if state.stop_event is None:
        return
    state.stop_event.set()
    if state.store is not None:
        state.store.stop_watch()
    if state.store_thread is not None:
        state.store_thread.join(timeout)
        if state.store_thread.is_alive():
            logger.warning("Cluster client store did not stop in time")
