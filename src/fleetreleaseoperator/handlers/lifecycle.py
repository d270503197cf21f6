"""Kopf handlers for operator start-up and clean-up."""

__all__ = ("configure_operator", "shutdown_operator")

from typing import Any

import kopf

from fleetreleaseoperator import state
from fleetreleaseoperator.startup import start_operator, stop_operator


@kopf.on.startup()
def configure_operator(
    *, settings: kopf.OperatorSettings, logger: Any, **kwargs: Any
) -> None:
    """Size the handler worker pool and start the cluster client store."""
    settings.execution.max_workers = state.workers
    start_operator(logger=logger)


@kopf.on.cleanup()
def shutdown_operator(*, logger: Any, **kwargs: Any) -> None:
    """Stop the cluster client store."""
    stop_operator(logger=logger)
