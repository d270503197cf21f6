"""Kopf handlers for the fleet-release-operator."""

__all__ = (
    "configure_operator",
    "reconcile_installation_target",
    "report_capacity",
    "shutdown_operator",
)

from fleetreleaseoperator.handlers.capacity import report_capacity
from fleetreleaseoperator.handlers.installation import (
    reconcile_installation_target,
)
from fleetreleaseoperator.handlers.lifecycle import (
    configure_operator,
    shutdown_operator,
)
