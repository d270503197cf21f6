"""Helpers for interacting with Kubernetes APIs."""

__all__ = ("REQUEST_ERRORS", "create_k8sclient", "list_pods")

import json
from typing import Any

import kubernetes
import urllib3
from kubernetes.client.exceptions import ApiException

from fleetreleaseoperator import state

REQUEST_ERRORS = (ApiException, urllib3.exceptions.HTTPError, OSError)
"""Errors raised by a request to a Kubernetes API server.

Besides API errors, an unreachable cluster surfaces as a urllib3 error
(such as ``MaxRetryError``) or a socket level `OSError`.
"""


def create_k8sclient() -> kubernetes.client:
    """Get a Kubernetes client for the management cluster, configured with
    available cluster authentication.

    If in-cluster authentication is available, that is used. Otherwise
    this function falls-back to using a kubectl config file, which is
    appropriate for development.
    """
    try:
        kubernetes.config.load_incluster_config()
    except Exception:
        kubernetes.config.load_kube_config()
    kubernetes.client.configuration.assert_hostname = False
    return kubernetes.client


def list_pods(
    *,
    namespace: str,
    label_selector: str,
    api_client: Any,
) -> list[dict[str, Any]]:
    """List the Pods matching a label selector on a target cluster.

    Parameters
    ----------
    namespace : `str`
        The Kubernetes namespace of the Pods.
    label_selector : `str`
        A label selector, such as ``fleetrelease.io/release=reviews-api``.
    api_client
        A typed client of the target cluster (see
        `fleetreleaseoperator.clusterstore.build_api_client`).

    Returns
    -------
    pods : `list` of `dict`
        The raw Kubernetes manifests of the Pods.
    """
    api = kubernetes.client.CoreV1Api(api_client)
    result = api.list_namespaced_pod(
        namespace=namespace,
        label_selector=label_selector,
        _preload_content=False,
        _request_timeout=state.rest_timeout,
    )
    return json.loads(result.data)["items"]
