"""Install the rendered manifests of an installation target onto its target
clusters.
"""

from __future__ import annotations

__all__ = (
    "AGENT_NAME",
    "ClusterInstallation",
    "Installer",
    "build_cluster_statuses",
    "create_anchor",
    "install_target",
    "manifest_checksum",
)

import copy
import hashlib
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import kopf
import structlog
from kubernetes.dynamic.exceptions import NotFoundError, ResourceNotFoundError

from fleetreleaseoperator import conditions, labels, state
from fleetreleaseoperator.chartrepo import ChartFetcher
from fleetreleaseoperator.clusterstore import ClusterClient, ClusterClientStore
from fleetreleaseoperator.errors import (
    ApplyError,
    ChartError,
    ClusterClientError,
    FleetReleaseError,
)
from fleetreleaseoperator.k8s import REQUEST_ERRORS
from fleetreleaseoperator.renderer import (
    Manifest,
    RenderedManifestSet,
    TemplateEngine,
    fetch_and_render_chart,
    helm_template,
)
from fleetreleaseoperator.target import InstallationTarget

AGENT_NAME = "installation-controller"


def create_anchor(target: InstallationTarget) -> dict[str, Any]:
    """Create the ConfigMap that owns every object installed for a target on
    one cluster.
    """
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": target.anchor_name,
            "namespace": target.namespace,
            "labels": target.injected_labels(),
        },
        "data": {"init": "true"},
    }


def manifest_checksum(body: Mapping[str, Any]) -> str:
    """Checksum of the desired state of an object."""
    encoded = json.dumps(body, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _is_owned_by(obj: Mapping[str, Any], uid: str) -> bool:
    refs = obj.get("metadata", {}).get("ownerReferences") or []
    return any(ref.get("uid") == uid for ref in refs)


class Installer:
    """Apply one rendered manifest set to target clusters.

    Every object is looked up first and only created or replaced when it is
    missing or differs from the desired state, so applying an unchanged set
    again costs one get per object.

    Parameters
    ----------
    target : `InstallationTarget`
        The installation target the manifests were rendered for.
    manifests : `RenderedManifestSet`
        The validated manifests.
    logger : optional
        Logger to use. Defaults to a structlog logger.
    """

    def __init__(
        self,
        target: InstallationTarget,
        manifests: RenderedManifestSet,
        *,
        logger: Any | None = None,
    ) -> None:
        self.target = target
        self.manifests = manifests
        self.logger = logger or structlog.getLogger(__name__)

    def install(self, client: ClusterClient) -> None:
        """Install every manifest onto one cluster, under its anchor.

        Raises
        ------
        fleetreleaseoperator.errors.ApplyError
            Raised on the first object the cluster fails to apply. The
            remaining objects are not attempted.
        """
        anchor = self.ensure_anchor(client)
        for manifest in self.manifests:
            body = self.prepare(manifest, anchor)
            self.apply(
                client, manifest, body, anchor_uid=anchor["metadata"]["uid"]
            )

    def _resource(
        self, client: ClusterClient, api_version: str, kind: str, name: str
    ) -> Any:
        try:
            return client.dynamic_client.resources.get(
                api_version=api_version, kind=kind
            )
        except ResourceNotFoundError as err:
            raise ApplyError(
                client.cluster_name,
                kind,
                name,
                f"{api_version} {kind} is not served by the cluster",
            ) from err
        except REQUEST_ERRORS as err:
            raise ApplyError(
                client.cluster_name, kind, name, str(err)
            ) from err

    def ensure_anchor(self, client: ClusterClient) -> dict[str, Any]:
        """Get or create the anchor ConfigMap on a cluster."""
        body = create_anchor(self.target)
        name = self.target.anchor_name
        dynamic_client = client.dynamic_client
        resource = self._resource(client, "v1", "ConfigMap", name)
        try:
            return dynamic_client.get(
                resource,
                name=name,
                namespace=self.target.namespace,
                _request_timeout=state.rest_timeout,
            ).to_dict()
        except NotFoundError:
            pass
        except REQUEST_ERRORS as err:
            raise ApplyError(
                client.cluster_name, "ConfigMap", name, str(err)
            ) from err

        try:
            anchor = dynamic_client.create(
                resource,
                body=body,
                namespace=self.target.namespace,
                _request_timeout=state.rest_timeout,
            ).to_dict()
        except REQUEST_ERRORS as err:
            raise ApplyError(
                client.cluster_name, "ConfigMap", name, str(err)
            ) from err
        self.logger.info(
            f"Created anchor {name} on cluster {client.cluster_name}"
        )
        return anchor

    def prepare(
        self, manifest: Manifest, anchor: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Build the body to apply for a manifest: namespaced to the target,
        labelled with the release, owned by the anchor, and annotated with
        its checksum.
        """
        body = copy.deepcopy(dict(manifest.body))
        metadata = body.setdefault("metadata", {})
        metadata["namespace"] = self.target.namespace
        injected = self.target.injected_labels()
        metadata["labels"] = {**(metadata.get("labels") or {}), **injected}

        if manifest.kind == "Deployment":
            template_meta = (
                body.setdefault("spec", {})
                .setdefault("template", {})
                .setdefault("metadata", {})
            )
            template_meta["labels"] = {
                **(template_meta.get("labels") or {}),
                **injected,
            }

        if (
            self.target.helm_workaround
            and manifest.kind == "Service"
            and manifest.labels.get(labels.LB_LABEL)
            == labels.LB_FOR_PRODUCTION_TRAFFIC
        ):
            # Select the pods of every release, not only this one.
            selector = body.setdefault("spec", {}).get("selector") or {}
            selector.pop(labels.HELM_RELEASE_LABEL, None)

        kopf.append_owner_reference(body, owner=anchor)

        annotations = metadata.setdefault("annotations", {})
        annotations.pop(labels.MANIFEST_CHECKSUM_ANNOTATION, None)
        annotations[labels.MANIFEST_CHECKSUM_ANNOTATION] = manifest_checksum(
            body
        )
        return body

    def apply(
        self,
        client: ClusterClient,
        manifest: Manifest,
        body: dict[str, Any],
        *,
        anchor_uid: str,
    ) -> str:
        """Create or replace one object on a cluster.

        Returns
        -------
        action : `str`
            ``"created"``, ``"updated"`` or ``"unchanged"``.
        """
        resource = self._resource(
            client, manifest.api_version, manifest.kind, manifest.name
        )
        dynamic_client = client.dynamic_client
        namespace = self.target.namespace if resource.namespaced else None
        cluster = client.cluster_name

        try:
            try:
                existing = dynamic_client.get(
                    resource,
                    name=manifest.name,
                    namespace=namespace,
                    _request_timeout=state.rest_timeout,
                ).to_dict()
            except NotFoundError:
                dynamic_client.create(
                    resource,
                    body=body,
                    namespace=namespace,
                    _request_timeout=state.rest_timeout,
                )
                self.logger.info(
                    f"Created {manifest.kind} {manifest.name} on cluster "
                    f"{cluster}"
                )
                return "created"

            existing_meta = existing.get("metadata") or {}
            desired = body["metadata"]["annotations"][
                labels.MANIFEST_CHECKSUM_ANNOTATION
            ]
            current = (existing_meta.get("annotations") or {}).get(
                labels.MANIFEST_CHECKSUM_ANNOTATION
            )
            if current == desired:
                return "unchanged"

            if not self.target.can_override and not _is_owned_by(
                existing, anchor_uid
            ):
                raise ApplyError(
                    cluster,
                    manifest.kind,
                    manifest.name,
                    "object exists and is not owned by this release, and "
                    "overriding is not allowed",
                )

            body = copy.deepcopy(body)
            body["metadata"]["resourceVersion"] = existing_meta.get(
                "resourceVersion"
            )
            if manifest.kind == "Service":
                _keep_cluster_ip(body, existing)
            dynamic_client.replace(
                resource,
                body=body,
                namespace=namespace,
                _request_timeout=state.rest_timeout,
            )
        except REQUEST_ERRORS as err:
            raise ApplyError(
                cluster, manifest.kind, manifest.name, str(err)
            ) from err
        self.logger.info(
            f"Updated {manifest.kind} {manifest.name} on cluster {cluster}"
        )
        return "updated"


def _keep_cluster_ip(
    body: dict[str, Any], existing: Mapping[str, Any]
) -> None:
    # spec.clusterIP is immutable once allocated.
    existing_spec = existing.get("spec") or {}
    spec = body.setdefault("spec", {})
    for key in ("clusterIP", "clusterIPs"):
        if key in existing_spec and key not in spec:
            spec[key] = existing_spec[key]


@dataclass
class ClusterInstallation:
    """The outcome of installing a target on one cluster."""

    cluster: str
    error: FleetReleaseError | None = None
    conditions: list[dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


def install_target(
    target: InstallationTarget,
    *,
    store: ClusterClientStore,
    fetcher: ChartFetcher,
    engine: TemplateEngine = helm_template,
    logger: Any | None = None,
) -> list[ClusterInstallation]:
    """Render the chart of a target once and install it on each of its
    clusters.

    A chart failure fails every cluster with the same error. Otherwise each
    cluster succeeds or fails on its own.
    """
    if logger is None:
        logger = structlog.getLogger(__name__)

    try:
        manifests = fetch_and_render_chart(
            fetcher, target, engine=engine, logger=logger
        )
    except ChartError as err:
        logger.warning(f"Chart {target.chart} failed: {err}")
        return [
            ClusterInstallation(
                cluster=name,
                error=err,
                conditions=conditions.failed_conditions(err),
            )
            for name in target.clusters
        ]

    installer = Installer(target, manifests, logger=logger)
    results = []
    for name in target.clusters:
        try:
            client = store.get_client(name, AGENT_NAME)
            installer.install(client)
        except (ClusterClientError, ApplyError) as err:
            logger.warning(f"Installation on cluster {name} failed: {err}")
            results.append(
                ClusterInstallation(
                    cluster=name,
                    error=err,
                    conditions=conditions.failed_conditions(err),
                )
            )
        else:
            results.append(
                ClusterInstallation(
                    cluster=name,
                    conditions=conditions.installed_conditions(),
                )
            )
    return results


def build_cluster_statuses(
    results: Iterable[ClusterInstallation],
    previous: Iterable[Mapping[str, Any]],
    *,
    retry: int,
    max_retries: int,
) -> list[dict[str, Any]]:
    """Build ``status.clusters`` from installation results.

    Retryable cluster failures leave a cluster's previous status untouched
    until ``retry`` reaches ``max_retries``. Chart failures, including
    retryable fetch failures, and every other outcome are recorded at once.
    """
    by_name = {entry["name"]: entry for entry in previous}
    statuses = []
    for result in results:
        prior = by_name.get(result.cluster)
        if (
            result.error is not None
            and result.error.retryable
            and not isinstance(result.error, ChartError)
            and retry < max_retries
        ):
            if prior is not None:
                statuses.append(dict(prior))
            else:
                statuses.append(
                    conditions.cluster_status(
                        result.cluster, conditions.unknown_conditions()
                    )
                )
            continue
        statuses.append(
            conditions.cluster_status(
                result.cluster, result.conditions, prior
            )
        )
    return statuses
