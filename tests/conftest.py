"""Fixtures and test doubles shared by the test modules."""

from __future__ import annotations

import base64
import copy
import io
import itertools
import tarfile
from collections.abc import Callable
from typing import Any

import pytest
import yaml
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic.exceptions import NotFoundError, ResourceNotFoundError

from fleetreleaseoperator import labels
from fleetreleaseoperator.chartrepo import ChartReference
from fleetreleaseoperator.clusterstore import ClusterClientStore
from fleetreleaseoperator.errors import ChartNotFoundError
from fleetreleaseoperator.renderer import Chart
from fleetreleaseoperator.target import InstallationTarget

REPO_URL = "https://charts.example.com/"

RELEASE_NAME = "reviews-api-deadbeef-0"

NAMESPACE = "reviews-api"

LB_SERVICE = """
apiVersion: v1
kind: Service
metadata:
  name: reviews-api
  labels:
    app: reviews-api
    fleetrelease.io/lb: production
spec:
  selector:
    app: reviews-api
  ports:
  - port: 80
    targetPort: 9080
"""

LB_SERVICE_WITH_RELEASE_SELECTOR = """
apiVersion: v1
kind: Service
metadata:
  name: reviews-api
  labels:
    app: reviews-api
    fleetrelease.io/lb: production
spec:
  selector:
    app: reviews-api
    release: {{ .Release.Name }}
  ports:
  - port: 80
    targetPort: 9080
"""

STAGING_SERVICE = """
apiVersion: v1
kind: Service
metadata:
  name: reviews-api-staging
  labels:
    app: reviews-api
spec:
  selector:
    app: reviews-api
  ports:
  - port: 80
    targetPort: 9080
"""

TEMPLATED_DEPLOYMENT = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: {{ .Release.Name }}
  labels:
    app: reviews-api
spec:
  replicas: 2
  selector:
    matchLabels:
      app: reviews-api
  template:
    metadata:
      labels:
        app: reviews-api
    spec:
      containers:
      - name: app
        image: reviews-api:{{ .Chart.Version }}
"""

STATIC_DEPLOYMENT = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: reviews-api
spec:
  selector:
    matchLabels:
      app: reviews-api
  template:
    metadata:
      labels:
        app: reviews-api
    spec:
      containers:
      - name: app
        image: reviews-api:latest
"""

BROKEN_OBJECT = """
apiVersion: v1
kind: Service
metadata: [this is not: valid
"""


def make_chart_archive(
    name: str,
    version: str,
    templates: dict[str, str],
    values: dict[str, Any] | None = None,
) -> bytes:
    """Build a gzipped chart archive in memory."""
    files = {
        "Chart.yaml": yaml.safe_dump(
            {"apiVersion": "v2", "name": name, "version": version}
        ),
        "values.yaml": yaml.safe_dump(values or {}),
    }
    for filename, content in templates.items():
        files[f"templates/{filename}"] = content

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for path, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(f"{name}/{path}")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


CHARTS: dict[tuple[str, str], Callable[[], bytes]] = {
    ("reviews-api", "0.0.1"): lambda: make_chart_archive(
        "reviews-api",
        "0.0.1",
        {
            "service.yaml": LB_SERVICE_WITH_RELEASE_SELECTOR,
            "deployment.yaml": TEMPLATED_DEPLOYMENT,
        },
    ),
    ("reviews-api", "0.0.2"): lambda: make_chart_archive(
        "reviews-api",
        "0.0.2",
        {
            "service.yaml": LB_SERVICE,
            "deployment.yaml": TEMPLATED_DEPLOYMENT,
        },
    ),
    ("reviews-api", "broken-tarball"): lambda: b"not a gzipped tarball",
    ("reviews-api", "broken-k8s-objects"): lambda: make_chart_archive(
        "reviews-api",
        "broken-k8s-objects",
        {"service.yaml": BROKEN_OBJECT},
    ),
    ("reviews-api", "invalid-deployment-name"): lambda: make_chart_archive(
        "reviews-api",
        "invalid-deployment-name",
        {"service.yaml": LB_SERVICE, "deployment.yaml": STATIC_DEPLOYMENT},
    ),
    ("reviews-api", "multi-service-no-lb"): lambda: make_chart_archive(
        "reviews-api",
        "multi-service-no-lb",
        {
            "service.yaml": STAGING_SERVICE,
            "service-b.yaml": STAGING_SERVICE.replace(
                "reviews-api-staging", "reviews-api-canary"
            ),
            "deployment.yaml": TEMPLATED_DEPLOYMENT,
        },
    ),
    ("reviews-api", "multi-service-with-lb"): lambda: make_chart_archive(
        "reviews-api",
        "multi-service-with-lb",
        {
            "service.yaml": LB_SERVICE,
            "service-staging.yaml": STAGING_SERVICE,
            "deployment.yaml": TEMPLATED_DEPLOYMENT,
        },
    ),
    ("reviews-api", "two-lb-services"): lambda: make_chart_archive(
        "reviews-api",
        "two-lb-services",
        {
            "service.yaml": LB_SERVICE,
            "service-b.yaml": LB_SERVICE.replace(
                "name: reviews-api", "name: reviews-api-b"
            ),
            "deployment.yaml": TEMPLATED_DEPLOYMENT,
        },
    ),
}


def local_fetch_chart(ref: ChartReference) -> bytes:
    """Fetch charts from the in-memory chart repository."""
    try:
        return CHARTS[(ref.name, ref.version)]()
    except KeyError:
        raise ChartNotFoundError(f"{ref} not found") from None


def fake_engine(
    chart: Chart,
    release_name: str,
    namespace: str,
    values: dict[str, Any] | None,
) -> str:
    """Render chart templates by substituting the built-in objects only."""
    replacements = {
        "{{ .Release.Name }}": release_name,
        "{{ .Release.Namespace }}": namespace,
        "{{ .Chart.Name }}": chart.name,
        "{{ .Chart.Version }}": chart.version,
    }
    documents = []
    for content in chart.templates.values():
        text = content.decode("utf-8")
        for token, value in replacements.items():
            text = text.replace(token, value)
        documents.append(text)
    return "\n---\n".join(documents)


def build_installation_target(
    version: str,
    *,
    workaround: bool = True,
    clusters: tuple[str, ...] = ("cluster-a",),
    can_override: bool = True,
) -> InstallationTarget:
    target_labels = {
        labels.APP_LABEL: "reviews-api",
        labels.RELEASE_LABEL: RELEASE_NAME,
    }
    if workaround:
        target_labels[labels.HELM_WORKAROUND_LABEL] = labels.TRUE
    return InstallationTarget(
        name=RELEASE_NAME,
        namespace=NAMESPACE,
        chart=ChartReference("reviews-api", version, REPO_URL),
        clusters=clusters,
        labels=target_labels,
        values=None,
        can_override=can_override,
        uid="it-uid",
    )


def build_credential_secret(
    name: str,
    *,
    cert: bytes = b"cert",
    key: bytes = b"key",
    endpoint: str = "https://cluster.example.com:6443",
    insecure: bool = False,
) -> dict[str, Any]:
    annotations = {
        labels.SECRET_CHECKSUM_ANNOTATION: "some-checksum",
        labels.SECRET_API_ENDPOINT_ANNOTATION: endpoint,
    }
    if insecure:
        annotations[labels.SECRET_SKIP_TLS_VERIFY_ANNOTATION] = "true"
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": name,
            "namespace": "fleet-release-system",
            "annotations": annotations,
        },
        "type": "Opaque",
        "data": {
            "tls.ca": base64.b64encode(b"ca").decode(),
            "tls.crt": base64.b64encode(cert).decode(),
            "tls.key": base64.b64encode(key).decode(),
        },
    }


class FakeResourceInstance:
    def __init__(self, obj: dict[str, Any]) -> None:
        self._obj = copy.deepcopy(obj)

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._obj)


class FakeResource:
    """A dynamic client resource backed by the objects of a fake cluster."""

    def __init__(
        self,
        cluster: FakeDynamicClient,
        api_version: str,
        kind: str,
        namespaced: bool = True,
    ) -> None:
        self.cluster = cluster
        self.api_version = api_version
        self.kind = kind
        self.namespaced = namespaced

    def _key(self, namespace: str | None, name: str) -> tuple:
        return (self.api_version, self.kind, namespace, name)

    def _check_failure(self, verb: str, name: str) -> None:
        status = self.cluster.failures.get((verb, self.kind, name))
        if status is not None:
            raise ApiException(status=status, reason="Injected failure")

    def get(self, name: str, namespace: str | None = None, **kwargs: Any):
        self.cluster.actions.append(("get", self.kind, name))
        self._check_failure("get", name)
        obj = self.cluster.objects.get(self._key(namespace, name))
        if obj is None:
            raise NotFoundError(ApiException(status=404, reason="Not Found"))
        return FakeResourceInstance(obj)

    def create(self, body: dict, namespace: str | None = None, **kwargs: Any):
        name = body["metadata"]["name"]
        self.cluster.actions.append(("create", self.kind, name))
        self._check_failure("create", name)
        obj = copy.deepcopy(body)
        obj["metadata"]["uid"] = f"uid-{next(self.cluster.uids)}"
        obj["metadata"]["resourceVersion"] = "1"
        self.cluster.objects[self._key(namespace, name)] = obj
        return FakeResourceInstance(obj)

    def replace(self, body: dict, namespace: str | None = None, **kwargs):
        name = body["metadata"]["name"]
        self.cluster.actions.append(("replace", self.kind, name))
        self._check_failure("replace", name)
        existing = self.cluster.objects[self._key(namespace, name)]
        obj = copy.deepcopy(body)
        obj["metadata"]["uid"] = existing["metadata"]["uid"]
        obj["metadata"]["resourceVersion"] = str(
            int(existing["metadata"]["resourceVersion"]) + 1
        )
        self.cluster.objects[self._key(namespace, name)] = obj
        return FakeResourceInstance(obj)


class FakeResources:
    def __init__(self, cluster: FakeDynamicClient) -> None:
        self.cluster = cluster

    def get(self, api_version: str, kind: str) -> FakeResource:
        if self.cluster.unreachable is not None:
            raise self.cluster.unreachable
        if (api_version, kind) not in self.cluster.kinds:
            raise ResourceNotFoundError(
                f"No matches found for {api_version} {kind}"
            )
        return FakeResource(self.cluster, api_version, kind)


class FakeDynamicClient:
    """Records the actions made against one fake cluster.

    Setting ``unreachable`` to an exception makes every discovery and
    request raise it, as a cluster that cannot be connected to does.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple, dict[str, Any]] = {}
        self.actions: list[tuple[str, str, str]] = []
        self.failures: dict[tuple[str, str, str], int] = {}
        self.kinds = {
            ("v1", "ConfigMap"),
            ("v1", "Service"),
            ("apps/v1", "Deployment"),
        }
        self.uids = itertools.count(1)
        self.unreachable: Exception | None = None
        self.resources = FakeResources(self)

    def _request(self, verb: str, resource: FakeResource, **kwargs: Any):
        if self.unreachable is not None:
            raise self.unreachable
        return getattr(resource, verb)(**kwargs)

    def get(self, resource: FakeResource, **kwargs: Any):
        return self._request("get", resource, **kwargs)

    def create(self, resource: FakeResource, **kwargs: Any):
        return self._request("create", resource, **kwargs)

    def replace(self, resource: FakeResource, **kwargs: Any):
        return self._request("replace", resource, **kwargs)

    def verbs(self, verb: str) -> list[tuple[str, str, str]]:
        return [action for action in self.actions if action[0] == verb]


@pytest.fixture
def fake_clusters() -> dict[str, FakeDynamicClient]:
    return {"cluster-a": FakeDynamicClient(), "cluster-b": FakeDynamicClient()}


@pytest.fixture
def store(fake_clusters: dict[str, FakeDynamicClient]) -> ClusterClientStore:
    """A cluster client store serving the fake clusters."""
    store = ClusterClientStore(
        lambda credential: fake_clusters[credential.cluster_name],
        lambda credential: f"kube-client-{credential.cluster_name}",
        namespace="fleet-release-system",
    )
    for name in fake_clusters:
        store.handle_secret_event("ADDED", build_credential_secret(name))
    return store
