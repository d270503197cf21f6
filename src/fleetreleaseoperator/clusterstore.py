"""A store of live API clients for every target cluster, built from the
cluster credential Secrets and kept current as those Secrets change.
"""

from __future__ import annotations

__all__ = (
    "ClientEntry",
    "ClusterClient",
    "ClusterClientStore",
    "ClusterCredential",
    "build_api_client",
    "build_dynamic_client",
    "credential_checksum",
    "remove_credential_files",
    "with_user_agent",
)

import base64
import binascii
import copy
import hashlib
import shutil
import ssl
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import kubernetes
import kubernetes.dynamic
import kubernetes.watch
import structlog
from kubernetes.client.exceptions import ApiException

from fleetreleaseoperator import labels, state
from fleetreleaseoperator.errors import (
    ClusterCredentialInvalid,
    ClusterNotReady,
    CredentialError,
)

ClientBuilder = Callable[["ClusterCredential"], Any]
"""Builds one kind of API client from a cluster credential."""


@dataclass(frozen=True)
class ClusterCredential:
    """TLS material and endpoint for one target cluster, as found in its
    credential Secret.
    """

    cluster_name: str
    api_endpoint: str
    ca: bytes | None
    cert: bytes
    key: bytes
    insecure_skip_tls_verify: bool
    checksum: str

    @classmethod
    def from_secret(cls, secret: Mapping[str, Any]) -> ClusterCredential:
        """Parse a credential Secret.

        Parameters
        ----------
        secret : `dict`
            The Secret resource. Its name is the cluster name.

        Returns
        -------
        credential : `ClusterCredential`

        Raises
        ------
        fleetreleaseoperator.errors.CredentialError
            Raised if the endpoint annotation or the certificate and key are
            missing, or if any field is not valid base64.
        """
        metadata = secret["metadata"]
        name = metadata["name"]
        annotations = metadata.get("annotations") or {}
        data = secret.get("data") or {}

        endpoint = annotations.get(labels.SECRET_API_ENDPOINT_ANNOTATION)
        if not endpoint:
            raise CredentialError(
                f"secret {name!r} has no "
                f"{labels.SECRET_API_ENDPOINT_ANNOTATION} annotation"
            )
        for key in ("tls.crt", "tls.key"):
            if not data.get(key):
                raise CredentialError(f"secret {name!r} has no {key} data")

        insecure = (
            annotations.get(labels.SECRET_SKIP_TLS_VERIFY_ANNOTATION, "")
            .strip()
            .lower()
            == labels.TRUE
        )
        return cls(
            cluster_name=name,
            api_endpoint=endpoint,
            ca=_decode(name, "tls.ca", data["tls.ca"])
            if data.get("tls.ca")
            else None,
            cert=_decode(name, "tls.crt", data["tls.crt"]),
            key=_decode(name, "tls.key", data["tls.key"]),
            insecure_skip_tls_verify=insecure,
            checksum=credential_checksum(secret),
        )


def _decode(name: str, key: str, value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as err:
        raise CredentialError(
            f"secret {name!r} field {key} is not valid base64"
        ) from err


def credential_checksum(secret: Mapping[str, Any]) -> str:
    """Compute a checksum over everything in a credential Secret that affects
    the clients built from it.
    """
    metadata = secret["metadata"]
    annotations = metadata.get("annotations") or {}
    digest = hashlib.sha256()
    for value in (
        annotations.get(labels.SECRET_API_ENDPOINT_ANNOTATION, ""),
        annotations.get(labels.SECRET_SKIP_TLS_VERIFY_ANNOTATION, ""),
    ):
        digest.update(value.encode("utf-8"))
        digest.update(b"\0")
    for key, value in sorted((secret.get("data") or {}).items()):
        digest.update(f"{key}={value}".encode())
        digest.update(b"\0")
    return digest.hexdigest()


@dataclass(frozen=True)
class ClientEntry:
    """The clients built for one cluster from one credential checksum.

    Entries are never mutated; a credential change publishes a new entry.
    """

    cluster_name: str
    checksum: str
    dynamic_client: Any = None
    kube_client: Any = None
    error: str | None = None

    @property
    def ready(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ClusterClient:
    """A cluster's clients handed out to one caller."""

    cluster_name: str
    user_agent: str
    dynamic_client: Any
    kube_client: Any
    checksum: str


class ClusterClientStore:
    """Map cluster names to ready-to-use API clients.

    The store watches credential Secrets in one namespace. For every Secret
    whose checksum differs from the published entry's, both builders run to
    completion before the new entry replaces the old one, so readers always
    see either the previous or the new clients. Build failures are recorded
    on the entry instead of being raised to the watch loop.

    Parameters
    ----------
    build_dynamic_client : callable
        Builds the generic-resource client from a `ClusterCredential`.
    build_kube_client : callable
        Builds the typed client from a `ClusterCredential`.
    namespace : `str`
        Namespace of the credential Secrets.
    k8s_client
        Client for the management cluster (see
        `fleetreleaseoperator.k8s.create_k8sclient`). Only `run` uses it.
    release_entry : callable, optional
        Called with every entry that is replaced by a build from a different
        credential, removed, or dropped on shutdown (see
        `remove_credential_files`).
    logger : optional
        Logger to use. Defaults to a structlog logger.
    """

    def __init__(
        self,
        build_dynamic_client: ClientBuilder,
        build_kube_client: ClientBuilder,
        *,
        namespace: str,
        k8s_client: Any = None,
        release_entry: Callable[[ClientEntry], None] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._build_dynamic_client = build_dynamic_client
        self._build_kube_client = build_kube_client
        self._namespace = namespace
        self._k8s_client = k8s_client
        self._release_entry = release_entry
        self._logger = logger or structlog.getLogger(__name__)

        self._entries: dict[str, ClientEntry] = {}
        # Guards reads and swaps of _entries.
        self._lock = threading.Lock()
        # Serializes writers so that builds for a cluster never interleave.
        self._write_lock = threading.Lock()
        self._watch: kubernetes.watch.Watch | None = None

    def get_client(self, cluster_name: str, user_agent: str) -> ClusterClient:
        """Get the current clients of a cluster.

        Parameters
        ----------
        cluster_name : `str`
            The name of the target cluster.
        user_agent : `str`
            Identifies the caller for request attribution. Requests made
            through the returned clients send it in their ``User-Agent``
            header.

        Raises
        ------
        fleetreleaseoperator.errors.ClusterNotReady
            Raised if no credential has been observed for the cluster.
        fleetreleaseoperator.errors.ClusterCredentialInvalid
            Raised if the last build attempt for the cluster failed.
        """
        with self._lock:
            entry = self._entries.get(cluster_name)
        if entry is None:
            raise ClusterNotReady(cluster_name)
        if not entry.ready:
            raise ClusterCredentialInvalid(cluster_name, entry.error or "")
        return ClusterClient(
            cluster_name=cluster_name,
            user_agent=user_agent,
            dynamic_client=with_user_agent(entry.dynamic_client, user_agent),
            kube_client=with_user_agent(entry.kube_client, user_agent),
            checksum=entry.checksum,
        )

    def get_entry(self, cluster_name: str) -> ClientEntry | None:
        with self._lock:
            return self._entries.get(cluster_name)

    def cluster_names(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def handle_secret_event(
        self, event_type: str, secret: Mapping[str, Any]
    ) -> None:
        """Apply one credential Secret event to the store.

        Parameters
        ----------
        event_type : `str`
            ``ADDED``, ``MODIFIED`` or ``DELETED``.
        secret : `dict`
            The Secret resource.
        """
        name = secret["metadata"]["name"]
        if event_type == "DELETED" or not is_credential_secret(secret):
            self.remove(name)
            return
        if event_type not in ("ADDED", "MODIFIED"):
            return

        with self._write_lock:
            checksum = credential_checksum(secret)
            current = self.get_entry(name)
            if (
                current is not None
                and current.ready
                and current.checksum == checksum
            ):
                return
            entry = self._build_entry(name, checksum, secret)
            with self._lock:
                self._entries[name] = entry
            if current is not None and current.checksum != checksum:
                self._release(current)

    def remove(self, cluster_name: str) -> None:
        with self._write_lock:
            with self._lock:
                entry = self._entries.pop(cluster_name, None)
            if entry is not None:
                self._logger.info(
                    "Removed clients for cluster", cluster=cluster_name
                )
                self._release(entry)

    def _release(self, entry: ClientEntry) -> None:
        if self._release_entry is not None:
            self._release_entry(entry)

    def _build_entry(
        self, name: str, checksum: str, secret: Mapping[str, Any]
    ) -> ClientEntry:
        try:
            credential = ClusterCredential.from_secret(secret)
            dynamic_client = self._build_dynamic_client(credential)
            kube_client = self._build_kube_client(credential)
        except Exception as err:
            self._logger.warning(
                "Failed to build clients for cluster",
                cluster=name,
                error=str(err),
            )
            return ClientEntry(
                cluster_name=name, checksum=checksum, error=str(err)
            )
        self._logger.info(
            "Built clients for cluster", cluster=name, checksum=checksum
        )
        return ClientEntry(
            cluster_name=name,
            checksum=checksum,
            dynamic_client=dynamic_client,
            kube_client=kube_client,
        )

    def resync(self, api: Any) -> str:
        """List the credential Secrets and reconcile every entry against them.

        Parameters
        ----------
        api
            A ``CoreV1Api`` for the management cluster.

        Returns
        -------
        resource_version : `str`
            The resource version of the list, to start a watch from.
        """
        response = api.list_namespaced_secret(namespace=self._namespace)
        seen = set()
        for item in response.items:
            secret = api.api_client.sanitize_for_serialization(item)
            if not is_credential_secret(secret):
                continue
            seen.add(secret["metadata"]["name"])
            self.handle_secret_event("ADDED", secret)
        for name in set(self.cluster_names()) - seen:
            self.remove(name)
        return response.metadata.resource_version

    def run(self, stop: threading.Event) -> None:
        """Watch credential Secrets until ``stop`` is set, then release every
        entry.

        The Secrets are re-listed each time a watch expires so that failed
        builds are retried and missed deletions are noticed.
        """
        api = self._k8s_client.CoreV1Api()
        self._logger.info(
            "Starting cluster client store", namespace=self._namespace
        )
        while not stop.is_set():
            try:
                resource_version = self.resync(api)
                self._watch_secrets(api, resource_version, stop)
            except ApiException as e:
                if e.status == 410:
                    self._logger.info("Secret watch expired, re-listing")
                    continue
                self._logger.exception("Error watching credential secrets")
                stop.wait(state.retry_delay)
        with self._write_lock:
            with self._lock:
                entries = list(self._entries.values())
                self._entries.clear()
            for entry in entries:
                self._release(entry)
        self._logger.info("Cluster client store has shut down")

    def stop_watch(self) -> None:
        if self._watch is not None:
            self._watch.stop()

    def _watch_secrets(
        self, api: Any, resource_version: str, stop: threading.Event
    ) -> None:
        self._watch = kubernetes.watch.Watch()
        for event in self._watch.stream(
            api.list_namespaced_secret,
            namespace=self._namespace,
            resource_version=resource_version,
            timeout_seconds=state.watch_timeout,
        ):
            if stop.is_set():
                self._watch.stop()
                break
            secret = api.api_client.sanitize_for_serialization(
                event["object"]
            )
            self.handle_secret_event(event["type"], secret)


def is_credential_secret(secret: Mapping[str, Any]) -> bool:
    annotations = secret["metadata"].get("annotations") or {}
    return labels.SECRET_CHECKSUM_ANNOTATION in annotations


def _credential_files_dir(
    cluster_name: str, checksum: str, credential_dir: Path | None
) -> Path:
    return (credential_dir or state.credential_dir) / (
        f"{cluster_name}-{checksum[:12]}"
    )


def _write_credential_files(
    credential: ClusterCredential, credential_dir: Path | None
) -> dict[str, Path]:
    directory = _credential_files_dir(
        credential.cluster_name, credential.checksum, credential_dir
    )
    directory.mkdir(parents=True, exist_ok=True, mode=0o700)
    paths = {
        "cert": directory / "tls.crt",
        "key": directory / "tls.key",
    }
    paths["cert"].write_bytes(credential.cert)
    paths["key"].write_bytes(credential.key)
    paths["key"].chmod(0o600)
    if credential.ca is not None:
        paths["ca"] = directory / "tls.ca"
        paths["ca"].write_bytes(credential.ca)
    return paths


def build_api_client(
    credential: ClusterCredential,
    *,
    credential_dir: Path | None = None,
) -> kubernetes.client.ApiClient:
    """Build a typed Kubernetes API client for a target cluster.

    The TLS material is loaded once with `ssl` so that malformed
    certificates or keys fail here rather than on the first request.

    Raises
    ------
    fleetreleaseoperator.errors.CredentialError
        Raised if the certificate, key or CA cannot be loaded.
    """
    paths = _write_credential_files(credential, credential_dir)
    context = ssl.create_default_context()
    try:
        context.load_cert_chain(paths["cert"], paths["key"])
        if "ca" in paths:
            context.load_verify_locations(cafile=str(paths["ca"]))
    except (ssl.SSLError, OSError) as err:
        raise CredentialError(
            f"invalid TLS material for cluster "
            f"{credential.cluster_name!r}: {err}"
        ) from err

    configuration = kubernetes.client.Configuration()
    configuration.host = credential.api_endpoint
    configuration.cert_file = str(paths["cert"])
    configuration.key_file = str(paths["key"])
    if "ca" in paths:
        configuration.ssl_ca_cert = str(paths["ca"])
    configuration.verify_ssl = not credential.insecure_skip_tls_verify

    api_client = kubernetes.client.ApiClient(configuration)
    api_client.user_agent = f"{state.user_agent}/{credential.cluster_name}"
    return api_client


def build_dynamic_client(
    credential: ClusterCredential,
) -> kubernetes.dynamic.DynamicClient:
    """Build a generic-resource client for a target cluster."""
    return kubernetes.dynamic.DynamicClient(build_api_client(credential))


def remove_credential_files(
    entry: ClientEntry, *, credential_dir: Path | None = None
) -> None:
    """Delete the TLS files written for the credential of a store entry."""
    directory = _credential_files_dir(
        entry.cluster_name, entry.checksum, credential_dir
    )
    shutil.rmtree(directory, ignore_errors=True)


def with_user_agent(client: Any, user_agent: str) -> Any:
    """Get a copy of an API client that sends ``user_agent`` ahead of its own
    ``User-Agent`` header.

    The copy shares the connection pool of the original, and a dynamic
    client copy also shares its discovery cache. Other objects are returned
    unchanged.
    """
    if isinstance(client, kubernetes.dynamic.DynamicClient):
        tagged = copy.copy(client)
        tagged.client = with_user_agent(client.client, user_agent)
        return tagged
    if isinstance(client, kubernetes.client.ApiClient):
        tagged = copy.copy(client)
        tagged.default_headers = dict(client.default_headers)
        # The thread pool of async requests is closed with its owner.
        tagged._pool = None
        tagged.user_agent = f"{user_agent} {client.user_agent}"
        return tagged
    return client
