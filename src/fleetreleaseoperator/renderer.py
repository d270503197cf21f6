"""Fetch, render and validate the chart of an installation target."""

from __future__ import annotations

__all__ = (
    "Chart",
    "Manifest",
    "RenderedManifestSet",
    "decode_manifests",
    "fetch_and_render_chart",
    "helm_template",
    "load_chart",
    "traffic_services",
    "validate_manifests",
)

import io
import subprocess
import tarfile
import tempfile
import zlib
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

import structlog
import yaml

from fleetreleaseoperator import labels
from fleetreleaseoperator.chartrepo import ChartFetcher
from fleetreleaseoperator.errors import (
    ChartFetchError,
    ChartRepoError,
    InvalidChartError,
    RenderManifestError,
)
from fleetreleaseoperator.target import InstallationTarget

HELM_BIN = "helm"


@dataclass(frozen=True)
class Chart:
    """A chart loaded from its archive.

    ``files`` maps paths relative to the chart directory (such as
    ``templates/deployment.yaml``) to their content.
    """

    name: str
    version: str
    metadata: Mapping[str, Any]
    values: Mapping[str, Any]
    files: Mapping[str, bytes] = field(repr=False)

    @property
    def templates(self) -> dict[str, bytes]:
        return {
            path: content
            for path, content in sorted(self.files.items())
            if path.startswith("templates/")
        }


@dataclass(frozen=True)
class Manifest:
    """One Kubernetes object rendered from a chart."""

    api_version: str
    kind: str
    name: str
    body: Mapping[str, Any]

    @property
    def labels(self) -> Mapping[str, str]:
        return self.body["metadata"].get("labels") or {}

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.api_version, self.kind, self.name)


@dataclass(frozen=True)
class RenderedManifestSet:
    """The objects rendered from one chart, in the order the template engine
    produced them.
    """

    manifests: tuple[Manifest, ...]

    def __iter__(self) -> Iterator[Manifest]:
        return iter(self.manifests)

    def __len__(self) -> int:
        return len(self.manifests)

    def by_kind(self, kind: str) -> list[Manifest]:
        return [m for m in self.manifests if m.kind == kind]


TemplateEngine = Callable[[Chart, str, str, Mapping[str, Any] | None], str]
"""Render a chart's templates as a multi-document YAML stream, given the
release name, namespace and values.
"""


def load_chart(archive: bytes) -> Chart:
    """Load a chart from a gzipped tar archive.

    Raises
    ------
    fleetreleaseoperator.errors.RenderManifestError
        Raised if the archive cannot be read or holds no ``Chart.yaml``.
    """
    try:
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tar:
            members = {
                member.name: tar.extractfile(member).read()
                for member in tar.getmembers()
                if member.isfile()
            }
    except (tarfile.TarError, OSError, EOFError, zlib.error) as err:
        raise RenderManifestError(
            f"failed to read chart archive: {err}"
        ) from err

    for path in members:
        if _is_unsafe_path(path):
            raise RenderManifestError(
                f"chart archive member {path!r} escapes the chart directory"
            )

    roots = [
        PurePosixPath(path).parts[0]
        for path in members
        if len(PurePosixPath(path).parts) == 2
        and PurePosixPath(path).name == "Chart.yaml"
    ]
    if len(roots) != 1:
        raise RenderManifestError(
            "chart archive must contain exactly one <chart>/Chart.yaml"
        )
    root = roots[0]

    files = {}
    for path, content in members.items():
        parts = PurePosixPath(path).parts
        if len(parts) > 1 and parts[0] == root:
            files[str(PurePosixPath(*parts[1:]))] = content

    try:
        metadata = yaml.safe_load(files["Chart.yaml"]) or {}
        values = yaml.safe_load(files.get("values.yaml", b"")) or {}
    except yaml.YAMLError as err:
        raise RenderManifestError(
            f"chart {root!r} has invalid metadata: {err}"
        ) from err
    if not isinstance(metadata, dict) or "name" not in metadata:
        raise RenderManifestError(f"chart {root!r} has no name in Chart.yaml")

    return Chart(
        name=str(metadata["name"]),
        version=str(metadata.get("version", "")),
        metadata=metadata,
        values=values,
        files=files,
    )


def _is_unsafe_path(path: str) -> bool:
    parts = PurePosixPath(path).parts
    return PurePosixPath(path).is_absolute() or ".." in parts


def helm_template(
    chart: Chart,
    release_name: str,
    namespace: str,
    values: Mapping[str, Any] | None,
) -> str:
    """Render a chart with :command:`helm template`.

    Raises
    ------
    fleetreleaseoperator.errors.RenderManifestError
        Raised if a chart file would be written outside the chart
        directory, or if :command:`helm` fails.
    """
    logger = structlog.getLogger(__name__)
    if chart.name in ("", ".", "..") or "/" in chart.name:
        raise RenderManifestError(f"invalid chart name {chart.name!r}")
    with tempfile.TemporaryDirectory() as tempdirname:
        tempdir = Path(tempdirname)
        chart_dir = tempdir / chart.name
        for path, content in chart.files.items():
            target = chart_dir / path
            if _is_unsafe_path(path) or not target.resolve().is_relative_to(
                chart_dir.resolve()
            ):
                raise RenderManifestError(
                    f"chart file {path!r} escapes the chart directory"
                )
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)

        values_path = tempdir / "values.yaml"
        values_path.write_text(yaml.safe_dump(dict(values or {})))

        helm_args = [
            HELM_BIN,
            "template",
            release_name,
            str(chart_dir),
            "--namespace",
            namespace,
            "--values",
            str(values_path),
        ]
        try:
            result = subprocess.run(args=helm_args, capture_output=True)
        except OSError as err:
            raise RenderManifestError(f"could not run helm: {err}") from err
        if result.returncode != 0:
            logger.debug(
                "helm template failed",
                args=" ".join(helm_args),
                status=result.returncode,
            )
            raise RenderManifestError(
                f"helm template failed for chart {chart.name!r}: "
                f"{result.stderr.decode('utf-8', errors='replace').strip()}"
            )
        try:
            return result.stdout.decode("utf-8")
        except UnicodeDecodeError as err:
            raise RenderManifestError(
                f"helm template output for chart {chart.name!r} "
                f"is not valid UTF-8: {err}"
            ) from err


def decode_manifests(rendered: str) -> RenderedManifestSet:
    """Decode a multi-document YAML stream into typed manifests.

    Raises
    ------
    fleetreleaseoperator.errors.RenderManifestError
        Raised if a document is not valid YAML or is not a Kubernetes object
        with an ``apiVersion``, ``kind`` and ``metadata.name``.
    """
    try:
        documents = list(yaml.safe_load_all(rendered))
    except yaml.YAMLError as err:
        raise RenderManifestError(
            f"rendered chart is not valid YAML: {err}"
        ) from err

    manifests = []
    for index, document in enumerate(documents):
        if document is None:
            continue
        if not isinstance(document, dict):
            raise RenderManifestError(
                f"rendered document {index} is not an object"
            )
        api_version = document.get("apiVersion")
        kind = document.get("kind")
        metadata = document.get("metadata")
        if not api_version or not kind:
            raise RenderManifestError(
                f"rendered document {index} has no apiVersion or kind"
            )
        if not isinstance(metadata, dict) or not metadata.get("name"):
            raise RenderManifestError(
                f"rendered {kind} at document {index} has no metadata.name"
            )
        manifests.append(
            Manifest(
                api_version=str(api_version),
                kind=str(kind),
                name=str(metadata["name"]),
                body=document,
            )
        )
    return RenderedManifestSet(tuple(manifests))


def traffic_services(manifests: RenderedManifestSet) -> list[Manifest]:
    """The v1 Services carrying the traffic-routing label."""
    return [
        m
        for m in manifests.by_kind("Service")
        if m.api_version == "v1"
        and m.labels.get(labels.LB_LABEL) == labels.LB_FOR_PRODUCTION_TRAFFIC
    ]


def validate_manifests(
    manifests: RenderedManifestSet, target: InstallationTarget
) -> None:
    """Check that a rendered chart can be rolled out.

    Exactly one v1 Service must carry the traffic-routing label. Then, if
    the target has the Helm compatibility label, every Deployment's name must
    start with the release name, since the Service will select pods of every
    release. Without it, the traffic-routing Service must not select pods by
    Helm release.

    Raises
    ------
    fleetreleaseoperator.errors.InvalidChartError
    """
    services = traffic_services(manifests)
    if len(services) != 1:
        raise InvalidChartError(
            f"one and only one v1.Service object with label "
            f'"{labels.LB_LABEL}" is required, but {len(services)} found '
            f"instead"
        )
    service = services[0]

    if not target.helm_workaround:
        selector = (service.body.get("spec") or {}).get("selector") or {}
        if labels.HELM_RELEASE_LABEL in selector:
            raise InvalidChartError(
                f"Service {service.name!r} selects pods with the "
                f"{labels.HELM_RELEASE_LABEL!r} label, so it only reaches "
                f"the pods of a single release. Remove it from the selector "
                f'or label the installation target with "'
                f'{labels.HELM_WORKAROUND_LABEL}: {labels.TRUE}". '
                f"This will break traffic shifting logic."
            )
        return

    for deployment in manifests.by_kind("Deployment"):
        if not deployment.name.startswith(target.release_name):
            raise InvalidChartError(
                f"Deployment {deployment.name!r} has a name that does not "
                f"start with the release name {target.release_name!r}. "
                f"Template it with {{{{ .Release.Name }}}} in the chart, "
                f"otherwise every release reuses the same Deployment. "
                f"This will break traffic shifting logic."
            )


def fetch_and_render_chart(
    fetcher: ChartFetcher,
    target: InstallationTarget,
    *,
    engine: TemplateEngine = helm_template,
    logger: Any | None = None,
) -> RenderedManifestSet:
    """Fetch the chart of an installation target, render it with the
    target's values, and validate the result.

    Parameters
    ----------
    fetcher : callable
        Returns the chart archive for a `ChartReference` (see
        `fleetreleaseoperator.chartrepo.fetch_chart_func`).
    target : `InstallationTarget`
        The installation target.
    engine : callable, optional
        The template engine; :command:`helm template` by default.
    logger : optional
        Logger to use. Defaults to a structlog logger.

    Returns
    -------
    manifests : `RenderedManifestSet`

    Raises
    ------
    fleetreleaseoperator.errors.ChartFetchError
        Raised if the chart cannot be resolved or retrieved.
    fleetreleaseoperator.errors.RenderManifestError
        Raised if the archive is corrupt or renders objects that cannot be
        decoded.
    fleetreleaseoperator.errors.InvalidChartError
        Raised if the rendered objects violate the rollout conventions.
    """
    if logger is None:
        logger = structlog.getLogger(__name__)

    try:
        archive = fetcher(target.chart)
    except ChartRepoError as err:
        raise ChartFetchError(str(target.chart), err) from err

    chart = load_chart(archive)
    rendered = engine(
        chart, target.release_name, target.namespace, target.values
    )
    manifests = decode_manifests(rendered)
    validate_manifests(manifests, target)
    logger.info(
        f"Rendered {len(manifests)} objects from chart {target.chart}"
    )
    return manifests
