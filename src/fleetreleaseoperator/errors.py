"""Exception hierarchy for the fleet-release-operator."""

__all__ = (
    "ApplyError",
    "ChartError",
    "ChartFetchError",
    "ChartNotFoundError",
    "ChartRepoError",
    "ChartTransportError",
    "ClusterClientError",
    "ClusterCredentialInvalid",
    "ClusterNotReady",
    "CredentialError",
    "FleetReleaseError",
    "InvalidChartError",
    "RenderManifestError",
)


class FleetReleaseError(Exception):
    """Base exception for all errors raised by this package."""

    retryable = False
    """Whether retrying the same operation without any change can succeed."""

    @property
    def kind(self) -> str:
        """The error kind, as recorded in status condition reasons."""
        return type(self).__name__


class ChartRepoError(FleetReleaseError):
    """Base class for errors raised by a chart fetcher."""

    retryable = True


class ChartNotFoundError(ChartRepoError):
    """Raised when a chart name or version cannot be resolved in its
    repository.
    """


class ChartTransportError(ChartRepoError):
    """Raised when a chart repository cannot be reached or answers with an
    error.
    """


class ChartError(FleetReleaseError):
    """Base class for failures of the fetch, render and validate pipeline."""


class ChartFetchError(ChartError):
    """Raised when the chart for an installation target cannot be fetched."""

    retryable = True

    def __init__(self, chart: str, cause: Exception) -> None:
        super().__init__(f"failed to fetch chart {chart}: {cause}")
        self.chart = chart
        self.cause = cause


class RenderManifestError(ChartError):
    """Raised when a chart archive or its rendered output cannot be decoded."""


class InvalidChartError(ChartError):
    """Raised when a rendered chart violates the rollout conventions."""


class ClusterClientError(FleetReleaseError):
    """Base class for errors raised by the cluster client store."""

    retryable = True

    def __init__(self, cluster: str, message: str) -> None:
        super().__init__(message)
        self.cluster = cluster


class ClusterNotReady(ClusterClientError):
    """Raised when no credential has been observed yet for a cluster."""

    def __init__(self, cluster: str) -> None:
        super().__init__(
            cluster, f"cluster {cluster!r} has no client ready yet"
        )


class ClusterCredentialInvalid(ClusterClientError):
    """Raised when the last attempt to build a cluster's clients failed."""

    def __init__(self, cluster: str, reason: str) -> None:
        super().__init__(
            cluster,
            f"cluster {cluster!r} credential could not be used: {reason}",
        )
        self.reason = reason


class CredentialError(FleetReleaseError):
    """Raised by client builders when TLS material in a credential secret is
    missing or malformed.
    """


class ApplyError(FleetReleaseError):
    """Raised when a target cluster rejects an object being applied."""

    retryable = True

    def __init__(
        self, cluster: str, kind: str, name: str, message: str
    ) -> None:
        super().__init__(
            f"failed to apply {kind} {name!r} on cluster {cluster!r}: "
            f"{message}"
        )
        self.cluster = cluster
        self.object_kind = kind
        self.object_name = name
