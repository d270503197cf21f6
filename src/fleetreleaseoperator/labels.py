"""Label, annotation and API naming constants shared by the operator and the
objects it manages.
"""

GROUP = "fleetrelease.io"
"""API group of the operator's custom resources."""

VERSION = "v1alpha1"
"""API version of the operator's custom resources."""

INSTALLATION_TARGETS = "installationtargets"

CAPACITY_TARGETS = "capacitytargets"

LB_LABEL = f"{GROUP}/lb"
"""Label identifying the Service that receives shifted traffic."""

LB_FOR_PRODUCTION_TRAFFIC = "production"

HELM_WORKAROUND_LABEL = f"{GROUP}/helm-workaround"
"""Compatibility label for charts whose Service selects pods by Helm release.

When set to ``"true"`` on an installation target, the Helm release label is
removed from the traffic-routing Service selector on install, and Deployment
names must be templated with the release name.
"""

TRUE = "true"

RELEASE_LABEL = f"{GROUP}/release"

APP_LABEL = f"{GROUP}/app"

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"

OPERATOR_NAME = "fleet-release-operator"

SECRET_CHECKSUM_ANNOTATION = f"{GROUP}/cluster-secret.checksum"
"""Marks a Secret as a cluster credential."""

SECRET_SKIP_TLS_VERIFY_ANNOTATION = (
    f"{GROUP}/cluster-secret.insecure-tls-skip-verify"
)

SECRET_API_ENDPOINT_ANNOTATION = f"{GROUP}/cluster-secret.api-endpoint"

MANIFEST_CHECKSUM_ANNOTATION = f"{GROUP}/manifest-checksum"
"""Checksum of the desired state last applied to an object."""

ANCHOR_SUFFIX = "-anchor"

HELM_RELEASE_LABEL = "release"
"""Label Helm charts conventionally select their release's pods with."""
