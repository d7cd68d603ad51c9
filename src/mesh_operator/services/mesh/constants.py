"""Names, labels and settings keys shared by the mesh reconcilers."""

from __future__ import annotations

FINALIZER = "operator.mesh.io/uninstall"

# Distinguished revision identity that injects namespaces labeled with
# ``istio-injection=enabled``
DEFAULT_REVISION = "default"

# Charts
ISTIOD_CHART = "istiod"
CNI_CHART = "cni"
CNI_RELEASE_NAME = "istio-cni"
ISTIOD_DEPLOYMENT = "istiod"
CNI_DAEMONSET = "istio-cni-node"
HELM_RELEASE_NAME_ANNOTATION = "meta.helm.sh/release-name"

# Settings keys
REVISION_KEY = "revision"
ISTIO_NAMESPACE_KEY = "global.istioNamespace"
CNI_ENABLED_KEY = "istio_cni.enabled"
ENABLE_NAMESPACES_BY_DEFAULT_KEY = "sidecarInjectorWebhook.enableNamespacesByDefault"

# Injection labels and annotations
INJECTION_LABEL = "istio-injection"
INJECTION_ENABLED = "enabled"
REVISION_LABEL = "istio.io/rev"
SIDECAR_INJECT_LABEL = "sidecar.istio.io/inject"
REVISION_ANNOTATION = "istio.io/rev"

# Cross-namespace ownership annotations
OWNER_ANNOTATION = "operator-sdk/primary-resource"
OWNER_TYPE_ANNOTATION = "operator-sdk/primary-resource-type"


def istiod_release_name(revision_name: str) -> str:
    """Helm release holding a revision's control plane."""
    return f"{revision_name}-{ISTIOD_CHART}"
