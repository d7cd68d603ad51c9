"""Kubernetes API access for the operator.

``KubernetesClient`` owns the process-wide client configuration, hands out
the API groups the operator uses and turns every failure the
kubernetes library can raise into a ``KubernetesError`` subclass.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from urllib3.exceptions import HTTPError as TransportError
from urllib3.exceptions import TimeoutError as TransportTimeout

from mesh_operator.integrations.kubernetes.exceptions import (
    KubernetesAuthError,
    KubernetesConflictError,
    KubernetesConnectionError,
    KubernetesError,
    KubernetesNotFoundError,
    KubernetesNotReadyError,
    KubernetesTimeoutError,
    KubernetesValidationError,
)

if TYPE_CHECKING:
    from kubernetes.client import (
        AdmissionregistrationV1Api,
        AppsV1Api,
        AutoscalingV2Api,
        CoreV1Api,
        CustomObjectsApi,
        PolicyV1Api,
        RbacAuthorizationV1Api,
    )

    from mesh_operator.integrations.kubernetes.config import KubernetesConfig

logger = structlog.get_logger()

# Returned with a 403 while aggregated cluster roles lag behind a new role
RBAC_NOT_HELD_MESSAGE = "attempting to grant RBAC permissions not currently held"

IN_CLUSTER = "in-cluster"

# Errors about one named object
_RESOURCE_ERRORS: dict[int, type[KubernetesError]] = {
    404: KubernetesNotFoundError,
    409: KubernetesConflictError,
}

# Errors about the request as a whole; the response reason becomes the message
_REQUEST_ERRORS: dict[int, type[KubernetesError]] = {
    400: KubernetesValidationError,
    401: KubernetesAuthError,
    403: KubernetesAuthError,
    422: KubernetesValidationError,
    503: KubernetesNotReadyError,
}

# Worth another attempt with the same request
TRANSIENT_ERRORS = (KubernetesConnectionError, KubernetesTimeoutError)


class KubernetesClient:
    """Configured entry point to the Kubernetes API.

    API group objects are created on first use and dropped on ``close``.
    Usable as a context manager:

        with KubernetesClient(KubernetesConfig()) as client:
            client.core_v1.list_namespace()
    """

    def __init__(self, config: KubernetesConfig) -> None:
        self._config = config
        self._apis: dict[str, Any] = {}
        self._current_context = self._load_config()
        logger.info("kubernetes_client_initialized", context=self._current_context)

    def _load_config(self) -> str:
        """Load cluster credentials and return the name of the context in use.

        ``in_cluster`` True uses the service account only, False uses the
        kubeconfig only, and None tries the kubeconfig first.
        """
        from kubernetes import config
        from kubernetes.config import ConfigException

        if not self._config.in_cluster:
            try:
                config.load_kube_config(
                    config_file=self._config.kubeconfig,
                    context=self._config.context,
                )
            except ConfigException as e:
                if self._config.in_cluster is False:
                    raise KubernetesConnectionError(
                        message="Cannot load kubeconfig and in-cluster loading is disabled",
                        original_error=e,
                    ) from e
                logger.debug("kubeconfig_unavailable", error=str(e))
            else:
                logger.debug("loaded_kubeconfig", kubeconfig=self._config.kubeconfig)
                return self._config.context or "current-context"

        try:
            config.load_incluster_config()
        except ConfigException as e:
            raise KubernetesConnectionError(
                message="No usable kubeconfig and not running inside a cluster",
                original_error=e,
            ) from e
        return IN_CLUSTER

    def _api(self, name: str) -> Any:
        if name not in self._apis:
            import kubernetes.client

            self._apis[name] = getattr(kubernetes.client, name)()
        return self._apis[name]

    @property
    def core_v1(self) -> CoreV1Api:
        """Namespaces and pods."""
        return self._api("CoreV1Api")

    @property
    def apps_v1(self) -> AppsV1Api:
        """Deployments and daemon sets."""
        return self._api("AppsV1Api")

    @property
    def custom_objects(self) -> CustomObjectsApi:
        """Mesh and MeshRevision objects."""
        return self._api("CustomObjectsApi")

    @property
    def rbac_v1(self) -> RbacAuthorizationV1Api:
        return self._api("RbacAuthorizationV1Api")

    @property
    def policy_v1(self) -> PolicyV1Api:
        return self._api("PolicyV1Api")

    @property
    def autoscaling_v2(self) -> AutoscalingV2Api:
        return self._api("AutoscalingV2Api")

    @property
    def admissionregistration_v1(self) -> AdmissionregistrationV1Api:
        """Mutating and validating webhook configurations."""
        return self._api("AdmissionregistrationV1Api")

    @staticmethod
    def translate_api_exception(
        e: Exception,
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
        timeout_seconds: int | None = None,
    ) -> KubernetesError:
        """Map any exception raised by an API call to a ``KubernetesError``.

        Transport failures become connection or timeout errors. Responses
        are classified by status; a 403 caused by lagging RBAC aggregation
        counts as not ready rather than forbidden.

        Args:
            e: The exception raised by the kubernetes library.
            resource_type: Kind of the object the call addressed.
            resource_name: Name of the object the call addressed.
            namespace: Namespace of the object, if namespaced.
            timeout_seconds: Request timeout in effect, for timeout messages.
        """
        from kubernetes.client import ApiException

        if isinstance(e, KubernetesError):
            return e

        if isinstance(e, (TransportTimeout, TimeoutError)):
            return KubernetesTimeoutError(timeout_seconds=timeout_seconds)
        if isinstance(e, (TransportError, OSError)):
            return KubernetesConnectionError(message=str(e), original_error=e)

        where = {
            "resource_type": resource_type,
            "resource_name": resource_name,
            "namespace": namespace,
        }
        if not isinstance(e, ApiException):
            return KubernetesError(message=str(e), **where)

        status = e.status
        body = e.body if isinstance(e.body, str) else ""
        if status == 403 and RBAC_NOT_HELD_MESSAGE in body:
            return KubernetesNotReadyError(message=e.reason, status_code=status)
        if status in _RESOURCE_ERRORS:
            return _RESOURCE_ERRORS[status](**where)
        if status in _REQUEST_ERRORS:
            return _REQUEST_ERRORS[status](message=e.reason, status_code=status)
        return KubernetesError(
            message=e.reason or f"Kubernetes API error: {status}",
            status_code=status,
            **where,
        )

    def make_retry_decorator(self) -> Any:
        """Tenacity decorator retrying transient errors with exponential backoff."""
        return retry(
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            stop=stop_after_attempt(self._config.retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            reraise=True,
        )

    @property
    def request_timeout(self) -> int:
        """Seconds allowed for each API request."""
        return self._config.request_timeout

    def get_current_context(self) -> str:
        return self._current_context

    def close(self) -> None:
        self._apis.clear()
        logger.debug("kubernetes_client_closed")

    def __enter__(self) -> KubernetesClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
