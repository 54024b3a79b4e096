"""KubernetesStore: storage ports on the official ``kubernetes`` client.

Supports a kubeconfig file, in-cluster config, or a pre-built ApiClient
(workload clusters are reached through ``connect_workload_cluster``,
which builds one from the kubeconfig that Cluster API stores in the
management cluster).
"""

from __future__ import annotations

import base64
import contextlib
import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from typing import Any

import yaml

from workload_identity.errors import KubeconfigError
from workload_identity.models import (
    ClusterRecord,
    ControlPlaneRecord,
    IdentityRecord,
    OwnerReference,
    SecretRecord,
)
from workload_identity.storage.store import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    StorageError,
    object_key,
)

logger = logging.getLogger(__name__)

GCP_CLUSTER_GROUP = "infrastructure.cluster.x-k8s.io"
GCP_CLUSTER_VERSION = "v1beta1"
GCP_CLUSTER_PLURAL = "gcpclusters"

CONTROL_PLANE_GROUP = "controlplane.cluster.x-k8s.io"
CONTROL_PLANE_VERSION = "v1beta1"
CONTROL_PLANE_PLURAL = "kubeadmcontrolplanes"

OIDC_JWKS_PATH = "/openid/v1/jwks"

# Server-side timeout for a single watch request; the stream is reopened after it.
WATCH_TIMEOUT_SECONDS = 300


def _check_kubernetes_available() -> None:
    """Raise ImportError with helpful message if kubernetes is not installed."""
    try:
        import kubernetes  # noqa: F401
    except ImportError:
        raise ImportError(
            "The 'kubernetes' package is required for KubernetesStore. "
            "Install it with: pip install workload-identity-operator"
        ) from None


@contextlib.contextmanager
def _translate_api_errors(kind: str, name: str, *, creating: bool = False) -> Iterator[None]:
    """Map ``ApiException`` statuses onto storage errors."""
    try:
        yield
    except Exception as exc:
        # Detect kubernetes ApiException by class name to avoid import
        if type(exc).__name__ != "ApiException":
            raise
        status = getattr(exc, "status", None)
        if status == 404:
            raise NotFoundError(f'{kind} "{name}" not found') from exc
        if status == 409:
            if creating:
                raise AlreadyExistsError(f'{kind} "{name}" already exists') from exc
            raise ConflictError(f'{kind} "{name}": {exc.reason}') from exc
        raise StorageError(f"K8s API error ({status}) on {kind} {name!r}: {exc.reason}") from exc


class KubernetesStore:
    """Reads and writes cluster objects through the Kubernetes API.

    Implements ``ClusterSource``, ``WorkloadCluster``, ``IdentityStore``
    and ``InjectorStore``.

    Requires: ``pip install workload-identity-operator``
    """

    def __init__(
        self,
        api_client: Any = None,
        kubeconfig: str | None = None,
        context: str | None = None,
        in_cluster: bool = False,
    ) -> None:
        _check_kubernetes_available()
        self._api_client = api_client
        self._kubeconfig = kubeconfig
        self._context = context
        self._in_cluster = in_cluster
        self._lock = threading.Lock()

    # --- Private: client setup ---

    def _get_api_client(self) -> Any:
        """Build the ApiClient from constructor config on first use."""
        with self._lock:
            if self._api_client is not None:
                return self._api_client

            from kubernetes import client, config

            if self._in_cluster:
                config.load_incluster_config()
            else:
                kwargs: dict[str, Any] = {}
                if self._kubeconfig:
                    kwargs["config_file"] = self._kubeconfig
                if self._context:
                    kwargs["context"] = self._context
                config.load_kube_config(**kwargs)
            self._api_client = client.ApiClient()
            return self._api_client

    def _core_api(self) -> Any:
        from kubernetes import client

        return client.CoreV1Api(self._get_api_client())

    def _custom_api(self) -> Any:
        from kubernetes import client

        return client.CustomObjectsApi(self._get_api_client())

    def _to_dict(self, k8s_object: Any) -> dict[str, Any]:
        """Convert a kubernetes client object to its wire-format dict."""
        if isinstance(k8s_object, dict):
            return k8s_object
        return self._get_api_client().sanitize_for_serialization(k8s_object)

    # --- Cluster API ---

    def get_cluster(self, namespace: str, name: str) -> ClusterRecord:
        with _translate_api_errors("gcpclusters", name):
            obj = self._custom_api().get_namespaced_custom_object(
                GCP_CLUSTER_GROUP, GCP_CLUSTER_VERSION, namespace, GCP_CLUSTER_PLURAL, name,
            )
        return ClusterRecord.from_object(obj)

    def get_control_plane(self, namespace: str, name: str) -> ControlPlaneRecord:
        with _translate_api_errors("kubeadmcontrolplanes", name):
            obj = self._custom_api().get_namespaced_custom_object(
                CONTROL_PLANE_GROUP, CONTROL_PLANE_VERSION, namespace, CONTROL_PLANE_PLURAL, name,
            )
        return ControlPlaneRecord.from_object(obj)

    # --- Core objects ---

    def get_service_account(
        self, namespace: str, name: str, timeout: float | None = None,
    ) -> IdentityRecord:
        with _translate_api_errors("serviceaccounts", name):
            obj = self._core_api().read_namespaced_service_account(
                name, namespace, _request_timeout=timeout,
            )
        return IdentityRecord.from_object(self._to_dict(obj))

    def get_secret(
        self, namespace: str, name: str, timeout: float | None = None,
    ) -> SecretRecord:
        with _translate_api_errors("secrets", name):
            obj = self._core_api().read_namespaced_secret(
                name, namespace, _request_timeout=timeout,
            )
        return secret_from_object(self._to_dict(obj))

    def create_secret(self, secret: SecretRecord) -> SecretRecord:
        with _translate_api_errors("secrets", secret.name, creating=True):
            obj = self._core_api().create_namespaced_secret(
                secret.namespace, secret_to_object(secret),
            )
        logger.debug("Created secret %s/%s", secret.namespace, secret.name)
        return secret_from_object(self._to_dict(obj))

    def update_secret(self, secret: SecretRecord) -> SecretRecord:
        with _translate_api_errors("secrets", secret.name):
            obj = self._core_api().replace_namespaced_secret(
                secret.name, secret.namespace, secret_to_object(secret),
            )
        logger.debug("Updated secret %s/%s", secret.namespace, secret.name)
        return secret_from_object(self._to_dict(obj))

    def list_nodes(self) -> list[dict[str, Any]]:
        with _translate_api_errors("nodes", ""):
            result = self._core_api().list_node()
        return list(self._to_dict(result).get("items") or [])

    def fetch_oidc_jwks(self) -> bytes:
        """Return the cluster's OIDC key set from ``/openid/v1/jwks``."""
        api_client = self._get_api_client()
        with _translate_api_errors("openid", OIDC_JWKS_PATH):
            response = api_client.call_api(
                OIDC_JWKS_PATH,
                "GET",
                header_params={"Accept": "application/json"},
                auth_settings=["BearerToken"],
                _preload_content=False,
                _return_http_data_only=True,
            )
        return response.data

    # --- Watch sources ---

    def cluster_source(self) -> KubernetesSource:
        """Keys of every GCPCluster in the management cluster."""
        api = self._custom_api()
        return KubernetesSource(
            api.list_cluster_custom_object,
            group=GCP_CLUSTER_GROUP,
            version=GCP_CLUSTER_VERSION,
            plural=GCP_CLUSTER_PLURAL,
        )

    def service_account_source(self) -> KubernetesSource:
        """Keys of every ServiceAccount in the cluster."""
        return KubernetesSource(self._core_api().list_service_account_for_all_namespaces)


class KubernetesSource:
    """List-then-watch key source over a kubernetes list function."""

    def __init__(self, list_func: Callable[..., Any], **kwargs: Any) -> None:
        self._list_func = list_func
        self._kwargs = kwargs

    def list_keys(self) -> Iterable[str]:
        result = self._list_func(**self._kwargs)
        items = result["items"] if isinstance(result, dict) else result.items
        return [_key_of(item) for item in items or []]

    def watch_keys(self, stop: threading.Event) -> Iterator[str]:
        from kubernetes import watch

        while not stop.is_set():
            w = watch.Watch()
            for event in w.stream(
                self._list_func, timeout_seconds=WATCH_TIMEOUT_SECONDS, **self._kwargs,
            ):
                if stop.is_set():
                    w.stop()
                    return
                if event.get("type") in ("ADDED", "MODIFIED"):
                    yield _key_of(event["object"])


def _key_of(obj: Any) -> str:
    if isinstance(obj, dict):
        meta = obj.get("metadata") or {}
        return object_key(meta.get("namespace") or "", meta.get("name") or "")
    return object_key(obj.metadata.namespace or "", obj.metadata.name)


# --- Secret conversion ---


def secret_to_object(secret: SecretRecord) -> dict[str, Any]:
    """Render a SecretRecord as a v1 Secret request body."""
    metadata: dict[str, Any] = {"name": secret.name, "namespace": secret.namespace}
    if secret.annotations:
        metadata["annotations"] = dict(secret.annotations)
    if secret.finalizers:
        metadata["finalizers"] = list(secret.finalizers)
    if secret.owner_references:
        metadata["ownerReferences"] = [
            {"apiVersion": ref.api_version, "kind": ref.kind, "name": ref.name, "uid": ref.uid}
            for ref in secret.owner_references
        ]
    if secret.resource_version:
        metadata["resourceVersion"] = secret.resource_version
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": metadata,
        "type": secret.type,
        "data": {
            key: base64.b64encode(value).decode("ascii")
            for key, value in secret.data.items()
        },
    }


def secret_from_object(obj: dict[str, Any]) -> SecretRecord:
    meta = obj.get("metadata") or {}
    return SecretRecord(
        name=meta.get("name", ""),
        namespace=meta.get("namespace") or "",
        annotations=meta.get("annotations") or {},
        finalizers=meta.get("finalizers") or [],
        owner_references=[
            OwnerReference(
                api_version=ref.get("apiVersion", ""),
                kind=ref.get("kind", ""),
                name=ref.get("name", ""),
                uid=ref.get("uid") or "",
            )
            for ref in meta.get("ownerReferences") or []
        ],
        data={
            key: base64.b64decode(value)
            for key, value in (obj.get("data") or {}).items()
        },
        type=obj.get("type") or "Opaque",
        resource_version=meta.get("resourceVersion"),
    )


# --- Workload clusters ---


def connect_workload_cluster(kubeconfig: bytes) -> KubernetesStore:
    """Build a store bound to the cluster described by *kubeconfig*.

    Raises KubeconfigError if the bytes are not a usable kubeconfig.
    """
    _check_kubernetes_available()
    from kubernetes import config

    try:
        data = yaml.safe_load(kubeconfig)
    except yaml.YAMLError as exc:
        raise KubeconfigError(f"kubeconfig is not valid YAML: {exc}") from exc
    if not isinstance(data, dict) or not data.get("clusters"):
        raise KubeconfigError("kubeconfig does not define any clusters")

    try:
        api_client = config.new_client_from_config_dict(data)
    except config.ConfigException as exc:
        raise KubeconfigError(f"invalid kubeconfig: {exc}") from exc
    return KubernetesStore(api_client=api_client)
