"""Storage ports, error types and the in-memory backend.

Each component depends on the narrowest port that covers what it reads
and writes.  Any object with the listed methods satisfies a port, so
``KubernetesStore`` and ``InMemoryStore`` both plug in everywhere.

Built-in backends: InMemoryStore (development/testing) and
KubernetesStore (``workload_identity.storage.kubernetes``).
"""

from __future__ import annotations

import itertools
import threading
from collections.abc import Iterable, Iterator
from typing import Any, Protocol, runtime_checkable

from workload_identity.models import (
    ClusterRecord,
    ControlPlaneRecord,
    IdentityRecord,
    SecretRecord,
)


class StorageError(Exception):
    """Raised when a storage backend call fails."""


class NotFoundError(StorageError):
    """Raised when the requested object does not exist."""


class AlreadyExistsError(StorageError):
    """Raised when creating an object whose name is already taken."""


class ConflictError(StorageError):
    """Raised when an update loses against a concurrent write."""


# --- Ports ---


@runtime_checkable
class SecretReader(Protocol):
    def get_secret(
        self, namespace: str, name: str, timeout: float | None = None,
    ) -> SecretRecord:
        """Return the secret or raise NotFoundError."""
        ...


@runtime_checkable
class ClusterSource(SecretReader, Protocol):
    """What the membership controller reads from the management cluster."""

    def get_cluster(self, namespace: str, name: str) -> ClusterRecord:
        ...

    def get_control_plane(self, namespace: str, name: str) -> ControlPlaneRecord:
        ...


@runtime_checkable
class WorkloadCluster(Protocol):
    """What the membership controller needs from a workload cluster."""

    def list_nodes(self) -> list[dict[str, Any]]:
        ...

    def fetch_oidc_jwks(self) -> bytes:
        """GET ``{api-host}/openid/v1/jwks`` with the cluster credentials."""
        ...

    def create_secret(self, secret: SecretRecord) -> SecretRecord:
        ...


@runtime_checkable
class IdentityStore(SecretReader, Protocol):
    """What the ServiceAccount controller reads and writes."""

    def get_service_account(self, namespace: str, name: str) -> IdentityRecord:
        ...

    def create_secret(self, secret: SecretRecord) -> SecretRecord:
        ...

    def update_secret(self, secret: SecretRecord) -> SecretRecord:
        ...


@runtime_checkable
class InjectorStore(SecretReader, Protocol):
    """What the admission webhook reads."""

    def get_service_account(
        self, namespace: str, name: str, timeout: float | None = None,
    ) -> IdentityRecord:
        ...


@runtime_checkable
class Source(Protocol):
    """Feeds object keys to a controller.

    Keys are ``namespace/name`` (or ``name`` for cluster-scoped objects).
    """

    def list_keys(self) -> Iterable[str]:
        ...

    def watch_keys(self, stop: threading.Event) -> Iterator[str]:
        """Yield the key of every added or modified object until *stop* is set."""
        ...


def object_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}" if namespace else name


def split_key(key: str) -> tuple[str, str]:
    namespace, _, name = key.rpartition("/")
    return namespace, name


# --- In-memory backend ---


class InMemoryStore:
    """Thread-safe store backed by dicts.

    Implements the read and write ports above (everything except
    ``Source``, which needs a watchable backend).  Useful for development
    and tests.
    Deleting a ServiceAccount also deletes the secrets that carry an
    owner reference to it, like the Kubernetes garbage collector does.
    """

    def __init__(self, oidc_jwks: bytes = b"{}") -> None:
        self._lock = threading.Lock()
        self._versions = itertools.count(1)
        self._clusters: dict[tuple[str, str], ClusterRecord] = {}
        self._control_planes: dict[tuple[str, str], ControlPlaneRecord] = {}
        self._service_accounts: dict[tuple[str, str], IdentityRecord] = {}
        self._secrets: dict[tuple[str, str], SecretRecord] = {}
        self._nodes: list[dict[str, Any]] = []
        self._oidc_jwks = oidc_jwks

    # --- Seeding ---

    def put_cluster(self, cluster: ClusterRecord) -> None:
        with self._lock:
            self._clusters[(cluster.namespace, cluster.name)] = cluster

    def put_control_plane(self, control_plane: ControlPlaneRecord) -> None:
        with self._lock:
            key = (control_plane.namespace, control_plane.name)
            self._control_planes[key] = control_plane

    def put_service_account(self, identity: IdentityRecord) -> IdentityRecord:
        with self._lock:
            if not identity.uid:
                identity = identity.model_copy(update={"uid": f"uid-{next(self._versions)}"})
            self._service_accounts[(identity.namespace, identity.name)] = identity
            return identity

    def put_node(self, name: str, ready: bool = True) -> None:
        status = "True" if ready else "False"
        with self._lock:
            self._nodes.append({
                "metadata": {"name": name},
                "status": {"conditions": [{"type": "Ready", "status": status}]},
            })

    def set_oidc_jwks(self, oidc_jwks: bytes) -> None:
        self._oidc_jwks = oidc_jwks

    # --- Reads ---

    def get_cluster(self, namespace: str, name: str) -> ClusterRecord:
        return self._get(self._clusters, namespace, name, "GCPCluster")

    def get_control_plane(self, namespace: str, name: str) -> ControlPlaneRecord:
        return self._get(self._control_planes, namespace, name, "KubeadmControlPlane")

    def get_service_account(
        self, namespace: str, name: str, timeout: float | None = None,
    ) -> IdentityRecord:
        return self._get(self._service_accounts, namespace, name, "ServiceAccount")

    def get_secret(
        self, namespace: str, name: str, timeout: float | None = None,
    ) -> SecretRecord:
        return self._get(self._secrets, namespace, name, "Secret")

    def list_secrets(self, namespace: str | None = None) -> list[SecretRecord]:
        with self._lock:
            return [
                s for (ns, _), s in self._secrets.items()
                if namespace is None or ns == namespace
            ]

    def list_nodes(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._nodes)

    def fetch_oidc_jwks(self) -> bytes:
        return self._oidc_jwks

    # --- Writes ---

    def create_secret(self, secret: SecretRecord) -> SecretRecord:
        key = (secret.namespace, secret.name)
        with self._lock:
            if key in self._secrets:
                raise AlreadyExistsError(
                    f'secrets "{secret.name}" already exists in namespace {secret.namespace!r}'
                )
            stored = secret.model_copy(update={"resource_version": str(next(self._versions))})
            self._secrets[key] = stored
            return stored

    def update_secret(self, secret: SecretRecord) -> SecretRecord:
        key = (secret.namespace, secret.name)
        with self._lock:
            current = self._secrets.get(key)
            if current is None:
                raise NotFoundError(f'secrets "{secret.name}" not found')
            if (
                secret.resource_version is not None
                and secret.resource_version != current.resource_version
            ):
                raise ConflictError(
                    f'secrets "{secret.name}": the object has been modified'
                )
            stored = secret.model_copy(update={"resource_version": str(next(self._versions))})
            self._secrets[key] = stored
            return stored

    def delete_service_account(self, namespace: str, name: str) -> None:
        with self._lock:
            identity = self._service_accounts.pop((namespace, name), None)
            if identity is None:
                raise NotFoundError(f'serviceaccounts "{name}" not found')
            owned = [
                key for key, secret in self._secrets.items()
                if key[0] == namespace
                and any(
                    ref.kind == "ServiceAccount" and ref.name == name
                    and (not ref.uid or ref.uid == identity.uid)
                    for ref in secret.owner_references
                )
            ]
            for key in owned:
                del self._secrets[key]

    # --- Helpers ---

    def _get(self, table: dict[tuple[str, str], Any], namespace: str, name: str, kind: str) -> Any:
        with self._lock:
            obj = table.get((namespace, name))
        if obj is None:
            raise NotFoundError(f'{kind} "{name}" not found in namespace {namespace!r}')
        return obj
