"""Admission-time credential injection for Pods.

``CredentialInjector.handle`` turns an admission request into a verdict.
Only CREATE is mutated.  Any doubt about the federation state denies the
Pod rather than letting it start without credentials.

``PatchBuilder`` computes JSON-patch ``add`` operations against the
decoded Pod without touching it.
"""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from workload_identity.constants import (
    CREDENTIALS_FILE_NAME,
    CREDENTIALS_SECRET_KEY,
    DEFAULT_MEMBERSHIP_SECRET_NAMESPACE,
    ENV_GOOGLE_APPLICATION_CREDENTIALS,
    TOKEN_EXPIRATION_SECONDS,
    TOKEN_PATH,
    VOLUME_DEFAULT_MODE,
    VOLUME_MOUNT_PATH,
    VOLUME_NAME,
    credentials_secret_name,
)
from workload_identity.errors import ConfigurationError
from workload_identity.federation.membership import read_membership
from workload_identity.models import (
    AdmissionRequest,
    AdmissionResponse,
    Operation,
    PatchOperation,
    PodSnapshot,
)
from workload_identity.storage.store import InjectorStore, NotFoundError, StorageError

logger = logging.getLogger(__name__)

STATUS_BAD_REQUEST = 400
STATUS_FORBIDDEN = 403
STATUS_INTERNAL_ERROR = 500


def _unescape(token: str) -> str:
    return token.replace("~1", "/").replace("~0", "~")


class PatchBuilder:
    """Accumulates list appends against an immutable JSON document."""

    def __init__(self, document: dict[str, Any]) -> None:
        self._document = copy.deepcopy(document)
        self._appended: dict[str, int] = {}
        self._operations: list[PatchOperation] = []

    @property
    def operations(self) -> list[PatchOperation]:
        return list(self._operations)

    def resolve(self, path: str) -> Any:
        """Return the value at JSON pointer *path*, or None if absent."""
        node: Any = self._document
        for token in path.lstrip("/").split("/"):
            token = _unescape(token)
            if isinstance(node, dict):
                node = node.get(token)
            elif isinstance(node, list) and token.isdigit() and int(token) < len(node):
                node = node[int(token)]
            else:
                return None
            if node is None:
                return None
        return node

    def append(self, path: str, value: Any) -> None:
        """Append *value* to the list at *path*, creating the list if needed."""
        existing = self.resolve(path)
        pending = self._appended.get(path, 0)
        if existing is None and pending == 0:
            self._operations.append(PatchOperation(path=path, value=[value]))
        else:
            index = len(existing or []) + pending
            self._operations.append(PatchOperation(path=f"{path}/{index}", value=value))
        self._appended[path] = pending + 1


def credentials_volume(pool: str, secret_name: str) -> dict[str, Any]:
    return {
        "name": VOLUME_NAME,
        "projected": {
            "defaultMode": VOLUME_DEFAULT_MODE,
            "sources": [
                {
                    "serviceAccountToken": {
                        "audience": pool,
                        "expirationSeconds": TOKEN_EXPIRATION_SECONDS,
                        "path": TOKEN_PATH,
                    },
                },
                {
                    "secret": {
                        "name": secret_name,
                        "items": [{"key": CREDENTIALS_SECRET_KEY, "path": CREDENTIALS_FILE_NAME}],
                        "optional": False,
                    },
                },
            ],
        },
    }


def credentials_env() -> dict[str, Any]:
    return {
        "name": ENV_GOOGLE_APPLICATION_CREDENTIALS,
        "value": f"{VOLUME_MOUNT_PATH}/{CREDENTIALS_FILE_NAME}",
    }


def credentials_mount() -> dict[str, Any]:
    return {"name": VOLUME_NAME, "mountPath": VOLUME_MOUNT_PATH, "readOnly": True}


def _names(items: list[dict[str, Any]] | None) -> set[str]:
    return {item.get("name", "") for item in items or []}


def build_patches(
    raw_pod: dict[str, Any], pod: PodSnapshot, pool: str, secret_name: str,
) -> list[PatchOperation]:
    """Patch set that adds the credentials volume, env var and mounts.

    Anything already present by name is left alone.
    """
    builder = PatchBuilder(raw_pod)
    if VOLUME_NAME not in _names(pod.spec.volumes):
        builder.append("/spec/volumes", credentials_volume(pool, secret_name))
    for i, container in enumerate(pod.spec.containers):
        if ENV_GOOGLE_APPLICATION_CREDENTIALS not in _names(container.env):
            builder.append(f"/spec/containers/{i}/env", credentials_env())
        if VOLUME_NAME not in _names(container.volume_mounts):
            builder.append(f"/spec/containers/{i}/volumeMounts", credentials_mount())
    return builder.operations


class CredentialInjector:
    """Mutates newly created Pods to carry workload identity credentials.

    With ``require_identity`` set, Pods whose ServiceAccount does not
    exist are denied instead of trusting the reference.
    """

    def __init__(
        self,
        store: InjectorStore,
        membership_secret_namespace: str = DEFAULT_MEMBERSHIP_SECRET_NAMESPACE,
        require_identity: bool = True,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._secret_namespace = membership_secret_namespace
        self._require_identity = require_identity
        self._clock = _clock or time.monotonic

    def deadline_after(self, seconds: float | None) -> float | None:
        """Absolute deadline for a call that must finish within *seconds*."""
        return None if seconds is None else self._clock() + seconds

    def handle(self, request: AdmissionRequest, deadline: float | None = None) -> AdmissionResponse:
        if request.operation != Operation.CREATE:
            return AdmissionResponse(uid=request.uid, allowed=True)

        try:
            pod = PodSnapshot.model_validate(request.pod)
        except ValidationError as exc:
            logger.warning("Could not decode pod in request %s: %s", request.uid, exc)
            return self._deny(request, STATUS_BAD_REQUEST, f"could not decode pod: {exc}")

        service_account = pod.spec.service_account_name
        if not service_account:
            return self._deny(request, STATUS_FORBIDDEN, "pod has no service account")

        namespace = request.namespace or pod.namespace

        if self._require_identity:
            if self._expired(deadline):
                return self._deny(request, STATUS_INTERNAL_ERROR, "admission deadline exceeded")
            try:
                self._store.get_service_account(
                    namespace, service_account, timeout=self._remaining(deadline),
                )
            except NotFoundError:
                return self._deny(
                    request, STATUS_FORBIDDEN,
                    f"service account {namespace}/{service_account} does not exist",
                )
            except StorageError as exc:
                logger.error("Failed to look up service account %s/%s: %s",
                             namespace, service_account, exc)
                return self._deny(request, STATUS_INTERNAL_ERROR, str(exc))
            except Exception as exc:
                logger.exception(
                    "Service account lookup for %s/%s failed", namespace, service_account,
                )
                return self._deny(
                    request, STATUS_INTERNAL_ERROR, f"service account lookup failed: {exc}",
                )

        if self._expired(deadline):
            return self._deny(request, STATUS_INTERNAL_ERROR, "admission deadline exceeded")
        try:
            membership = read_membership(
                self._store, self._secret_namespace, timeout=self._remaining(deadline),
            )
        except (StorageError, ConfigurationError) as exc:
            logger.error("Failed to read membership: %s", exc)
            return self._deny(request, STATUS_INTERNAL_ERROR, f"failed to read membership: {exc}")
        except Exception as exc:
            logger.exception("Reading membership failed")
            return self._deny(request, STATUS_INTERNAL_ERROR, f"failed to read membership: {exc}")

        pool = membership.workload_identity_pool
        if not pool:
            return self._deny(request, STATUS_INTERNAL_ERROR, "membership has no workload identity pool")

        patches = build_patches(
            request.pod, pod, pool, credentials_secret_name(service_account),
        )
        logger.info(
            "Injecting workload identity credentials into pod %s/%s (%d patches)",
            namespace, request.name or pod.metadata.get("generateName", ""), len(patches),
        )
        return AdmissionResponse(uid=request.uid, allowed=True, patches=patches)

    # --- Private ---

    def _expired(self, deadline: float | None) -> bool:
        return deadline is not None and self._clock() >= deadline

    def _remaining(self, deadline: float | None) -> float | None:
        if deadline is None:
            return None
        return max(deadline - self._clock(), 0.0)

    def _deny(self, request: AdmissionRequest, code: int, message: str) -> AdmissionResponse:
        return AdmissionResponse(uid=request.uid, allowed=False, status_code=code, message=message)
