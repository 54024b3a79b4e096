"""Core data models for the workload identity operator.

Defines the schemas for:
- Cluster API records (what the membership controller reads)
- Kubernetes objects the operator reads and writes (ServiceAccounts, Secrets)
- GKE Hub memberships (what gets registered and persisted)
- Credential-exchange descriptors (what workloads consume)
- Admission requests and responses (what the webhook speaks)
"""

from __future__ import annotations

import base64
import enum
import json
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

# --- Enums ---


class Operation(enum.StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


# --- Reconcile results ---


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a single reconcile call.

    An empty result means the object is settled.  ``requeue_after`` asks
    the controller to look at the object again after a fixed delay
    without counting it as a failure.
    """

    requeue: bool = False
    requeue_after: float | None = None


# --- Cluster API records ---


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("metadata") or {}


class ClusterRecord(BaseModel):
    """A GCPCluster as seen by the membership controller."""

    name: str
    namespace: str = ""
    project: str = ""
    annotations: dict[str, str] = Field(default_factory=dict)
    ready: bool = False

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ClusterRecord:
        meta = _metadata(obj)
        return cls(
            name=meta.get("name", ""),
            namespace=meta.get("namespace") or "",
            project=(obj.get("spec") or {}).get("project") or "",
            annotations=meta.get("annotations") or {},
            ready=bool((obj.get("status") or {}).get("ready")),
        )


class ControlPlaneRecord(BaseModel):
    """A KubeadmControlPlane, reduced to its readiness."""

    name: str
    namespace: str = ""
    ready: bool = False

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ControlPlaneRecord:
        meta = _metadata(obj)
        return cls(
            name=meta.get("name", ""),
            namespace=meta.get("namespace") or "",
            ready=bool((obj.get("status") or {}).get("ready")),
        )


# --- Kubernetes objects ---


class IdentityRecord(BaseModel):
    """A ServiceAccount, the workload identity a Pod runs as."""

    name: str
    namespace: str = ""
    uid: str = ""
    annotations: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> IdentityRecord:
        meta = _metadata(obj)
        return cls(
            name=meta.get("name", ""),
            namespace=meta.get("namespace") or "",
            uid=meta.get("uid") or "",
            annotations=meta.get("annotations") or {},
        )


class OwnerReference(BaseModel):
    """Back-reference that ties a dependent object to its owner's lifetime."""

    api_version: str
    kind: str
    name: str
    uid: str = ""

    @classmethod
    def for_service_account(cls, identity: IdentityRecord) -> OwnerReference:
        return cls(api_version="v1", kind="ServiceAccount", name=identity.name, uid=identity.uid)


class SecretRecord(BaseModel):
    """A Secret with its data already base64-decoded."""

    name: str
    namespace: str = ""
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    owner_references: list[OwnerReference] = Field(default_factory=list)
    data: dict[str, bytes] = Field(default_factory=dict)
    type: str = "Opaque"
    resource_version: str | None = None

    def text(self, key: str) -> str:
        """Return the value stored under *key* as text ('' when absent)."""
        return self.data.get(key, b"").decode("utf-8")


# --- GKE Hub membership ---


class Authority(BaseModel):
    """Binds a cluster's OIDC issuer and key set to a workload identity pool."""

    model_config = ConfigDict(populate_by_name=True)

    issuer: str = ""
    workload_identity_pool: str = Field("", alias="workloadIdentityPool")
    identity_provider: str = Field("", alias="identityProvider")
    oidc_jwks: bytes = Field(b"", alias="oidcJwks")

    @field_validator("oidc_jwks", mode="before")
    @classmethod
    def _decode_jwks(cls, value: Any) -> Any:
        if value is None:
            return b""
        if isinstance(value, str):
            return base64.b64decode(value)
        return value

    @field_serializer("oidc_jwks")
    def _encode_jwks(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")


class Membership(BaseModel):
    """A GKE Hub membership as persisted in the membership secret.

    ``name``, ``authority.workload_identity_pool`` and
    ``authority.identity_provider`` depend only on the project and the
    cluster name.  ``external_id`` is regenerated on every call.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    authority: Authority = Field(default_factory=Authority)
    external_id: str = Field("", alias="externalId")

    @model_validator(mode="before")
    @classmethod
    def _accept_flat_layout(cls, data: Any) -> Any:
        # Older releases persisted the pool and provider at the top level.
        if not isinstance(data, dict) or "authority" in data:
            return data
        flat_keys = ("workloadIdentityPool", "identityProvider")
        if not any(k in data for k in flat_keys):
            return data
        data = dict(data)
        data["authority"] = {k: data.pop(k) for k in flat_keys if k in data}
        return data

    @property
    def workload_identity_pool(self) -> str:
        return self.authority.workload_identity_pool

    @property
    def identity_provider(self) -> str:
        return self.authority.identity_provider

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str | bytes) -> Membership:
        return cls.model_validate_json(data)


# --- Credential-exchange descriptor ---


class CredentialSource(BaseModel):
    file: str


class CredentialConfig(BaseModel):
    """The ``external_account`` JSON document Google client libraries read
    from ``GOOGLE_APPLICATION_CREDENTIALS``."""

    type: str = "external_account"
    audience: str
    service_account_impersonation_url: str
    subject_token_type: str
    token_url: str
    credential_source: CredentialSource

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), indent=2)


# --- Admission ---


class PatchOperation(BaseModel):
    """A single RFC 6902 JSON patch operation."""

    op: str = "add"
    path: str
    value: Any = None


class AdmissionRequest(BaseModel):
    """The ``request`` part of an admission.k8s.io/v1 AdmissionReview."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    uid: str = ""
    operation: Operation
    namespace: str = ""
    name: str = ""
    pod: Any = Field(None, alias="object")


class AdmissionResponse(BaseModel):
    """The webhook's verdict, rendered back into an AdmissionReview."""

    uid: str = ""
    allowed: bool
    status_code: int | None = None
    message: str = ""
    patches: list[PatchOperation] = Field(default_factory=list)

    def to_review(self) -> dict[str, Any]:
        response: dict[str, Any] = {"uid": self.uid, "allowed": self.allowed}
        if self.status_code is not None or self.message:
            status: dict[str, Any] = {"message": self.message}
            if self.status_code is not None:
                status["code"] = self.status_code
            response["status"] = status
        if self.patches:
            patch = json.dumps([p.model_dump(mode="json") for p in self.patches])
            response["patchType"] = "JSONPatch"
            response["patch"] = base64.b64encode(patch.encode("utf-8")).decode("ascii")
        return {
            "apiVersion": "admission.k8s.io/v1",
            "kind": "AdmissionReview",
            "response": response,
        }


# --- Pod snapshot ---


class ContainerSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = ""
    env: list[dict[str, Any]] | None = None
    volume_mounts: list[dict[str, Any]] | None = Field(None, alias="volumeMounts")


class PodSpecSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    service_account_name: str = Field("", alias="serviceAccountName")
    containers: list[ContainerSnapshot] = Field(default_factory=list)
    volumes: list[dict[str, Any]] | None = None


class PodSnapshot(BaseModel):
    """The parts of a Pod the credentials injector looks at."""

    model_config = ConfigDict(extra="allow")

    metadata: dict[str, Any] = Field(default_factory=dict)
    spec: PodSpecSnapshot

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace") or ""
