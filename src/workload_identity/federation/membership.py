"""Membership generation, registration and persistence.

Name, pool and identity provider are pure functions of the project and
the cluster name, so registering the same cluster twice is safe: the
second attempt hits a conflict, which counts as success.  The external
id is regenerated every time and only the first registration's copy is
kept by the service.

The create request uses ``{cluster}-workload-identity`` as the membership
id, which the identity provider URL embeds too, while the descriptor
name ends in ``-workload-identity-test``.  Existing registrations depend
on both forms.
"""

from __future__ import annotations

import logging
import uuid

from workload_identity.constants import (
    ANNOTATION_SECRET_CREATED_BY,
    ANNOTATION_SECRET_MANAGED_BY,
    CREDENTIALS_SECRET_KEY,
    MEMBERSHIP_SECRET_FINALIZER,
    MEMBERSHIP_SECRET_NAME,
    SECRET_MANAGED_BY,
)
from workload_identity.errors import MembershipConfigError
from workload_identity.federation.client import FederationClient, is_conflict, parent_path
from workload_identity.models import Authority, ClusterRecord, Membership, SecretRecord
from workload_identity.storage.store import SecretReader

logger = logging.getLogger(__name__)

ISSUER = "https://kubernetes.default.svc.cluster.local"
MEMBERSHIP_ID_SUFFIX = "workload-identity"
MEMBERSHIP_NAME_SUFFIX = "workload-identity-test"


def membership_id(cluster_name: str) -> str:
    return f"{cluster_name}-{MEMBERSHIP_ID_SUFFIX}"


def membership_name(project: str, cluster_name: str) -> str:
    return f"{parent_path(project)}/memberships/{cluster_name}-{MEMBERSHIP_NAME_SUFFIX}"


def workload_identity_pool(project: str) -> str:
    return f"{project}.svc.id.goog"


def identity_provider(project: str, cluster_membership_id: str) -> str:
    return f"https://gkehub.googleapis.com/{parent_path(project)}/memberships/{cluster_membership_id}"


def generate_membership(cluster: ClusterRecord, oidc_jwks: bytes) -> Membership:
    """Build the membership descriptor for *cluster*.

    Every field except ``external_id`` is deterministic.
    """
    return Membership(
        name=membership_name(cluster.project, cluster.name),
        external_id=str(uuid.uuid4()),
        authority=Authority(
            issuer=ISSUER,
            workload_identity_pool=workload_identity_pool(cluster.project),
            identity_provider=identity_provider(cluster.project, membership_id(cluster.name)),
            oidc_jwks=oidc_jwks,
        ),
    )


class MembershipReconciler:
    """Makes sure a cluster's membership exists in the federation service."""

    def __init__(self, client: FederationClient) -> None:
        self._client = client

    def reconcile(self, cluster: ClusterRecord, oidc_jwks: bytes) -> Membership:
        membership = generate_membership(cluster, oidc_jwks)
        try:
            self._client.register(cluster, membership, membership_id(cluster.name))
        except Exception as exc:
            if not is_conflict(exc):
                raise
            logger.info(
                "Membership %s already exists, keeping the registered copy",
                membership.name,
            )
        return membership


# --- Membership secret ---


def build_membership_secret(
    cluster: ClusterRecord, membership: Membership, namespace: str,
) -> SecretRecord:
    """The cluster-wide record the ServiceAccount controller and webhook read."""
    return SecretRecord(
        name=MEMBERSHIP_SECRET_NAME,
        namespace=namespace,
        annotations={
            ANNOTATION_SECRET_MANAGED_BY: SECRET_MANAGED_BY,
            ANNOTATION_SECRET_CREATED_BY: cluster.name,
        },
        finalizers=[MEMBERSHIP_SECRET_FINALIZER],
        data={CREDENTIALS_SECRET_KEY: membership.to_json().encode("utf-8")},
    )


def read_membership(
    store: SecretReader, namespace: str, timeout: float | None = None,
) -> Membership:
    """Load the persisted membership.

    Raises NotFoundError if the secret does not exist yet, and
    MembershipConfigError if it cannot be parsed.
    """
    secret = store.get_secret(namespace, MEMBERSHIP_SECRET_NAME, timeout=timeout)
    raw = secret.data.get(CREDENTIALS_SECRET_KEY)
    if not raw:
        raise MembershipConfigError(
            f"secret {namespace}/{MEMBERSHIP_SECRET_NAME} has no {CREDENTIALS_SECRET_KEY!r} key"
        )
    try:
        return Membership.from_json(raw)
    except ValueError as exc:
        raise MembershipConfigError(
            f"secret {namespace}/{MEMBERSHIP_SECRET_NAME} holds an invalid membership: {exc}"
        ) from exc
