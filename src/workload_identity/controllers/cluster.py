"""GCPCluster controller: registers enabled clusters with GKE Hub.

Each reconcile walks the same gate, from the cheapest check to the most
expensive one:

1. cluster gone or feature annotation absent -> nothing to do
2. cluster not ready -> nothing to do (the next update triggers again)
3. control plane not ready -> look again after ``recheck_after`` seconds
4. kubeconfig secret missing or unparsable -> error, retried with backoff
5. otherwise register the membership and persist the membership secret
   on the workload cluster
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from workload_identity.constants import (
    ANNOTATION_WORKLOAD_IDENTITY_ENABLED,
    DEFAULT_MEMBERSHIP_SECRET_NAMESPACE,
    KUBECONFIG_SECRET_KEY,
    kubeconfig_secret_name,
)
from workload_identity.errors import KubeconfigError
from workload_identity.federation.membership import (
    MembershipReconciler,
    build_membership_secret,
)
from workload_identity.models import ReconcileResult
from workload_identity.storage.store import (
    AlreadyExistsError,
    ClusterSource,
    NotFoundError,
    WorkloadCluster,
)

logger = logging.getLogger(__name__)

DEFAULT_RECHECK_AFTER = 15.0


def has_ready_node(nodes: list[dict[str, Any]]) -> bool:
    for node in nodes:
        for condition in (node.get("status") or {}).get("conditions") or []:
            if condition.get("type") == "Ready" and condition.get("status") == "True":
                return True
    return False


class ClusterReconciler:
    """Reconciles one GCPCluster per call."""

    def __init__(
        self,
        source: ClusterSource,
        memberships: MembershipReconciler,
        connect: Callable[[bytes], WorkloadCluster],
        membership_secret_namespace: str = DEFAULT_MEMBERSHIP_SECRET_NAMESPACE,
        recheck_after: float = DEFAULT_RECHECK_AFTER,
    ) -> None:
        self._source = source
        self._memberships = memberships
        self._connect = connect
        self._secret_namespace = membership_secret_namespace
        self._recheck_after = recheck_after

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        try:
            cluster = self._source.get_cluster(namespace, name)
        except NotFoundError:
            logger.debug("GCPCluster %s/%s is gone", namespace, name)
            return ReconcileResult()

        if ANNOTATION_WORKLOAD_IDENTITY_ENABLED not in cluster.annotations:
            logger.debug("Workload identity not enabled for %s/%s", namespace, name)
            return ReconcileResult()

        if not cluster.ready:
            logger.debug("GCPCluster %s/%s is not ready yet", namespace, name)
            return ReconcileResult()

        if not self._control_plane_ready(namespace, name):
            logger.info(
                "Control plane of %s/%s is not ready, checking again in %ss",
                namespace, name, self._recheck_after,
            )
            return ReconcileResult(requeue=True, requeue_after=self._recheck_after)

        workload = self._connect_workload(namespace, name)

        if not has_ready_node(workload.list_nodes()):
            logger.info(
                "Workload cluster %s/%s has no ready nodes, checking again in %ss",
                namespace, name, self._recheck_after,
            )
            return ReconcileResult(requeue=True, requeue_after=self._recheck_after)

        oidc_jwks = workload.fetch_oidc_jwks()
        membership = self._memberships.reconcile(cluster, oidc_jwks)

        secret = build_membership_secret(cluster, membership, self._secret_namespace)
        try:
            workload.create_secret(secret)
            logger.info(
                "Created membership secret %s/%s for cluster %s",
                secret.namespace, secret.name, name,
            )
        except AlreadyExistsError:
            logger.debug("Membership secret for cluster %s already exists", name)
        return ReconcileResult()

    def _control_plane_ready(self, namespace: str, name: str) -> bool:
        try:
            return self._source.get_control_plane(namespace, name).ready
        except NotFoundError:
            return False

    def _connect_workload(self, namespace: str, name: str) -> WorkloadCluster:
        secret_name = kubeconfig_secret_name(name)
        secret = self._source.get_secret(namespace, secret_name)
        kubeconfig = secret.data.get(KUBECONFIG_SECRET_KEY)
        if not kubeconfig:
            raise KubeconfigError(
                f"secret {namespace}/{secret_name} has no {KUBECONFIG_SECRET_KEY!r} key"
            )
        return self._connect(kubeconfig)
