"""Federation service client protocol and the GKE Hub implementation.

Built-in backend: GkeHubFederationClient (``google-cloud-gke-hub``).

Requires: ``pip install workload-identity-operator[gcp]``
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from workload_identity.models import Authority, ClusterRecord, Membership

logger = logging.getLogger(__name__)

DEFAULT_OPERATION_TIMEOUT = 300.0


def _check_gkehub_available() -> None:
    """Raise ImportError with helpful message if google-cloud-gke-hub is not installed."""
    try:
        from google.cloud import gkehub_v1beta1  # noqa: F401
    except ImportError:
        raise ImportError(
            "The 'google-cloud-gke-hub' package is required for GkeHubFederationClient. "
            "Install it with: pip install workload-identity-operator[gcp]"
        ) from None


@runtime_checkable
class FederationClient(Protocol):
    """Protocol for federation service backends.

    Any object with ``register()`` and ``get()`` methods satisfies this
    protocol.
    """

    def register(
        self, cluster: ClusterRecord, membership: Membership, membership_id: str,
    ) -> None:
        """Create the membership under *membership_id* and wait for the operation to finish.

        Raises:
            Exception: Whatever the service raised, unmodified.  Callers
                decide which errors are benign (see ``is_conflict``).
        """
        ...

    def get(self, name: str) -> Membership | None:
        """Return the membership called *name*, or None if it does not exist."""
        ...


def _error_code(exc: BaseException) -> int | None:
    code = getattr(exc, "code", None)
    return code if isinstance(code, int) else None


def is_conflict(exc: BaseException) -> bool:
    """True if *exc* reports that the resource already exists."""
    if _error_code(exc) == 409:
        return True
    grpc_code = getattr(exc, "grpc_status_code", None)
    return getattr(grpc_code, "name", None) == "ALREADY_EXISTS"


def is_not_found(exc: BaseException) -> bool:
    if _error_code(exc) == 404:
        return True
    grpc_code = getattr(exc, "grpc_status_code", None)
    return getattr(grpc_code, "name", None) == "NOT_FOUND"


def parent_path(project: str) -> str:
    return f"projects/{project}/locations/global"


class GkeHubFederationClient:
    """Registers memberships with the GKE Hub membership service.

    Uses Application Default Credentials unless a pre-built
    ``GkeHubMembershipServiceClient`` is passed in.
    """

    def __init__(
        self,
        client: Any = None,
        transport: str = "rest",
        timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        _check_gkehub_available()
        if client is None:
            from google.cloud import gkehub_v1beta1

            client = gkehub_v1beta1.GkeHubMembershipServiceClient(transport=transport)
        self._client = client
        self._timeout = timeout

    def register(
        self, cluster: ClusterRecord, membership: Membership, membership_id: str,
    ) -> None:
        from google.cloud import gkehub_v1beta1

        request = gkehub_v1beta1.CreateMembershipRequest(
            parent=parent_path(cluster.project),
            membership_id=membership_id,
            resource=gkehub_v1beta1.Membership(
                name=membership.name,
                external_id=membership.external_id,
                authority=gkehub_v1beta1.Authority(
                    issuer=membership.authority.issuer,
                    workload_identity_pool=membership.workload_identity_pool,
                    identity_provider=membership.identity_provider,
                    oidc_jwks=membership.authority.oidc_jwks,
                ),
            ),
        )
        logger.debug("Creating membership %s", membership.name)
        operation = self._client.create_membership(request=request)
        operation.result(timeout=self._timeout)
        logger.info("Registered membership %s", membership.name)

    def get(self, name: str) -> Membership | None:
        try:
            resource = self._client.get_membership(name=name)
        except Exception as exc:
            if is_not_found(exc):
                return None
            raise
        authority = resource.authority
        return Membership(
            name=resource.name,
            external_id=resource.external_id,
            authority=Authority(
                issuer=authority.issuer,
                workload_identity_pool=authority.workload_identity_pool,
                identity_provider=authority.identity_provider,
                oidc_jwks=bytes(authority.oidc_jwks),
            ),
        )
