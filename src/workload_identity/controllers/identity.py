"""ServiceAccount controller: writes per-identity credential secrets."""

from __future__ import annotations

import logging

from workload_identity.constants import (
    ANNOTATION_GCP_SERVICE_ACCOUNT,
    ANNOTATION_SECRET_MANAGED_BY,
    ANNOTATION_SECRET_SERVICE_ACCOUNT,
    CREDENTIALS_SECRET_KEY,
    CREDENTIALS_SECRET_TYPE,
    DEFAULT_MEMBERSHIP_SECRET_NAMESPACE,
    SECRET_MANAGED_BY,
    TOKEN_PATH,
    VOLUME_MOUNT_PATH,
    credentials_secret_name,
)
from workload_identity.errors import MembershipConfigError
from workload_identity.federation.membership import read_membership
from workload_identity.models import (
    CredentialConfig,
    CredentialSource,
    IdentityRecord,
    Membership,
    OwnerReference,
    ReconcileResult,
    SecretRecord,
)
from workload_identity.storage.store import IdentityStore, NotFoundError

logger = logging.getLogger(__name__)

SUBJECT_TOKEN_TYPE = "urn:ietf:params:oauth:token-type:jwt"
TOKEN_URL = "https://sts.googleapis.com/v1/token"
IMPERSONATION_URL = (
    "https://iamcredentials.googleapis.com/v1/projects/-/serviceAccounts/"
    "{service_account}:generateAccessToken"
)


def build_credential_config(
    pool: str, provider: str, gcp_service_account: str,
) -> CredentialConfig:
    return CredentialConfig(
        audience=f"identitynamespace:{pool}:{provider}",
        service_account_impersonation_url=IMPERSONATION_URL.format(
            service_account=gcp_service_account,
        ),
        subject_token_type=SUBJECT_TOKEN_TYPE,
        token_url=TOKEN_URL,
        credential_source=CredentialSource(file=f"{VOLUME_MOUNT_PATH}/{TOKEN_PATH}"),
    )


def validate_membership(membership: Membership) -> None:
    """Raise MembershipConfigError unless pool and provider are both set."""
    if not membership.workload_identity_pool:
        raise MembershipConfigError("membership has an empty workload identity pool")
    if not membership.identity_provider:
        raise MembershipConfigError("membership has an empty identity provider")


class IdentityReconciler:
    """Reconciles one ServiceAccount per call."""

    def __init__(
        self,
        store: IdentityStore,
        membership_secret_namespace: str = DEFAULT_MEMBERSHIP_SECRET_NAMESPACE,
    ) -> None:
        self._store = store
        self._secret_namespace = membership_secret_namespace

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        try:
            identity = self._store.get_service_account(namespace, name)
        except NotFoundError:
            logger.debug("ServiceAccount %s/%s is gone", namespace, name)
            return ReconcileResult()

        gcp_service_account = identity.annotations.get(ANNOTATION_GCP_SERVICE_ACCOUNT)
        if not gcp_service_account:
            return ReconcileResult()

        membership = read_membership(self._store, self._secret_namespace)
        validate_membership(membership)

        config = build_credential_config(
            membership.workload_identity_pool,
            membership.identity_provider,
            gcp_service_account,
        )
        self._apply(identity, config)
        return ReconcileResult()

    def _apply(self, identity: IdentityRecord, config: CredentialConfig) -> None:
        secret_name = credentials_secret_name(identity.name)
        payload = config.to_json().encode("utf-8")
        try:
            existing = self._store.get_secret(identity.namespace, secret_name)
        except NotFoundError:
            existing = None

        if existing is not None:
            data = dict(existing.data)
            data[CREDENTIALS_SECRET_KEY] = payload
            self._store.update_secret(existing.model_copy(update={"data": data}))
            logger.info("Updated credentials secret %s/%s", identity.namespace, secret_name)
            return

        self._store.create_secret(SecretRecord(
            name=secret_name,
            namespace=identity.namespace,
            annotations={
                ANNOTATION_SECRET_SERVICE_ACCOUNT: identity.name,
                ANNOTATION_SECRET_MANAGED_BY: SECRET_MANAGED_BY,
            },
            owner_references=[OwnerReference.for_service_account(identity)],
            data={CREDENTIALS_SECRET_KEY: payload},
            type=CREDENTIALS_SECRET_TYPE,
        ))
        logger.info("Created credentials secret %s/%s", identity.namespace, secret_name)
