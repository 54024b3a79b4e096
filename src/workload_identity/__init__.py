"""Workload identity federation for Cluster API clusters on GCP."""

__version__ = "0.1.0"

from workload_identity.config import OperatorConfig, find_config, load_config
from workload_identity.errors import (
    ConfigurationError,
    KubeconfigError,
    MembershipConfigError,
    WorkloadIdentityError,
)
from workload_identity.federation.client import FederationClient, GkeHubFederationClient
from workload_identity.federation.membership import MembershipReconciler, generate_membership
from workload_identity.models import (
    AdmissionRequest,
    AdmissionResponse,
    ClusterRecord,
    CredentialConfig,
    IdentityRecord,
    Membership,
    ReconcileResult,
    SecretRecord,
)
from workload_identity.storage.store import InMemoryStore
from workload_identity.webhook.injector import CredentialInjector

__all__ = [
    "AdmissionRequest",
    "AdmissionResponse",
    "ClusterRecord",
    "ConfigurationError",
    "CredentialConfig",
    "CredentialInjector",
    "FederationClient",
    "find_config",
    "generate_membership",
    "GkeHubFederationClient",
    "IdentityRecord",
    "InMemoryStore",
    "KubeconfigError",
    "load_config",
    "Membership",
    "MembershipConfigError",
    "MembershipReconciler",
    "OperatorConfig",
    "ReconcileResult",
    "SecretRecord",
    "WorkloadIdentityError",
    "__version__",
]
