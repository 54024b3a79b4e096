"""Names, annotations and paths shared by the controllers and the webhook.

These values end up in persisted objects and in Pod specs, so changing any
of them breaks compatibility with secrets and Pods created by earlier
releases.
"""

from __future__ import annotations

# --- Annotations ---

ANNOTATION_WORKLOAD_IDENTITY_ENABLED = "giantswarm.io/workload-identity-enabled"
ANNOTATION_GCP_SERVICE_ACCOUNT = "giantswarm.io/gcp-service-account"
ANNOTATION_SECRET_MANAGED_BY = "app.kubernetes.io/managed-by"
ANNOTATION_SECRET_CREATED_BY = "app.kubernetes.io/created-by"
ANNOTATION_SECRET_SERVICE_ACCOUNT = "kubernetes.io/service-account.name"

SECRET_MANAGED_BY = "workload-identity-operator-gcp"

# --- Membership secret ---

MEMBERSHIP_SECRET_NAME = "workload-identity-operator-gcp-membership"
DEFAULT_MEMBERSHIP_SECRET_NAMESPACE = "giantswarm"
MEMBERSHIP_SECRET_FINALIZER = f"{SECRET_MANAGED_BY}/finalizer"

# --- Workload cluster access ---

KUBECONFIG_SECRET_SUFFIX = "kubeconfig"
KUBECONFIG_SECRET_KEY = "value"

# --- Credentials secret ---

CREDENTIALS_SECRET_SUFFIX = "google-application-credentials"
CREDENTIALS_SECRET_KEY = "config"
CREDENTIALS_SECRET_TYPE = "kubernetes.io/service-account-token"

# --- Pod injection ---

VOLUME_NAME = "workload-identity-credentials"
VOLUME_DEFAULT_MODE = 420
VOLUME_MOUNT_PATH = "/var/run/secrets/workload-identity"
TOKEN_PATH = "token"
TOKEN_EXPIRATION_SECONDS = 7200
CREDENTIALS_FILE_NAME = "google-application-credentials.json"
ENV_GOOGLE_APPLICATION_CREDENTIALS = "GOOGLE_APPLICATION_CREDENTIALS"


def kubeconfig_secret_name(cluster_name: str) -> str:
    return f"{cluster_name}-{KUBECONFIG_SECRET_SUFFIX}"


def credentials_secret_name(service_account_name: str) -> str:
    return f"{service_account_name}-{CREDENTIALS_SECRET_SUFFIX}"
