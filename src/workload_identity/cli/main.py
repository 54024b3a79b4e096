"""workload-identity CLI, the operator's entry point.

Commands:
    membership            Register GCPClusters with GKE Hub (management cluster)
    workload              Write credential secrets and serve the Pod webhook
    describe-membership   Show the membership generated for a cluster
    render-credentials    Show the credential-exchange descriptor for an identity
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click

from workload_identity import __version__
from workload_identity.config import OperatorConfig, load_config
from workload_identity.errors import ConfigurationError
from workload_identity.models import ClusterRecord

logger = logging.getLogger(__name__)

TLS_CERT_FILE = "tls.crt"
TLS_KEY_FILE = "tls.key"


def _build_store(cfg: OperatorConfig):
    from workload_identity.storage.kubernetes import KubernetesStore

    return KubernetesStore(
        kubeconfig=cfg.kubeconfig,
        context=cfg.context,
        in_cluster=cfg.in_cluster,
    )


def _build_federation_client(cfg: OperatorConfig):
    from workload_identity.federation.client import GkeHubFederationClient

    return GkeHubFederationClient(
        transport=cfg.gkehub_transport,
        timeout=cfg.federation_timeout,
    )


def _cfg(ctx: click.Context) -> OperatorConfig:
    return ctx.obj["config"]


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False),
              help="Path to workload-identity.yaml")
@click.option("--log-level", default=None, help="Logging level (default: from config, INFO)")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """Workload identity federation for Cluster API clusters on GCP."""
    try:
        cfg = load_config(config_path)
    except (FileNotFoundError, ConfigurationError) as e:
        click.echo(f"Error loading config: {e}", err=True)
        sys.exit(1)

    logging.basicConfig(
        level=(log_level or cfg.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg


# --- membership command ---


@cli.command()
@click.pass_context
def membership(ctx: click.Context) -> None:
    """Register enabled GCPClusters and persist their memberships."""
    import uvicorn

    from workload_identity.controllers.cluster import ClusterReconciler
    from workload_identity.controllers.runtime import Controller
    from workload_identity.federation.membership import MembershipReconciler
    from workload_identity.storage.kubernetes import connect_workload_cluster
    from workload_identity.webhook.app import create_app

    cfg = _cfg(ctx)
    store = _build_store(cfg)
    reconciler = ClusterReconciler(
        source=store,
        memberships=MembershipReconciler(_build_federation_client(cfg)),
        connect=connect_workload_cluster,
        membership_secret_namespace=cfg.membership_secret_namespace,
        recheck_after=cfg.control_plane_recheck,
    )
    controller = Controller(
        "gcpcluster",
        reconciler.reconcile,
        store.cluster_source(),
        workers=cfg.workers,
        resync_period=cfg.resync_period,
    )

    controller.start()
    click.echo(f"Membership controller running, probes on :{cfg.probe_port}")
    try:
        uvicorn.run(create_app(), host=cfg.webhook_host, port=cfg.probe_port, log_level="info")
    finally:
        controller.stop()


# --- workload command ---


@cli.command()
@click.pass_context
def workload(ctx: click.Context) -> None:
    """Reconcile ServiceAccounts and serve the Pod mutating webhook."""
    import uvicorn

    from workload_identity.controllers.identity import IdentityReconciler
    from workload_identity.controllers.runtime import Controller
    from workload_identity.webhook.app import create_app
    from workload_identity.webhook.injector import CredentialInjector

    cfg = _cfg(ctx)
    cert_dir = Path(cfg.cert_dir)
    cert_file = cert_dir / TLS_CERT_FILE
    key_file = cert_dir / TLS_KEY_FILE
    if not cert_file.is_file() or not key_file.is_file():
        click.echo(f"Error: {TLS_CERT_FILE} and {TLS_KEY_FILE} must exist in {cert_dir}", err=True)
        sys.exit(1)

    store = _build_store(cfg)
    reconciler = IdentityReconciler(
        store, membership_secret_namespace=cfg.membership_secret_namespace,
    )
    controller = Controller(
        "serviceaccount",
        reconciler.reconcile,
        store.service_account_source(),
        workers=cfg.workers,
        resync_period=cfg.resync_period,
    )
    injector = CredentialInjector(
        store,
        membership_secret_namespace=cfg.membership_secret_namespace,
        require_identity=cfg.require_identity,
    )

    controller.start()
    click.echo(f"Workload controller running, webhook on :{cfg.webhook_port}")
    try:
        uvicorn.run(
            create_app(injector),
            host=cfg.webhook_host,
            port=cfg.webhook_port,
            ssl_certfile=str(cert_file),
            ssl_keyfile=str(key_file),
            log_level="info",
        )
    finally:
        controller.stop()


# --- describe-membership command ---


@cli.command("describe-membership")
@click.option("--project", required=True, help="GCP project id")
@click.option("--cluster", "cluster_name", required=True, help="Cluster name")
@click.option("--jwks-file", default=None, type=click.Path(exists=True, dir_okay=False),
              help="OIDC key set to embed (default: empty)")
@click.option("--remote", is_flag=True, help="Fetch the registered membership from GKE Hub")
@click.pass_context
def describe_membership(
    ctx: click.Context,
    project: str,
    cluster_name: str,
    jwks_file: str | None,
    remote: bool,
) -> None:
    """Print the membership for a cluster as stored in the membership secret."""
    from workload_identity.federation.membership import generate_membership, membership_name

    if remote:
        client = _build_federation_client(_cfg(ctx))
        name = membership_name(project, cluster_name)
        found = client.get(name)
        if found is None:
            click.echo(f"Membership not found: {name}", err=True)
            sys.exit(1)
        click.echo(_pretty(found.to_json()))
        return

    oidc_jwks = Path(jwks_file).read_bytes() if jwks_file else b""
    cluster = ClusterRecord(name=cluster_name, project=project)
    click.echo(_pretty(generate_membership(cluster, oidc_jwks).to_json()))


# --- render-credentials command ---


@cli.command("render-credentials")
@click.option("--pool", required=True, help="Workload identity pool")
@click.option("--provider", required=True, help="Identity provider URL")
@click.option("--service-account", required=True, help="GCP service account email")
def render_credentials(pool: str, provider: str, service_account: str) -> None:
    """Print the credentials file a ServiceAccount's Pods receive."""
    from workload_identity.controllers.identity import build_credential_config

    click.echo(build_credential_config(pool, provider, service_account).to_json())


def _pretty(raw: str) -> str:
    return json.dumps(json.loads(raw), indent=2)
