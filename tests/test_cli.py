"""Tests for the workload-identity CLI."""

from __future__ import annotations

import base64
import json
from pathlib import Path
from unittest.mock import MagicMock, patch

from click.testing import CliRunner

from workload_identity.cli.main import cli
from workload_identity.models import Authority, Membership


def runner() -> CliRunner:
    return CliRunner()


# --- describe-membership ---


class TestDescribeMembership:
    def test_generated(self) -> None:
        result = runner().invoke(cli, [
            "describe-membership", "--project", "testing-1234", "--cluster", "krillin",
        ])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["name"] == (
            "projects/testing-1234/locations/global/memberships/krillin-workload-identity-test"
        )
        assert data["authority"]["workloadIdentityPool"] == "testing-1234.svc.id.goog"
        assert data["externalId"]

    def test_jwks_file(self, tmp_path: Path) -> None:
        jwks = tmp_path / "jwks.json"
        jwks.write_bytes(b'{"keys": []}')
        result = runner().invoke(cli, [
            "describe-membership", "--project", "p", "--cluster", "c",
            "--jwks-file", str(jwks),
        ])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert base64.b64decode(data["authority"]["oidcJwks"]) == b'{"keys": []}'

    @patch("workload_identity.cli.main._build_federation_client")
    def test_remote(self, mock_build: MagicMock) -> None:
        mock_build.return_value.get.return_value = Membership(
            name="projects/p/locations/global/memberships/c-workload-identity-test",
            external_id="registered",
            authority=Authority(workload_identity_pool="p.svc.id.goog"),
        )
        result = runner().invoke(cli, [
            "describe-membership", "--project", "p", "--cluster", "c", "--remote",
        ])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["externalId"] == "registered"
        mock_build.return_value.get.assert_called_once_with(
            "projects/p/locations/global/memberships/c-workload-identity-test",
        )

    @patch("workload_identity.cli.main._build_federation_client")
    def test_remote_not_found(self, mock_build: MagicMock) -> None:
        mock_build.return_value.get.return_value = None
        result = runner().invoke(cli, [
            "describe-membership", "--project", "p", "--cluster", "c", "--remote",
        ])
        assert result.exit_code == 1
        assert "Membership not found" in result.output


# --- render-credentials ---


class TestRenderCredentials:
    def test_render(self) -> None:
        result = runner().invoke(cli, [
            "render-credentials",
            "--pool", "test.svc.id.goog",
            "--provider", "https://test.default.local",
            "--service-account", "service-account@email",
        ])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["type"] == "external_account"
        assert data["audience"] == "identitynamespace:test.svc.id.goog:https://test.default.local"
        assert data["credential_source"] == {"file": "/var/run/secrets/workload-identity/token"}


# --- Config handling ---


class TestConfigOption:
    def test_missing_config_file(self, tmp_path: Path) -> None:
        result = runner().invoke(cli, [
            "--config", str(tmp_path / "missing.yaml"),
            "render-credentials", "--pool", "p", "--provider", "x", "--service-account", "s",
        ])
        assert result.exit_code == 1
        assert "Error loading config" in result.output

    def test_invalid_config_file(self, tmp_path: Path) -> None:
        path = tmp_path / "workload-identity.yaml"
        path.write_text("bogus: 1\n")
        result = runner().invoke(cli, [
            "--config", str(path),
            "render-credentials", "--pool", "p", "--provider", "x", "--service-account", "s",
        ])
        assert result.exit_code == 1


# --- Run modes ---


class TestRunModes:
    @patch("uvicorn.run")
    @patch("workload_identity.cli.main._build_federation_client")
    @patch("workload_identity.cli.main._build_store")
    def test_membership_starts_controller_and_probes(
        self, mock_store: MagicMock, mock_fed: MagicMock, mock_run: MagicMock,
    ) -> None:
        with patch("workload_identity.controllers.runtime.Controller.start") as mock_start, \
                patch("workload_identity.controllers.runtime.Controller.stop") as mock_stop:
            result = runner().invoke(cli, ["membership"])
        assert result.exit_code == 0, result.output
        mock_store.return_value.cluster_source.assert_called_once()
        mock_start.assert_called_once()
        mock_stop.assert_called_once()
        assert mock_run.call_args.kwargs["port"] == 8081

    @patch("uvicorn.run")
    @patch("workload_identity.cli.main._build_store")
    def test_workload_serves_tls_webhook(
        self, mock_store: MagicMock, mock_run: MagicMock, tmp_path: Path,
    ) -> None:
        (tmp_path / "tls.crt").write_text("cert")
        (tmp_path / "tls.key").write_text("key")
        with patch("workload_identity.controllers.runtime.Controller.start"), \
                patch("workload_identity.controllers.runtime.Controller.stop"):
            result = runner().invoke(
                cli, ["workload"], env={"WORKLOAD_IDENTITY_CERT_DIR": str(tmp_path)},
            )
        assert result.exit_code == 0, result.output
        mock_store.return_value.service_account_source.assert_called_once()
        kwargs = mock_run.call_args.kwargs
        assert kwargs["port"] == 9443
        assert kwargs["ssl_certfile"] == str(tmp_path / "tls.crt")
        assert kwargs["ssl_keyfile"] == str(tmp_path / "tls.key")

    def test_workload_requires_certificates(self, tmp_path: Path) -> None:
        result = runner().invoke(
            cli, ["workload"], env={"WORKLOAD_IDENTITY_CERT_DIR": str(tmp_path)},
        )
        assert result.exit_code == 1
        assert "tls.crt" in result.output
