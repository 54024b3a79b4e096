"""Tests for the GKE Hub federation client.

google-cloud-gke-hub is replaced with a mock module, so no GCP
credentials or network access are needed.
"""

from __future__ import annotations

import sys
from contextlib import contextmanager
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from workload_identity.federation.client import (
    DEFAULT_OPERATION_TIMEOUT,
    FederationClient,
    GkeHubFederationClient,
    is_conflict,
    is_not_found,
    parent_path,
)
from workload_identity.federation.membership import generate_membership
from workload_identity.models import ClusterRecord

MEMBERSHIP_ID = "krillin-workload-identity"

# --- Helpers ---


@contextmanager
def _mock_gkehub_modules():
    """Inject a mock ``google.cloud.gkehub_v1beta1`` into sys.modules."""
    mock_google = MagicMock()
    mock_cloud = mock_google.cloud
    mock_gkehub = mock_cloud.gkehub_v1beta1
    modules = {
        "google": mock_google,
        "google.cloud": mock_cloud,
        "google.cloud.gkehub_v1beta1": mock_gkehub,
    }
    with patch.dict(sys.modules, modules):
        yield mock_gkehub


class _ApiError(Exception):
    def __init__(self, code: int | None = None, grpc_name: str | None = None) -> None:
        super().__init__("api error")
        self.code = code
        self.grpc_status_code = SimpleNamespace(name=grpc_name) if grpc_name else None


def _cluster() -> ClusterRecord:
    return ClusterRecord(name="krillin", namespace="org-acme", project="testing-1234", ready=True)


# --- Error classification ---


class TestErrorClassification:
    def test_http_409_is_conflict(self) -> None:
        assert is_conflict(_ApiError(code=409))

    def test_grpc_already_exists_is_conflict(self) -> None:
        assert is_conflict(_ApiError(grpc_name="ALREADY_EXISTS"))

    def test_other_errors_are_not_conflicts(self) -> None:
        assert not is_conflict(_ApiError(code=500))
        assert not is_conflict(ValueError("boom"))

    def test_not_found(self) -> None:
        assert is_not_found(_ApiError(code=404))
        assert is_not_found(_ApiError(grpc_name="NOT_FOUND"))
        assert not is_not_found(_ApiError(code=409))

    def test_parent_path(self) -> None:
        assert parent_path("p") == "projects/p/locations/global"


# --- Register ---


class TestRegister:
    def test_builds_create_request_and_waits(self) -> None:
        with _mock_gkehub_modules() as gkehub:
            api = MagicMock()
            client = GkeHubFederationClient(client=api, timeout=30.0)
            membership = generate_membership(_cluster(), b"{}")
            client.register(_cluster(), membership, MEMBERSHIP_ID)

            gkehub.CreateMembershipRequest.assert_called_once()
            kwargs = gkehub.CreateMembershipRequest.call_args.kwargs
            assert kwargs["parent"] == "projects/testing-1234/locations/global"
            assert kwargs["membership_id"] == "krillin-workload-identity"

            authority_kwargs = gkehub.Authority.call_args.kwargs
            assert authority_kwargs["workload_identity_pool"] == "testing-1234.svc.id.goog"
            assert authority_kwargs["identity_provider"] == (
                "https://gkehub.googleapis.com/projects/testing-1234/locations/global"
                "/memberships/krillin-workload-identity"
            )
            resource_kwargs = gkehub.Membership.call_args.kwargs
            assert resource_kwargs["name"] == (
                "projects/testing-1234/locations/global/memberships/krillin-workload-identity-test"
            )
            assert authority_kwargs["oidc_jwks"] == b"{}"

            api.create_membership.assert_called_once_with(
                request=gkehub.CreateMembershipRequest.return_value,
            )
            api.create_membership.return_value.result.assert_called_once_with(timeout=30.0)

    def test_errors_propagate(self) -> None:
        with _mock_gkehub_modules():
            api = MagicMock()
            api.create_membership.side_effect = _ApiError(code=409)
            client = GkeHubFederationClient(client=api)
            with pytest.raises(_ApiError):
                client.register(_cluster(), generate_membership(_cluster(), b""), MEMBERSHIP_ID)

    def test_operation_failure_propagates(self) -> None:
        with _mock_gkehub_modules():
            api = MagicMock()
            api.create_membership.return_value.result.side_effect = _ApiError(code=500)
            client = GkeHubFederationClient(client=api)
            with pytest.raises(_ApiError):
                client.register(_cluster(), generate_membership(_cluster(), b""), MEMBERSHIP_ID)

    def test_operation_wait_is_bounded_by_default(self) -> None:
        with _mock_gkehub_modules():
            api = MagicMock()
            client = GkeHubFederationClient(client=api)
            client.register(_cluster(), generate_membership(_cluster(), b""), MEMBERSHIP_ID)
            api.create_membership.return_value.result.assert_called_once_with(
                timeout=DEFAULT_OPERATION_TIMEOUT,
            )
        assert DEFAULT_OPERATION_TIMEOUT == 300.0

    def test_operation_timeout_propagates(self) -> None:
        with _mock_gkehub_modules():
            api = MagicMock()
            api.create_membership.return_value.result.side_effect = TimeoutError("still running")
            client = GkeHubFederationClient(client=api, timeout=1.0)
            with pytest.raises(TimeoutError):
                client.register(_cluster(), generate_membership(_cluster(), b""), MEMBERSHIP_ID)

    def test_default_client_uses_rest_transport(self) -> None:
        with _mock_gkehub_modules() as gkehub:
            GkeHubFederationClient()
            gkehub.GkeHubMembershipServiceClient.assert_called_once_with(transport="rest")


# --- Get ---


class TestGet:
    def test_converts_resource(self) -> None:
        with _mock_gkehub_modules():
            api = MagicMock()
            api.get_membership.return_value = SimpleNamespace(
                name="projects/p/locations/global/memberships/m",
                external_id="ext",
                authority=SimpleNamespace(
                    issuer="https://issuer",
                    workload_identity_pool="p.svc.id.goog",
                    identity_provider="https://provider",
                    oidc_jwks=b"{}",
                ),
            )
            client = GkeHubFederationClient(client=api)
            found = client.get("projects/p/locations/global/memberships/m")
            assert found is not None
            assert found.external_id == "ext"
            assert found.workload_identity_pool == "p.svc.id.goog"
            api.get_membership.assert_called_once_with(
                name="projects/p/locations/global/memberships/m",
            )

    def test_not_found_returns_none(self) -> None:
        with _mock_gkehub_modules():
            api = MagicMock()
            api.get_membership.side_effect = _ApiError(code=404)
            assert GkeHubFederationClient(client=api).get("x") is None

    def test_other_errors_propagate(self) -> None:
        with _mock_gkehub_modules():
            api = MagicMock()
            api.get_membership.side_effect = _ApiError(code=403)
            with pytest.raises(_ApiError):
                GkeHubFederationClient(client=api).get("x")


class TestProtocol:
    def test_satisfies_federation_client_protocol(self) -> None:
        with _mock_gkehub_modules():
            assert isinstance(GkeHubFederationClient(client=MagicMock()), FederationClient)
