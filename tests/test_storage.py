"""Tests for the in-memory storage backend and storage ports."""

from __future__ import annotations

import threading

import pytest

from workload_identity.models import (
    ClusterRecord,
    IdentityRecord,
    OwnerReference,
    SecretRecord,
)
from workload_identity.storage.store import (
    AlreadyExistsError,
    ClusterSource,
    ConflictError,
    IdentityStore,
    InjectorStore,
    InMemoryStore,
    NotFoundError,
    Source,
    WorkloadCluster,
    object_key,
    split_key,
)


class TestKeys:
    def test_namespaced(self) -> None:
        assert object_key("default", "app") == "default/app"
        assert split_key("default/app") == ("default", "app")

    def test_cluster_scoped(self) -> None:
        assert object_key("", "node-1") == "node-1"
        assert split_key("node-1") == ("", "node-1")


class TestPorts:
    def test_in_memory_store_satisfies_read_write_ports(self) -> None:
        store = InMemoryStore()
        assert isinstance(store, ClusterSource)
        assert isinstance(store, WorkloadCluster)
        assert isinstance(store, IdentityStore)
        assert isinstance(store, InjectorStore)

    def test_in_memory_store_is_not_a_source(self) -> None:
        assert not isinstance(InMemoryStore(), Source)


class TestReads:
    def test_get_cluster(self) -> None:
        store = InMemoryStore()
        store.put_cluster(ClusterRecord(name="krillin", namespace="org-acme"))
        assert store.get_cluster("org-acme", "krillin").name == "krillin"

    def test_missing_objects_raise_not_found(self) -> None:
        store = InMemoryStore()
        with pytest.raises(NotFoundError):
            store.get_cluster("org-acme", "krillin")
        with pytest.raises(NotFoundError):
            store.get_control_plane("org-acme", "krillin")
        with pytest.raises(NotFoundError):
            store.get_service_account("default", "app")
        with pytest.raises(NotFoundError):
            store.get_secret("default", "s")

    def test_put_service_account_assigns_uid(self) -> None:
        store = InMemoryStore()
        identity = store.put_service_account(IdentityRecord(name="app", namespace="default"))
        assert identity.uid
        assert store.get_service_account("default", "app").uid == identity.uid

    def test_nodes_and_jwks(self) -> None:
        store = InMemoryStore(oidc_jwks=b'{"keys": []}')
        store.put_node("node-1")
        store.put_node("node-2", ready=False)
        nodes = store.list_nodes()
        assert [n["metadata"]["name"] for n in nodes] == ["node-1", "node-2"]
        assert nodes[1]["status"]["conditions"][0]["status"] == "False"
        assert store.fetch_oidc_jwks() == b'{"keys": []}'


class TestWrites:
    def test_create_then_get(self) -> None:
        store = InMemoryStore()
        created = store.create_secret(SecretRecord(name="s", namespace="default", data={"k": b"v"}))
        assert created.resource_version is not None
        assert store.get_secret("default", "s").data == {"k": b"v"}

    def test_create_twice_raises_already_exists(self) -> None:
        store = InMemoryStore()
        store.create_secret(SecretRecord(name="s", namespace="default"))
        with pytest.raises(AlreadyExistsError):
            store.create_secret(SecretRecord(name="s", namespace="default"))

    def test_update_missing_raises_not_found(self) -> None:
        with pytest.raises(NotFoundError):
            InMemoryStore().update_secret(SecretRecord(name="s", namespace="default"))

    def test_update_bumps_resource_version(self) -> None:
        store = InMemoryStore()
        created = store.create_secret(SecretRecord(name="s", namespace="default"))
        updated = store.update_secret(created.model_copy(update={"data": {"k": b"v2"}}))
        assert updated.resource_version != created.resource_version
        assert store.get_secret("default", "s").data == {"k": b"v2"}

    def test_stale_update_raises_conflict(self) -> None:
        store = InMemoryStore()
        created = store.create_secret(SecretRecord(name="s", namespace="default"))
        store.update_secret(created)
        with pytest.raises(ConflictError):
            store.update_secret(created)

    def test_list_secrets_by_namespace(self) -> None:
        store = InMemoryStore()
        store.create_secret(SecretRecord(name="a", namespace="one"))
        store.create_secret(SecretRecord(name="b", namespace="two"))
        assert [s.name for s in store.list_secrets("one")] == ["a"]
        assert len(store.list_secrets()) == 2

    def test_concurrent_creates_store_one_secret(self) -> None:
        store = InMemoryStore()
        errors: list[Exception] = []

        def create() -> None:
            try:
                store.create_secret(SecretRecord(name="s", namespace="default"))
            except AlreadyExistsError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=create) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(store.list_secrets()) == 1
        assert len(errors) == 7


class TestOwnerGarbageCollection:
    def test_deleting_owner_deletes_dependents(self) -> None:
        store = InMemoryStore()
        identity = store.put_service_account(IdentityRecord(name="app", namespace="default"))
        store.create_secret(SecretRecord(
            name="app-google-application-credentials",
            namespace="default",
            owner_references=[OwnerReference.for_service_account(identity)],
        ))
        store.create_secret(SecretRecord(name="unrelated", namespace="default"))

        store.delete_service_account("default", "app")

        assert [s.name for s in store.list_secrets()] == ["unrelated"]

    def test_owner_with_other_uid_is_kept(self) -> None:
        store = InMemoryStore()
        store.put_service_account(IdentityRecord(name="app", namespace="default", uid="new"))
        store.create_secret(SecretRecord(
            name="old",
            namespace="default",
            owner_references=[OwnerReference(
                api_version="v1", kind="ServiceAccount", name="app", uid="old",
            )],
        ))
        store.delete_service_account("default", "app")
        assert [s.name for s in store.list_secrets()] == ["old"]

    def test_delete_missing(self) -> None:
        with pytest.raises(NotFoundError):
            InMemoryStore().delete_service_account("default", "app")
