"""Tests for the cluster record stores."""

import pytest

from cluster_provisioner.exceptions import (
    ClusterLockedError,
    InvalidStatusTransition,
    RecordStoreError,
)
from cluster_provisioner.models.cluster import ClusterRecord, ClusterStatus, ServiceEntry
from cluster_provisioner.store import FileRecordStore, InMemoryRecordStore


@pytest.fixture(params=["memory", "file"])
def any_store(request, tmp_path):
    """Each store implementation."""
    if request.param == "memory":
        return InMemoryRecordStore()
    return FileRecordStore(tmp_path / "records")


@pytest.fixture
def record(definition):
    return ClusterRecord.from_definition(definition)


def test_insert_and_get(any_store, record):
    """Test that an inserted record reads back unchanged."""
    any_store.insert_cluster(record)

    loaded = any_store.get_cluster("demo")
    assert loaded.cluster_name == "demo"
    assert loaded.status == ClusterStatus.PENDING
    assert loaded.in_progress is False
    assert loaded.creation_timestamp == record.creation_timestamp


def test_insert_duplicate_rejected(any_store, record):
    """Test that a second insert with the same name fails."""
    any_store.insert_cluster(record)

    with pytest.raises(RecordStoreError, match="already exists"):
        any_store.insert_cluster(record)


def test_get_missing_cluster(any_store):
    """Test that reading an unknown cluster raises."""
    with pytest.raises(RecordStoreError, match="not found"):
        any_store.get_cluster("missing")
    assert any_store.has_cluster("missing") is False


def test_update_cluster_applies_fields(any_store, record):
    """Test that field updates are applied together and persisted."""
    any_store.insert_cluster(record)

    updated = any_store.update_cluster("demo", cluster_id="cid-1", kbot_public_key="ssh-ed25519 AAAA")

    assert updated.cluster_id == "cid-1"
    loaded = any_store.get_cluster("demo")
    assert loaded.cluster_id == "cid-1"
    assert loaded.kbot_public_key == "ssh-ed25519 AAAA"
    assert loaded.updated_at >= record.updated_at


def test_update_cluster_rejects_unknown_field(any_store, record):
    """Test that unknown fields are refused."""
    any_store.insert_cluster(record)

    with pytest.raises(RecordStoreError, match="Unknown"):
        any_store.update_cluster("demo", color="blue")


def test_update_cluster_rejects_status_fields(any_store, record):
    """Test that status can only move through set_status."""
    any_store.insert_cluster(record)

    with pytest.raises(RecordStoreError, match="set_status"):
        any_store.update_cluster("demo", in_progress=True)


def test_set_status_keeps_in_progress_consistent(any_store, record):
    """Test that the in_progress flag follows the status."""
    any_store.insert_cluster(record)

    assert any_store.set_status("demo", ClusterStatus.IN_PROGRESS).in_progress is True
    provisioned = any_store.set_status("demo", ClusterStatus.PROVISIONED)

    assert provisioned.in_progress is False
    assert any_store.get_cluster("demo").status == ClusterStatus.PROVISIONED


def test_set_status_failed_records_error(any_store, record):
    """Test that a failure stores its cause."""
    any_store.insert_cluster(record)
    any_store.set_status("demo", ClusterStatus.IN_PROGRESS)

    failed = any_store.set_status("demo", ClusterStatus.FAILED, error="quota exceeded")

    assert failed.last_error == "quota exceeded"
    assert failed.in_progress is False


def test_set_status_rejects_backward_move(any_store, record):
    """Test that a terminal status cannot be left."""
    any_store.insert_cluster(record)
    any_store.set_status("demo", ClusterStatus.IN_PROGRESS)
    any_store.set_status("demo", ClusterStatus.FAILED, error="boom")

    with pytest.raises(InvalidStatusTransition):
        any_store.set_status("demo", ClusterStatus.IN_PROGRESS)
    assert any_store.get_cluster("demo").status == ClusterStatus.FAILED


def test_add_stage_appends_in_order(any_store, record):
    """Test that completed stages accumulate in order."""
    any_store.insert_cluster(record)

    any_store.add_stage("demo", "download-tools")
    any_store.add_stage("demo", "domain-liveness")

    assert any_store.get_cluster("demo").completed_stages == ["download-tools", "domain-liveness"]


def test_add_services_merges_by_name(any_store, record):
    """Test that services with the same name replace earlier entries."""
    any_store.insert_cluster(record)
    any_store.add_services("demo", [ServiceEntry(name="Vault", url="https://vault.old")])

    any_store.add_services(
        "demo",
        [
            ServiceEntry(name="Vault", url="https://vault.demo.example.com"),
            ServiceEntry(name="Argo CD", url="https://argocd.demo.example.com"),
        ],
    )

    services = {s.name: s.url for s in any_store.get_services("demo")}
    assert services == {
        "Vault": "https://vault.demo.example.com",
        "Argo CD": "https://argocd.demo.example.com",
    }


def test_add_services_requires_cluster(any_store):
    """Test that services cannot be added to an unknown cluster."""
    with pytest.raises(RecordStoreError):
        any_store.add_services("missing", [ServiceEntry(name="Vault", url="https://vault")])


def test_lease_is_exclusive(any_store):
    """Test that a held lease rejects a second holder and is released on exit."""
    with any_store.lease("demo"):
        with pytest.raises(ClusterLockedError):
            with any_store.lease("demo"):
                pass

    with any_store.lease("demo"):
        pass


def test_lease_released_on_exception(any_store):
    """Test that an exception inside the lease still releases it."""
    with pytest.raises(RuntimeError):
        with any_store.lease("demo"):
            raise RuntimeError("boom")

    with any_store.lease("demo"):
        pass


def test_leases_are_per_name(any_store):
    """Test that different clusters do not block each other."""
    with any_store.lease("demo"):
        with any_store.lease("other"):
            pass


def test_file_store_writes_yaml_per_cluster(tmp_path, record):
    """Test the on-disk layout of the file store."""
    store = FileRecordStore(tmp_path / "records")
    store.insert_cluster(record)

    path = tmp_path / "records" / "demo.yaml"
    assert path.exists()
    assert "cluster_name: demo" in path.read_text()
    assert not list((tmp_path / "records").glob("*.tmp"))


def test_file_store_survives_reopen(tmp_path, record):
    """Test that a new store instance sees earlier writes."""
    FileRecordStore(tmp_path / "records").insert_cluster(record)

    reopened = FileRecordStore(tmp_path / "records")
    reopened.set_status("demo", ClusterStatus.IN_PROGRESS)

    assert FileRecordStore(tmp_path / "records").get_cluster("demo").in_progress is True


def test_file_store_corrupted_record(tmp_path):
    """Test that an unreadable record raises a store error."""
    state_dir = tmp_path / "records"
    state_dir.mkdir()
    (state_dir / "demo.yaml").write_text("cluster_name: [unclosed\n")

    with pytest.raises(RecordStoreError, match="Failed to read"):
        FileRecordStore(state_dir).get_cluster("demo")


def test_file_store_invalid_record(tmp_path):
    """Test that a record violating the status invariant is rejected on load."""
    state_dir = tmp_path / "records"
    state_dir.mkdir()
    (state_dir / "demo.yaml").write_text(
        "cluster_name: demo\ncloud_provider: vultr\nstatus: provisioned\nin_progress: true\n"
    )

    with pytest.raises(RecordStoreError, match="invalid"):
        FileRecordStore(state_dir).get_cluster("demo")


def test_file_store_lock_file_message(tmp_path):
    """Test that a stale lock file is reported with its path."""
    state_dir = tmp_path / "records"
    state_dir.mkdir()
    (state_dir / "demo.lock").write_text("12345")

    with pytest.raises(ClusterLockedError) as exc_info:
        with FileRecordStore(state_dir).lease("demo"):
            pass

    assert "demo.lock" in exc_info.value.details
