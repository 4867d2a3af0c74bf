"""Cluster record store.

Records are keyed by cluster name. ``FileRecordStore`` keeps one YAML document
per cluster using ruamel.yaml; ``InMemoryRecordStore`` backs tests and
embedded use. Both guard a cluster name with a lease so only one provisioning
run can drive a given record at a time.
"""

import io
import os
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML

from cluster_provisioner.exceptions import ClusterLockedError, RecordStoreError
from cluster_provisioner.logging_config import get_logger
from cluster_provisioner.models.cluster import ClusterRecord, ClusterStatus, ServiceEntry, utcnow

logger = get_logger(__name__)

# Fields that only move through set_status, which keeps them consistent
_STATUS_FIELDS = {"status", "in_progress", "last_error"}


class ClusterRecordStore(ABC):
    """Durable key-value store of cluster records."""

    @abstractmethod
    def _load(self, name: str) -> ClusterRecord | None:
        """Return the stored record or None."""

    @abstractmethod
    def _save(self, record: ClusterRecord) -> None:
        """Persist the record, replacing any previous version."""

    @abstractmethod
    def _load_services(self, name: str) -> list[ServiceEntry]:
        """Return stored service entries."""

    @abstractmethod
    def _save_services(self, name: str, services: list[ServiceEntry]) -> None:
        """Persist service entries."""

    @abstractmethod
    def lease(self, name: str) -> Iterator[None]:
        """Hold the single-run lease for ``name`` for the duration of a ``with`` block.

        Raises:
            ClusterLockedError: If another run holds the lease
        """

    def insert_cluster(self, record: ClusterRecord) -> ClusterRecord:
        """Insert a new record.

        Raises:
            RecordStoreError: If a record with the same name exists
        """
        if self._load(record.cluster_name) is not None:
            raise RecordStoreError(f"Cluster record already exists: {record.cluster_name}")
        self._save(record)
        logger.debug(f"Inserted cluster record {record.cluster_name}")
        return record

    def get_cluster(self, name: str) -> ClusterRecord:
        """Return the record for ``name``.

        Raises:
            RecordStoreError: If no record exists
        """
        record = self._load(name)
        if record is None:
            raise RecordStoreError(
                f"Cluster record not found: {name}",
                "The cluster has not been created by this provisioner or the state directory changed",
            )
        return record

    def has_cluster(self, name: str) -> bool:
        return self._load(name) is not None

    def update_cluster(self, name: str, **fields: Any) -> ClusterRecord:
        """Apply field updates to a record atomically.

        Args:
            name: Cluster name
            **fields: Record fields to set

        Returns:
            The updated record

        Raises:
            RecordStoreError: If the record is missing, a field is unknown, the
                update is invalid, or it touches status fields
        """
        unknown = set(fields) - set(ClusterRecord.model_fields)
        if unknown:
            raise RecordStoreError(f"Unknown cluster record fields: {sorted(unknown)}")
        if _STATUS_FIELDS & set(fields):
            raise RecordStoreError(
                "Status fields must be changed with set_status",
                f"Got: {sorted(_STATUS_FIELDS & set(fields))}",
            )

        record = self.get_cluster(name)
        data = record.model_dump()
        data.update(fields)
        data["updated_at"] = utcnow()
        try:
            updated = ClusterRecord.model_validate(data)
        except PydanticValidationError as e:
            raise RecordStoreError(f"Invalid update for cluster {name}: {e}")
        self._save(updated)
        return updated

    def set_status(self, name: str, status: ClusterStatus, error: str = "") -> ClusterRecord:
        """Move a record to ``status``, keeping ``in_progress`` consistent.

        Raises:
            InvalidStatusTransition: If the move is backward
            RecordStoreError: If the record is missing or cannot be written
        """
        record = self.get_cluster(name)
        updated = record.transition(status, error)
        self._save(updated)
        logger.info(f"Cluster {name} status: {record.status.value} -> {updated.status.value}")
        return updated

    def add_stage(self, name: str, stage: str) -> ClusterRecord:
        """Append a completed stage name to the record."""
        record = self.get_cluster(name)
        return self.update_cluster(name, completed_stages=[*record.completed_stages, stage])

    def add_services(self, name: str, services: list[ServiceEntry]) -> list[ServiceEntry]:
        """Add service entries, replacing entries with the same name."""
        self.get_cluster(name)
        existing = {s.name: s for s in self._load_services(name)}
        for service in services:
            existing[service.name] = service
        merged = list(existing.values())
        self._save_services(name, merged)
        return merged

    def get_services(self, name: str) -> list[ServiceEntry]:
        return self._load_services(name)


class InMemoryRecordStore(ClusterRecordStore):
    """Process-local record store."""

    def __init__(self):
        self._records: dict[str, dict] = {}
        self._services: dict[str, list[dict]] = {}
        self._leases: set[str] = set()
        self._lock = threading.Lock()

    def _load(self, name: str) -> ClusterRecord | None:
        with self._lock:
            data = self._records.get(name)
        return ClusterRecord.model_validate(data) if data is not None else None

    def _save(self, record: ClusterRecord) -> None:
        with self._lock:
            self._records[record.cluster_name] = record.model_dump()

    def _load_services(self, name: str) -> list[ServiceEntry]:
        with self._lock:
            return [ServiceEntry.model_validate(s) for s in self._services.get(name, [])]

    def _save_services(self, name: str, services: list[ServiceEntry]) -> None:
        with self._lock:
            self._services[name] = [s.model_dump() for s in services]

    @contextmanager
    def lease(self, name: str) -> Iterator[None]:
        with self._lock:
            if name in self._leases:
                raise ClusterLockedError(f"Cluster {name} is already being provisioned")
            self._leases.add(name)
        try:
            yield
        finally:
            with self._lock:
                self._leases.discard(name)


class FileRecordStore(ClusterRecordStore):
    """Record store keeping one YAML file per cluster in a state directory."""

    def __init__(self, state_dir: str | Path):
        """Initialize the store.

        Args:
            state_dir: Directory holding ``<cluster>.yaml`` records
        """
        self.state_dir = Path(state_dir)
        self.yaml = YAML()
        self.yaml.default_flow_style = False
        self.yaml.indent(mapping=2, sequence=2, offset=0)

    def _path(self, name: str, suffix: str = "yaml") -> Path:
        safe = "".join(c if (c.isalnum() or c in "-_") else "_" for c in name) or "unknown"
        return self.state_dir / f"{safe}.{suffix}"

    def _read(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return self.yaml.load(f)
        except Exception as e:
            logger.error(f"Failed to read {path}: {e}", exc_info=True)
            raise RecordStoreError(
                f"Failed to read cluster record file: {e}",
                f"The file may be corrupted or have invalid YAML syntax: {path.absolute()}",
            )

    def _write(self, path: Path, data: Any) -> None:
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            buf = io.StringIO()
            self.yaml.dump(data, buf)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_text(buf.getvalue())
            os.replace(tmp_path, path)
        except PermissionError as e:
            logger.error(f"Permission denied writing {path}: {e}")
            raise RecordStoreError(
                f"Permission denied writing cluster record: {path}",
                "Check permissions of the state directory",
            )
        except OSError as e:
            logger.error(f"OS error writing {path}: {e}")
            raise RecordStoreError(
                f"Failed to write cluster record: {e}", "Check disk space and file system permissions"
            )

    def _load(self, name: str) -> ClusterRecord | None:
        data = self._read(self._path(name))
        if data is None:
            return None
        try:
            return ClusterRecord.model_validate(dict(data))
        except PydanticValidationError as e:
            raise RecordStoreError(f"Stored record for {name} is invalid: {e}")

    def _save(self, record: ClusterRecord) -> None:
        self._write(self._path(record.cluster_name), record.model_dump(mode="json"))

    def _load_services(self, name: str) -> list[ServiceEntry]:
        data = self._read(self._path(name, "services.yaml")) or []
        return [ServiceEntry.model_validate(dict(s)) for s in data]

    def _save_services(self, name: str, services: list[ServiceEntry]) -> None:
        self._write(
            self._path(name, "services.yaml"), [s.model_dump(mode="json") for s in services]
        )

    @contextmanager
    def lease(self, name: str) -> Iterator[None]:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self._path(name, "lock")
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            raise ClusterLockedError(
                f"Cluster {name} is already being provisioned",
                f"Remove {lock_path} if no provisioning run is active",
            )
        try:
            os.write(fd, str(os.getpid()).encode())
        finally:
            os.close(fd)
        try:
            yield
        finally:
            lock_path.unlink(missing_ok=True)
