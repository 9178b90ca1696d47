"""
Durable mapping from license key to its activation record.

Every backend implements the same narrow contract so the activation engine
never knows where records live. Mutations on a key are atomic: first
activation is a conditional "bind only if still unbound" update, never a
read followed by a write.
"""
import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from config import settings
from database import ActivationKey, create_session_factory
from exceptions import StorageUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActivationRecord:
    key: str
    license_type: str
    device_id: Optional[str] = None
    activated_at: Optional[int] = None
    expires_at: Optional[int] = None

    @property
    def is_bound(self) -> bool:
        return self.device_id is not None

    def is_expired(self, now: int) -> bool:
        return self.is_bound and now > self.expires_at

    def is_active(self, now: int) -> bool:
        return self.is_bound and now <= self.expires_at

    def bound_to(self, device_id: str, now: int, duration_ms: int) -> "ActivationRecord":
        return ActivationRecord(
            key=self.key,
            license_type=self.license_type,
            device_id=device_id,
            activated_at=now,
            expires_at=now + duration_ms,
        )

    def to_document(self) -> dict:
        return {
            "type": self.license_type,
            "deviceId": self.device_id,
            "activatedAt": self.activated_at,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_document(cls, key: str, doc: dict) -> "ActivationRecord":
        return cls(
            key=key,
            license_type=doc["type"],
            device_id=doc.get("deviceId"),
            activated_at=doc.get("activatedAt"),
            expires_at=doc.get("expiresAt"),
        )


class KeyStore(ABC):
    """Storage contract shared by every backend."""

    name = "abstract"

    @abstractmethod
    def get(self, key: str) -> Optional[ActivationRecord]:
        pass

    @abstractmethod
    def create(self, key: str, license_type: str) -> bool:
        """Insert an unbound record. Returns False if the key already exists."""

    @abstractmethod
    def bind_and_activate(self, key: str, device_id: str, now: int,
                          duration_ms: int) -> Optional[int]:
        """
        Bind `key` to `device_id` only if it is currently unbound.

        Returns the new expiry, or None when the key is missing or was
        already bound (conflict).
        """

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove the record. Returns False if there was none."""

    @abstractmethod
    def delete_expired(self, key: str, now: int) -> bool:
        """Remove the record only if it is bound and past its expiry."""

    @abstractmethod
    def list_all(self) -> List[ActivationRecord]:
        pass

    def purge_expired(self, now: int) -> List[str]:
        purged = []
        for record in self.list_all():
            if record.is_expired(now) and self.delete_expired(record.key, now):
                purged.append(record.key)
        return purged


class _MappingKeyStore(KeyStore):
    """
    Base for backends that hold the whole table as one mapping.

    Each operation loads, mutates and saves the mapping while holding a
    lock, so a conditional update cannot interleave with another mutation.
    """

    def __init__(self, timeout_seconds: float = None):
        self._lock = threading.Lock()
        self._timeout = settings.STORAGE_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds

    @abstractmethod
    def _read(self) -> Dict[str, ActivationRecord]:
        pass

    @abstractmethod
    def _write(self, records: Dict[str, ActivationRecord]):
        pass

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self._timeout):
            raise StorageUnavailable(f"{self.name} key store lock timed out after {self._timeout}s")
        try:
            yield
        finally:
            self._lock.release()

    def get(self, key: str) -> Optional[ActivationRecord]:
        with self._locked():
            return self._read().get(key)

    def create(self, key: str, license_type: str) -> bool:
        with self._locked():
            records = self._read()
            if key in records:
                return False
            records[key] = ActivationRecord(key=key, license_type=license_type)
            self._write(records)
            return True

    def bind_and_activate(self, key: str, device_id: str, now: int,
                          duration_ms: int) -> Optional[int]:
        with self._locked():
            records = self._read()
            record = records.get(key)
            if record is None or record.is_bound:
                return None
            bound = record.bound_to(device_id, now, duration_ms)
            records[key] = bound
            self._write(records)
            return bound.expires_at

    def delete(self, key: str) -> bool:
        with self._locked():
            records = self._read()
            if records.pop(key, None) is None:
                return False
            self._write(records)
            return True

    def delete_expired(self, key: str, now: int) -> bool:
        with self._locked():
            records = self._read()
            record = records.get(key)
            if record is None or not record.is_expired(now):
                return False
            del records[key]
            self._write(records)
            return True

    def list_all(self) -> List[ActivationRecord]:
        with self._locked():
            return list(self._read().values())


class InMemoryKeyStore(_MappingKeyStore):
    name = "memory"

    def __init__(self, timeout_seconds: float = None):
        super().__init__(timeout_seconds)
        self._records: Dict[str, ActivationRecord] = {}

    def _read(self) -> Dict[str, ActivationRecord]:
        return dict(self._records)

    def _write(self, records: Dict[str, ActivationRecord]):
        self._records = records


class JsonFileKeyStore(_MappingKeyStore):
    """
    Flat document store: one JSON file, replaced atomically on every write.

    The server, its workers and the operator CLI may all open the same file,
    so every read-modify-write also holds an exclusive flock on a sidecar
    `<file>.lock`.
    """

    name = "json"
    LOCK_POLL_SECONDS = 0.01

    def __init__(self, path, timeout_seconds: float = None):
        super().__init__(timeout_seconds)
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with super()._locked():
            with self._file_lock():
                yield

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise StorageUnavailable(f"Cannot open lock file {self.lock_path}: {e}") from e

        try:
            deadline = time.monotonic() + self._timeout
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise StorageUnavailable(
                            f"Lock on {self.lock_path} timed out after {self._timeout}s"
                        ) from None
                    time.sleep(self.LOCK_POLL_SECONDS)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _read(self) -> Dict[str, ActivationRecord]:
        if not self.path.exists():
            return {}
        try:
            document = json.loads(self.path.read_text(encoding="utf-8") or "{}")
            return {
                key: ActivationRecord.from_document(key, doc)
                for key, doc in document.get("keys", {}).items()
            }
        except (OSError, ValueError, KeyError) as e:
            raise StorageUnavailable(f"Cannot read key file {self.path}: {e}") from e

    def _write(self, records: Dict[str, ActivationRecord]):
        document = {"keys": {key: record.to_document() for key, record in records.items()}}
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{self.path.name}.", suffix=".tmp")
        except OSError as e:
            raise StorageUnavailable(f"Cannot write key file {self.path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except (OSError, TypeError, ValueError) as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageUnavailable(f"Cannot write key file {self.path}: {e}") from e


class SqlKeyStore(KeyStore):
    """Relational backend; atomicity comes from conditional UPDATE/DELETE."""

    name = "sql"

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str, timeout_seconds: float = None) -> "SqlKeyStore":
        return cls(create_session_factory(database_url, timeout_seconds=timeout_seconds))

    @contextmanager
    def _session(self):
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageUnavailable(f"Database error: {e}") from e
        finally:
            session.close()

    @staticmethod
    def _to_record(row: ActivationKey) -> ActivationRecord:
        return ActivationRecord(
            key=row.key_text,
            license_type=row.type,
            device_id=row.device_id,
            activated_at=row.activated_at,
            expires_at=row.expires_at,
        )

    def get(self, key: str) -> Optional[ActivationRecord]:
        with self._session() as session:
            row = session.get(ActivationKey, key)
            return self._to_record(row) if row else None

    def create(self, key: str, license_type: str) -> bool:
        try:
            with self._session() as session:
                session.add(ActivationKey(key_text=key, type=license_type))
        except IntegrityError:
            return False
        return True

    def bind_and_activate(self, key: str, device_id: str, now: int,
                          duration_ms: int) -> Optional[int]:
        expires_at = now + duration_ms
        stmt = (
            update(ActivationKey)
            .where(ActivationKey.key_text == key, ActivationKey.device_id.is_(None))
            .values(device_id=device_id, activated_at=now, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            result = session.execute(stmt)
            return expires_at if result.rowcount == 1 else None

    def delete(self, key: str) -> bool:
        stmt = (
            delete(ActivationKey)
            .where(ActivationKey.key_text == key)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            return session.execute(stmt).rowcount == 1

    def delete_expired(self, key: str, now: int) -> bool:
        stmt = (
            delete(ActivationKey)
            .where(ActivationKey.key_text == key, ActivationKey.expires_at < now)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            return session.execute(stmt).rowcount == 1

    def list_all(self) -> List[ActivationRecord]:
        with self._session() as session:
            rows = session.scalars(select(ActivationKey).order_by(ActivationKey.key_text)).all()
            return [self._to_record(row) for row in rows]

    def _expired_keys(self, session, now: int) -> List[str]:
        return list(session.scalars(
            select(ActivationKey.key_text)
            .where(ActivationKey.expires_at < now)
            .order_by(ActivationKey.key_text)
        ).all())

    def purge_expired(self, now: int) -> List[str]:
        """Only keys whose row this call actually removed are returned."""
        purged = []
        with self._session() as session:
            for key in self._expired_keys(session, now):
                result = session.execute(
                    delete(ActivationKey)
                    .where(ActivationKey.key_text == key, ActivationKey.expires_at < now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    purged.append(key)
        return purged


def create_key_store(backend: str = None) -> KeyStore:
    """Build the backend named in settings (or `backend`)."""
    backend = (backend or settings.KEY_STORE_BACKEND).strip().lower()
    if backend == "sql":
        store = SqlKeyStore.from_url(settings.DATABASE_URL)
    elif backend == "json":
        store = JsonFileKeyStore(settings.KEY_STORE_PATH)
    elif backend == "memory":
        store = InMemoryKeyStore()
    else:
        raise ValueError(f"Unknown key store backend: {backend}")
    logger.info("Using %s key store", store.name)
    return store
