import logging
from typing import Callable, List, Mapping

from activation_engine import ActivationEngine, epoch_millis
from exceptions import ClientError, KeyAlreadyExists, KeyNotFound, UnknownLicenseType
from key_store import ActivationRecord, KeyStore

logger = logging.getLogger(__name__)


class AdminRegistry:
    """
    Operator-side key issuance and revocation.

    Works on the key store directly and never goes through verification.
    Access control is the deployment's job (admin token, shell access).
    """

    def __init__(self, store: KeyStore, durations: Mapping[str, int],
                 clock: Callable[[], int] = epoch_millis):
        self.store = store
        self.durations = durations
        self.clock = clock
        self._engine = ActivationEngine(store, durations)

    def issue(self, key: str, license_type: str) -> ActivationRecord:
        key = (key or "").strip()
        license_type = (license_type or "").strip()
        if not key or not license_type:
            raise ClientError("Key and type are required")
        if license_type not in self.durations:
            raise UnknownLicenseType(license_type)

        if not self.store.create(key, license_type):
            raise KeyAlreadyExists(key)

        logger.info("Issued key %s (type=%s)", key, license_type)
        return ActivationRecord(key=key, license_type=license_type)

    def revoke(self, key: str):
        key = (key or "").strip()
        if not key:
            raise ClientError("Key is required")
        if not self.store.delete(key):
            raise KeyNotFound(key)
        logger.info("Revoked key %s", key)

    def list(self) -> List[ActivationRecord]:
        """All current records, after purging the expired ones."""
        self._engine.sweep(self.clock())
        return self.store.list_all()

    def sweep(self) -> List[str]:
        return self._engine.sweep(self.clock())
