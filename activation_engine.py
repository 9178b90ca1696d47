"""
Activation state machine.

A key is observed in one of four states through its record: unknown (no
record), issued but unbound, bound and active, bound and expired.
`ActivationEngine.verify` decides the outcome of a verification request and
applies the single mutation that state allows.
"""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Mapping, Optional

from exceptions import LicenseConfigurationError, TransientStorageError
from key_store import KeyStore

logger = logging.getLogger(__name__)

# A racer that loses a conditional update re-reads the record. After one
# conflict the key is either bound or gone, so a second pass always settles.
MAX_ATTEMPTS = 3


def epoch_millis() -> int:
    return int(time.time() * 1000)


class Outcome(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    INVALID_DEVICE = "invalid_device"
    EXPIRED = "expired"


@dataclass(frozen=True)
class VerificationResult:
    outcome: Outcome
    expires_at: Optional[int] = None

    @property
    def is_valid(self) -> bool:
        return self.outcome is Outcome.VALID


class ActivationEngine:
    def __init__(self, store: KeyStore, durations: Mapping[str, int]):
        self.store = store
        self.durations = durations

    def duration_for(self, license_type: str) -> int:
        try:
            return self.durations[license_type]
        except KeyError:
            raise LicenseConfigurationError(
                f"No duration configured for license type {license_type!r}"
            ) from None

    def verify(self, key: str, device_id: str, now: int) -> VerificationResult:
        """
        Evaluate `key` for `device_id` at `now` (epoch ms).

        Storage failures propagate as TransientStorageError with nothing
        half-written; the store's operations are each atomic.
        """
        for _ in range(MAX_ATTEMPTS):
            record = self.store.get(key)
            if record is None:
                return VerificationResult(Outcome.INVALID)

            if not record.is_bound:
                duration = self.duration_for(record.license_type)
                expires_at = self.store.bind_and_activate(key, device_id, now, duration)
                if expires_at is None:
                    # Someone else bound (or revoked) it first; judge the new state.
                    logger.debug("Lost activation race for key %s, re-reading", key)
                    continue
                logger.info("Activated key %s on device %s until %s", key, device_id, expires_at)
                return VerificationResult(Outcome.VALID, expires_at)

            # Mismatch first: another device must not learn the key's expiry.
            if record.device_id != device_id:
                logger.info("Key %s presented by unbound device %s", key, device_id)
                return VerificationResult(Outcome.INVALID_DEVICE)

            if now > record.expires_at:
                if self.store.delete_expired(key, now):
                    logger.info("Key %s expired at %s, record removed", key, record.expires_at)
                    return VerificationResult(Outcome.EXPIRED)
                continue

            return VerificationResult(Outcome.VALID, record.expires_at)

        raise TransientStorageError(f"Key {key} kept changing during verification")

    def sweep(self, now: int) -> List[str]:
        """Purge every record past its expiry."""
        purged = self.store.purge_expired(now)
        if purged:
            logger.info("Swept %d expired key(s)", len(purged))
        return purged
