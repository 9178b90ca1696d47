import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from activation_engine import ActivationEngine, epoch_millis
from exceptions import LicenseConfigurationError, TransientStorageError

logger = logging.getLogger(__name__)


class ServiceStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    INVALID_DEVICE = "invalid_device"
    EXPIRED = "expired"
    MALFORMED_REQUEST = "malformed_request"
    ERROR = "error"


@dataclass(frozen=True)
class ServiceResponse:
    status: ServiceStatus
    expires_at: Optional[int] = None

    def to_payload(self) -> dict:
        payload = {"status": self.status.value}
        if self.status is ServiceStatus.VALID:
            payload["expiresAt"] = self.expires_at
        return payload


class VerificationService:
    """
    The one hot-path operation: validate input, run the state machine, map
    the outcome. Backend trouble becomes ERROR, never a domain outcome, so a
    hiccup cannot look like a revoked or expired key to the client.
    """

    def __init__(self, engine: ActivationEngine, clock: Callable[[], int] = epoch_millis):
        self.engine = engine
        self.clock = clock

    def verify(self, key: Optional[str], device_id: Optional[str]) -> ServiceResponse:
        key = (key or "").strip() if isinstance(key, str) else ""
        device_id = (device_id or "").strip() if isinstance(device_id, str) else ""
        if not key or not device_id:
            return ServiceResponse(ServiceStatus.MALFORMED_REQUEST)

        try:
            result = self.engine.verify(key, device_id, self.clock())
        except TransientStorageError as e:
            logger.warning("Verification of key %s failed on storage: %s", key, e)
            return ServiceResponse(ServiceStatus.ERROR)
        except LicenseConfigurationError as e:
            logger.error("Verification of key %s failed: %s", key, e)
            return ServiceResponse(ServiceStatus.ERROR)

        return ServiceResponse(ServiceStatus(result.outcome.value), result.expires_at)
