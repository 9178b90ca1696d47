import pytest

from activation_engine import ActivationEngine
from conftest import DAY_MS, DURATIONS, T0
from exceptions import StorageUnavailable
from key_store import InMemoryKeyStore
from verification_service import ServiceResponse, ServiceStatus, VerificationService


class CountingStore(InMemoryKeyStore):
    def __init__(self):
        super().__init__()
        self.reads = 0

    def get(self, key):
        self.reads += 1
        return super().get(key)


class UnavailableStore(InMemoryKeyStore):
    def get(self, key):
        raise StorageUnavailable("connection refused")


@pytest.fixture()
def counting_store():
    return CountingStore()


@pytest.fixture()
def service(counting_store, clock):
    return VerificationService(ActivationEngine(counting_store, DURATIONS), clock)


@pytest.mark.parametrize("key,device_id", [
    (None, "dev-A"),
    ("K1", None),
    ("", "dev-A"),
    ("K1", "   "),
    (42, "dev-A"),
])
def test_malformed_input_never_touches_store(service, counting_store, key, device_id):
    assert service.verify(key, device_id).status is ServiceStatus.MALFORMED_REQUEST
    assert counting_store.reads == 0


def test_valid_payload_carries_expiry(service, counting_store):
    counting_store.create("K1", "24h")
    response = service.verify("K1", "dev-A")

    assert response == ServiceResponse(ServiceStatus.VALID, T0 + DAY_MS)
    assert response.to_payload() == {"status": "valid", "expiresAt": T0 + DAY_MS}


def test_domain_outcomes_have_no_expiry(service, counting_store, clock):
    counting_store.create("K1", "24h")
    service.verify("K1", "dev-A")

    assert service.verify("K1", "dev-B").to_payload() == {"status": "invalid_device"}
    assert service.verify("nope", "dev-A").to_payload() == {"status": "invalid"}

    clock.advance(DAY_MS + 1)
    assert service.verify("K1", "dev-A").to_payload() == {"status": "expired"}


def test_storage_outage_is_an_error_not_a_verdict(clock):
    service = VerificationService(ActivationEngine(UnavailableStore(), DURATIONS), clock)
    assert service.verify("K1", "dev-A").status is ServiceStatus.ERROR


def test_unconfigured_type_is_an_error(counting_store, clock):
    counting_store.create("K1", "lifetime")
    service = VerificationService(ActivationEngine(counting_store, DURATIONS), clock)
    assert service.verify("K1", "dev-A").status is ServiceStatus.ERROR
