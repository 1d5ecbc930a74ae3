"""
Shared fixtures: in-memory storage and a fully wired service with a cheap
scrypt cost so hashing does not dominate the test run.
"""

import pytest

from paycore.accounts import AccountStore
from paycore.audit import AuditTrail
from paycore.config import PaycoreConfig
from paycore.credentials import AttemptLimiter, CredentialVerifier
from paycore.registry import IdentityRegistry, Namespace
from paycore.service import AccountService, SignupCredentials, SignupProfile
from paycore.storage import InMemoryStorage


FAST_HASH = {"scrypt_n": 16, "scrypt_r": 1, "scrypt_p": 1}


@pytest.fixture
def storage():
    storage = InMemoryStorage()
    yield storage
    storage.close()


@pytest.fixture
def config():
    return PaycoreConfig(
        database_url="memory://",
        jwt_secret="test-secret",
        max_failed_attempts=5,
        ledger_service_key="test-service-key",
        **FAST_HASH
    )


@pytest.fixture
def service(config, storage):
    return AccountService.from_config(config, storage=storage)


@pytest.fixture
def verifier(storage):
    registry = IdentityRegistry(storage)
    accounts = AccountStore(storage)
    return CredentialVerifier(
        accounts, registry, AttemptLimiter(max_failures=3), AuditTrail(storage), **FAST_HASH
    )


def make_signup(suffix="1", pin="1234", **overrides):
    """Signup arguments for a valid account; suffix keeps identifiers distinct"""
    profile = SignupProfile(
        full_name=overrides.pop("full_name", f"Holder {suffix}"),
        phone_number=overrides.pop("phone_number", f"+91-98000000{suffix}"),
        card_type=overrides.pop("card_type", "visa"),
        card_expiry=overrides.pop("card_expiry", "12/29"),
        card_cvc=overrides.pop("card_cvc", "123"),
        address=overrides.pop("address", "1 Main Street"),
    )
    identifiers = {
        Namespace.EMAIL: overrides.pop("email", f"holder{suffix}@example.com"),
        Namespace.ACCOUNT_NUMBER: overrides.pop("account_number", f"AC{suffix}"),
        Namespace.CARD_NUMBER: overrides.pop("card_number", f"411111111111{suffix.zfill(4)}"),
        Namespace.UPI_HANDLE: overrides.pop("upi_handle", None),
        Namespace.KYC_ID: overrides.pop("kyc_id", None),
    }
    credentials = SignupCredentials(
        password=overrides.pop("password", "s3cret-pass"),
        pin=pin,
    )
    assert not overrides, f"unknown overrides: {overrides}"
    return profile, identifiers, credentials
