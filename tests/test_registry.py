"""
Tests for identifier uniqueness and reservation rollback
"""

import threading

import pytest

from paycore.errors import DuplicateIdentifier, ValidationError
from paycore.registry import NAMESPACE_PRIORITY, IdentityRegistry, Namespace, normalize_identifiers


def identifiers(n, **overrides):
    ids = {
        Namespace.EMAIL: f"user{n}@example.com",
        Namespace.ACCOUNT_NUMBER: f"ACC{n}",
        Namespace.CARD_NUMBER: f"CARD{n}",
    }
    for key, value in overrides.items():
        ids[Namespace(key)] = value
    return ids


@pytest.fixture
def registry(storage):
    return IdentityRegistry(storage)


class TestNormalization:
    
    def test_priority_order(self):
        assert NAMESPACE_PRIORITY == (
            Namespace.EMAIL, Namespace.ACCOUNT_NUMBER, Namespace.CARD_NUMBER,
            Namespace.UPI_HANDLE, Namespace.KYC_ID
        )
    
    def test_email_is_case_folded_and_trimmed(self):
        assert Namespace.EMAIL.normalize("  Alice@Example.COM ") == "alice@example.com"
        assert Namespace.ACCOUNT_NUMBER.normalize(" AbC1 ") == "AbC1"
    
    def test_empty_sparse_values_are_dropped(self):
        normalized = normalize_identifiers(identifiers(1, upi_handle="  ", kyc_id=None))
        assert Namespace.UPI_HANDLE not in normalized
        assert Namespace.KYC_ID not in normalized
    
    def test_missing_required_namespace(self):
        ids = identifiers(1)
        del ids[Namespace.CARD_NUMBER]
        with pytest.raises(ValidationError) as exc_info:
            normalize_identifiers(ids)
        assert exc_info.value.field == "card_number"
    
    def test_unknown_namespace(self):
        with pytest.raises(ValidationError):
            normalize_identifiers({**identifiers(1), "passport": "X1"})
    
    def test_string_keys_accepted(self):
        normalized = normalize_identifiers(
            {"email": "A@B.com", "account_number": "1", "card_number": "2"}
        )
        assert normalized[Namespace.EMAIL] == "a@b.com"


class TestRegister:
    
    def test_register_and_lookup(self, registry):
        account_id = registry.register(identifiers(1, upi_handle="one@upi"))
        
        assert registry.lookup(Namespace.EMAIL, "USER1@example.com") == account_id
        assert registry.lookup(Namespace.ACCOUNT_NUMBER, "ACC1") == account_id
        assert registry.lookup("upi_handle", "one@upi") == account_id
        assert registry.lookup(Namespace.KYC_ID, "12345678901234") is None
    
    def test_explicit_account_id(self, registry):
        assert registry.register(identifiers(1), account_id="fixed") == "fixed"
    
    def test_duplicate_email_case_insensitive(self, registry):
        registry.register(identifiers(1))
        with pytest.raises(DuplicateIdentifier) as exc_info:
            registry.register(identifiers(2, email="USER1@EXAMPLE.COM"))
        assert exc_info.value.namespace == "email"
    
    def test_first_conflict_in_priority_order_is_reported(self, registry):
        registry.register(identifiers(1, upi_handle="shared@upi"))
        # Card number and UPI handle both collide; card number comes first
        with pytest.raises(DuplicateIdentifier) as exc_info:
            registry.register(identifiers(2, card_number="CARD1", upi_handle="shared@upi"))
        assert exc_info.value.namespace == "card_number"
    
    def test_failed_register_releases_earlier_reservations(self, registry):
        registry.register(identifiers(1))
        with pytest.raises(DuplicateIdentifier):
            registry.register(identifiers(2, card_number="CARD1"))
        
        # Email and account number of the failed attempt are free again
        assert registry.lookup(Namespace.EMAIL, "user2@example.com") is None
        assert registry.lookup(Namespace.ACCOUNT_NUMBER, "ACC2") is None
        registry.register(identifiers(2))
    
    def test_absent_sparse_values_never_collide(self, registry):
        registry.register(identifiers(1))
        registry.register(identifiers(2))
        registry.register(identifiers(3, upi_handle=""))
    
    def test_sparse_values_are_unique_when_present(self, registry):
        registry.register(identifiers(1, kyc_id="12345678901234"))
        with pytest.raises(DuplicateIdentifier) as exc_info:
            registry.register(identifiers(2, kyc_id="12345678901234"))
        assert exc_info.value.namespace == "kyc_id"
    
    def test_concurrent_signups_on_same_email(self, registry):
        """Exactly one of many racing registrations wins"""
        outcomes = []
        barrier = threading.Barrier(10)
        
        def attempt(n):
            barrier.wait()
            try:
                registry.register(identifiers(n, email="race@example.com"))
                outcomes.append("ok")
            except DuplicateIdentifier as e:
                outcomes.append(e.namespace)
        
        threads = [threading.Thread(target=attempt, args=(n,)) for n in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        
        assert outcomes.count("ok") == 1
        assert outcomes.count("email") == 9
        # Losers released their other identifiers
        owners = [n for n in range(10) if registry.lookup(Namespace.ACCOUNT_NUMBER, f"ACC{n}")]
        assert len(owners) == 1


class TestRelease:
    
    def test_release_only_own_reservations(self, registry):
        registry.register(identifiers(1), account_id="owner")
        
        assert registry.release("intruder", identifiers(1)) == 0
        assert registry.lookup(Namespace.EMAIL, "user1@example.com") == "owner"
        
        assert registry.release("owner", identifiers(1)) == 3
        assert registry.lookup(Namespace.EMAIL, "user1@example.com") is None
