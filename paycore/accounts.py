"""
Account Records Module

Persisted account holder records and the views derived from them. An
account is created once at signup with all identifiers and credential
hashes fixed; afterwards only the PIN hash changes. Balances live in the
ledger and are joined in when a public profile is rendered.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import AccountNotFound, StorageUnavailable
from .storage import StorageInterface, StorageRecord


class CardType(Enum):
    """Supported card networks"""
    VISA = "visa"
    MASTERCARD = "mastercard"


@dataclass
class Account(StorageRecord):
    """
    Account holder with identifiers, credential hashes and profile
    """
    email: str
    account_number: str
    card_number: str
    password_hash: str
    pin_hash: str
    full_name: str
    phone_number: str
    card_type: CardType
    card_expiry: str
    card_cvc: str
    address: str = ""
    upi_handle: Optional[str] = None
    kyc_id: Optional[str] = None
    
    @property
    def card_last_four(self) -> str:
        return self.card_number[-4:]
    
    def public_profile(self, balance: Decimal) -> Dict[str, Any]:
        """Profile safe to return to the holder; no hashes, CVC or full card number"""
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "phone_number": self.phone_number,
            "address": self.address,
            "account_number": self.account_number,
            "card_last_four": self.card_last_four,
            "card_type": self.card_type.value,
            "card_expiry": self.card_expiry,
            "upi_handle": self.upi_handle,
            "kyc_id": self.kyc_id,
            "balance": str(balance),
            "created_at": self.created_at.isoformat(),
        }
    
    def payee_view(self) -> Dict[str, Any]:
        """Directory lookup view returned to other holders"""
        return {
            "full_name": self.full_name,
            "upi_handle": self.upi_handle,
            "phone_number": self.phone_number,
            "account_number": self.account_number,
        }
    
    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['card_type'] = self.card_type.value
        return result
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['card_type'] = CardType(data['card_type'])
        return cls(**data)


class AccountStore:
    """
    Repository access for account records
    """
    
    def __init__(self, storage: StorageInterface, table_name: str = "accounts",
                 max_retries: int = 5):
        self.storage = storage
        self.table_name = table_name
        self.max_retries = max_retries
    
    def create(self, account: Account) -> Account:
        """Persist a new account; ids are never reused"""
        if not self.storage.insert_if_absent(self.table_name, account.id, account.to_dict()):
            raise StorageUnavailable(f"Account id {account.id} already persisted")
        return account
    
    def get(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.table_name, account_id)
        if data:
            return Account.from_dict(data)
        return None
    
    def require(self, account_id: str) -> Account:
        account = self.get(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return account
    
    def snapshot(self) -> List[Account]:
        """All accounts in creation order"""
        accounts = [Account.from_dict(data) for data in self.storage.load_all(self.table_name)]
        # Stable sort keeps storage insertion order for equal timestamps
        accounts.sort(key=lambda a: a.created_at)
        return accounts
    
    def find_by_phone(self, phone_number: str) -> Optional[Account]:
        """First account registered with this phone number"""
        matches = self.storage.find(self.table_name, {"phone_number": phone_number.strip()})
        if matches:
            return Account.from_dict(matches[0])
        return None
    
    def update(self, account_id: str, mutate: Callable[[Account], None]) -> Account:
        """Apply mutate to the stored account under compare-and-swap"""
        for _ in range(self.max_retries):
            versioned = self.storage.load_versioned(self.table_name, account_id)
            if versioned is None:
                raise AccountNotFound(f"Account {account_id} not found")
            data, version = versioned
            account = Account.from_dict(data)
            mutate(account)
            account.updated_at = datetime.now(timezone.utc)
            if self.storage.compare_and_swap(self.table_name, account_id, version, account.to_dict()):
                return account
        raise StorageUnavailable(f"Account {account_id} is under contention")
