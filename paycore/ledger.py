"""
Transaction Ledger Module

Append-only transaction history per account with a cached balance.

Each account's ledger is a single versioned record holding the ordered
transactions and the balance. An append reads the record, checks the
prospective balance, and writes transaction and balance back in one
compare-and-swap, so the cached balance always equals the sum of the
signed amounts and a concurrent append can never commit against a stale
balance. Appends for one account are also serialized in-process to avoid
CAS retries; different accounts never contend.
"""

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Union

from .audit import AuditEventType, AuditTrail
from .errors import (
    AccountNotFound, InsufficientFunds, InvalidStateTransition,
    StorageUnavailable, TransactionNotFound, ValidationError
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger(__name__)


class TransactionKind(Enum):
    """Kinds of balance-affecting events"""
    LOCAL_TRANSFER_OUT = "local_transfer_out"
    INTERNATIONAL_TRANSFER_OUT = "international_transfer_out"
    ADD_FUNDS = "add_funds"
    RECEIVED = "received"
    UPI_TRANSFER = "upi_transfer"
    CARD_PAYMENT = "card_payment"
    
    @property
    def is_credit(self) -> bool:
        return self in (TransactionKind.ADD_FUNDS, TransactionKind.RECEIVED)


class TransactionStatus(Enum):
    """Transaction settlement states"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    
    @property
    def is_terminal(self) -> bool:
        return self != TransactionStatus.PENDING


@dataclass
class Counterparty:
    """Free-form description of the other side; not checked against the registry"""
    name: Optional[str] = None
    account: Optional[str] = None
    upi_handle: Optional[str] = None
    routing_code: Optional[str] = None  # IFSC / SWIFT / sort code
    card_type: Optional[str] = None
    card_last_four: Optional[str] = None
    
    def to_dict(self) -> Dict[str, Optional[str]]:
        return {k: v for k, v in self.__dict__.items() if v is not None}
    
    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Counterparty':
        return cls(**(data or {}))


@dataclass
class TransactionDraft:
    """Caller-supplied description of a transaction to append"""
    kind: TransactionKind
    signed_amount: Union[Decimal, int, str]
    counterparty: Counterparty = field(default_factory=Counterparty)
    status: TransactionStatus = TransactionStatus.COMPLETED
    notes: Optional[str] = None
    estimated_completion: Optional[datetime] = None


@dataclass
class Transaction(StorageRecord):
    """
    Immutable record of one ledger event; only status may change, once
    """
    account_id: str
    kind: TransactionKind
    signed_amount: Decimal
    status: TransactionStatus
    counterparty: Counterparty
    notes: Optional[str] = None
    estimated_completion: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'account_id': self.account_id,
            'kind': self.kind.value,
            'signed_amount': str(self.signed_amount),
            'status': self.status.value,
            'counterparty': self.counterparty.to_dict(),
            'notes': self.notes,
            'estimated_completion': (
                self.estimated_completion.isoformat() if self.estimated_completion else None
            ),
            'settled_at': self.settled_at.isoformat() if self.settled_at else None,
        }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        estimated = data.get('estimated_completion')
        settled = data.get('settled_at')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            kind=TransactionKind(data['kind']),
            signed_amount=Decimal(data['signed_amount']),
            status=TransactionStatus(data['status']),
            counterparty=Counterparty.from_dict(data.get('counterparty')),
            notes=data.get('notes'),
            estimated_completion=datetime.fromisoformat(estimated) if estimated else None,
            settled_at=datetime.fromisoformat(settled) if settled else None,
        )


class TransactionLedger:
    """
    Records transactions against accounts and maintains their balances
    """
    
    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        max_retries: int = 5
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.max_retries = max_retries
        self.table_name = "ledgers"
        self.index_table = "transaction_index"
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
    
    @contextmanager
    def _account_lock(self, account_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(account_id, threading.Lock())
        with lock:
            yield
    
    def open(self, account_id: str) -> None:
        """Create an empty ledger for a new account (no-op if it exists)"""
        self.storage.insert_if_absent(self.table_name, account_id, {
            'account_id': account_id,
            'balance': '0',
            'transactions': []
        })
    
    def discard(self, account_id: str) -> bool:
        """Remove a ledger that never received a transaction"""
        return self.storage.delete_if_match(self.table_name, account_id, {"transactions": []})
    
    def append(self, account_id: str, draft: TransactionDraft) -> Transaction:
        """
        Append a transaction and update the balance atomically.
        
        Args:
            account_id: Account whose ledger receives the transaction
            draft: Kind, signed amount and descriptive fields
            
        Returns:
            The committed Transaction
            
        Raises:
            ValidationError: If the amount sign does not match the kind
            AccountNotFound: If the account has no ledger
            InsufficientFunds: If a debit would make the balance negative
        """
        signed_amount = self._validate_draft(draft)
        transaction_id = str(uuid.uuid4())
        
        # Reserve the index entry first so settle can always locate a committed transaction
        self.storage.insert_if_absent(self.index_table, transaction_id, {'account_id': account_id})
        try:
            with self._account_lock(account_id):
                transaction, balance = self._commit_append(
                    account_id, transaction_id, draft, signed_amount
                )
        except BaseException:
            self.storage.delete(self.index_table, transaction_id)
            raise
        
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.TRANSACTION_APPENDED, "transaction", transaction.id,
                metadata={
                    "account_id": account_id,
                    "kind": transaction.kind,
                    "signed_amount": transaction.signed_amount,
                    "balance": balance
                },
                user_id=account_id
            )
        log_action(logger, "info", "Transaction appended", user_id=account_id,
                   action="append", resource="transaction",
                   extra={"transaction_id": transaction.id, "kind": transaction.kind.value})
        return transaction
    
    def _commit_append(
        self,
        account_id: str,
        transaction_id: str,
        draft: TransactionDraft,
        signed_amount: Decimal
    ):
        for _ in range(self.max_retries):
            versioned = self.storage.load_versioned(self.table_name, account_id)
            if versioned is None:
                raise AccountNotFound(f"Account {account_id} not found")
            data, version = versioned
            
            balance = Decimal(data['balance'])
            prospective = balance + signed_amount
            if signed_amount < 0 and prospective < 0:
                self._log_rejection(account_id, draft, balance)
                raise InsufficientFunds(
                    f"Balance {balance} is insufficient for {-signed_amount}"
                )
            
            now = datetime.now(timezone.utc)
            if data['transactions']:
                last_created = datetime.fromisoformat(data['transactions'][-1]['created_at'])
                now = max(now, last_created)
            
            transaction = Transaction(
                id=transaction_id,
                created_at=now,
                updated_at=now,
                account_id=account_id,
                kind=draft.kind,
                signed_amount=signed_amount,
                status=draft.status,
                counterparty=draft.counterparty,
                notes=draft.notes,
                estimated_completion=draft.estimated_completion
            )
            data['transactions'].append(transaction.to_dict())
            data['balance'] = str(prospective)
            
            if self.storage.compare_and_swap(self.table_name, account_id, version, data):
                return transaction, prospective
        
        raise StorageUnavailable(f"Ledger for account {account_id} is under contention")
    
    def settle(self, transaction_id: str, outcome: Union[TransactionStatus, str]) -> Transaction:
        """
        Move a pending transaction to completed or failed.
        
        Settling to the status it already has is a no-op. Settlement changes
        status only; the signed amount stays in the balance.
        
        Raises:
            TransactionNotFound: If the transaction is unknown
            InvalidStateTransition: If outcome is not terminal or conflicts
                with an earlier settlement
        """
        try:
            outcome = TransactionStatus(outcome)
        except ValueError:
            raise InvalidStateTransition(f"Unknown status: {outcome}")
        if not outcome.is_terminal:
            raise InvalidStateTransition("Transactions can only settle to completed or failed")
        
        index = self.storage.load(self.index_table, transaction_id)
        if index is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        account_id = index['account_id']
        
        with self._account_lock(account_id):
            for _ in range(self.max_retries):
                versioned = self.storage.load_versioned(self.table_name, account_id)
                if versioned is None:
                    raise TransactionNotFound(f"Transaction {transaction_id} not found")
                data, version = versioned
                position = self._position(data, transaction_id)
                current = Transaction.from_dict(data['transactions'][position])
                
                if current.status == outcome:
                    return current
                if current.status.is_terminal:
                    raise InvalidStateTransition(
                        f"Transaction {transaction_id} already {current.status.value}"
                    )
                
                now = datetime.now(timezone.utc)
                current.status = outcome
                current.settled_at = now
                current.updated_at = now
                data['transactions'][position] = current.to_dict()
                if self.storage.compare_and_swap(self.table_name, account_id, version, data):
                    break
            else:
                raise StorageUnavailable(f"Ledger for account {account_id} is under contention")
        
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.TRANSACTION_SETTLED, "transaction", transaction_id,
                metadata={"account_id": account_id, "status": outcome}
            )
        log_action(logger, "info", "Transaction settled", user_id=account_id,
                   action="settle", resource="transaction",
                   extra={"transaction_id": transaction_id, "status": outcome.value})
        return current
    
    def list_recent(self, account_id: str, limit: int = 10) -> List[Transaction]:
        """Most recent transactions first, at most limit of them"""
        if limit < 0:
            raise ValidationError("limit", "limit must not be negative")
        data = self._load(account_id)
        recent = data['transactions'][::-1][:limit]
        return [Transaction.from_dict(item) for item in recent]
    
    def get_balance(self, account_id: str) -> Decimal:
        return Decimal(self._load(account_id)['balance'])
    
    def get_transaction(self, transaction_id: str) -> Transaction:
        index = self.storage.load(self.index_table, transaction_id)
        if index is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        data = self.storage.load(self.table_name, index['account_id'])
        if data is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return Transaction.from_dict(data['transactions'][self._position(data, transaction_id)])
    
    def verify_balance(self, account_id: str) -> bool:
        """Check that the cached balance equals the sum of signed amounts"""
        data = self._load(account_id)
        folded = sum(
            (Decimal(item['signed_amount']) for item in data['transactions']),
            Decimal('0')
        )
        return folded == Decimal(data['balance'])
    
    def _load(self, account_id: str) -> Dict[str, Any]:
        data = self.storage.load(self.table_name, account_id)
        if data is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return data
    
    @staticmethod
    def _position(data: Dict[str, Any], transaction_id: str) -> int:
        for position, item in enumerate(data['transactions']):
            if item['id'] == transaction_id:
                return position
        raise TransactionNotFound(f"Transaction {transaction_id} not found")
    
    @staticmethod
    def _validate_draft(draft: TransactionDraft) -> Decimal:
        if not isinstance(draft.kind, TransactionKind):
            raise ValidationError("kind", f"Unknown transaction kind: {draft.kind}")
        if isinstance(draft.signed_amount, float):
            raise ValidationError("signed_amount", "Amounts must be Decimal, int or str")
        try:
            amount = Decimal(str(draft.signed_amount))
        except (InvalidOperation, ValueError):
            raise ValidationError("signed_amount", "Amount is not a number")
        if not amount.is_finite() or amount == 0:
            raise ValidationError("signed_amount", "Amount must be a non-zero number")
        if draft.kind.is_credit and amount < 0:
            raise ValidationError("signed_amount", f"{draft.kind.value} must be a credit")
        if not draft.kind.is_credit and amount > 0:
            raise ValidationError("signed_amount", f"{draft.kind.value} must be a debit")
        return amount
    
    def _log_rejection(self, account_id: str, draft: TransactionDraft, balance: Decimal) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.TRANSACTION_REJECTED, "account", account_id,
                metadata={"kind": draft.kind, "signed_amount": str(draft.signed_amount),
                          "balance": balance, "reason": "insufficient_funds"},
                user_id=account_id
            )
        log_action(logger, "warning", "Insufficient funds", user_id=account_id,
                   action="append", resource="transaction",
                   extra={"kind": draft.kind.value})
