"""
Account Service Module

Composition root that wires the identity registry, credential verifier,
transaction ledger and session issuer into the operations exposed to the
HTTP layer: signup, password and PIN login, PIN change and verification,
account lookup, payee resolution and ledger access.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from .accounts import Account, AccountStore, CardType
from .audit import AuditEventType, AuditTrail
from .config import PaycoreConfig, get_config
from .credentials import AttemptLimiter, CredentialVerifier, validate_pin_format
from .errors import AccountNotFound, ValidationError
from .ledger import Transaction, TransactionDraft, TransactionLedger, TransactionStatus
from .logging_config import get_logger, log_action
from .registry import IdentityRegistry, Namespace, normalize_identifiers
from .sessions import SessionIssuer
from .storage import StorageInterface, create_storage


logger = get_logger(__name__)

KYC_PATTERN = re.compile(r"[0-9]{14}")


@dataclass
class SignupProfile:
    """Descriptive holder data supplied at signup"""
    full_name: str
    phone_number: str
    card_type: str
    card_expiry: str
    card_cvc: str
    address: str = ""


@dataclass
class SignupCredentials:
    password: str
    pin: str


@dataclass
class LoginResult:
    token: str
    account: Dict[str, Any]


def _required(value: Optional[str], field: str, message: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(field, message)
    return str(value).strip()


class AccountService:
    """
    Orchestrates registry, verifier, ledger and issuer
    """
    
    def __init__(
        self,
        registry: IdentityRegistry,
        accounts: AccountStore,
        verifier: CredentialVerifier,
        ledger: TransactionLedger,
        issuer: SessionIssuer,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.registry = registry
        self.accounts = accounts
        self.verifier = verifier
        self.ledger = ledger
        self.issuer = issuer
        self.audit_trail = audit_trail
    
    @classmethod
    def from_config(
        cls,
        config: Optional[PaycoreConfig] = None,
        storage: Optional[StorageInterface] = None
    ) -> 'AccountService':
        """Build the full component graph from configuration"""
        config = config or get_config()
        storage = storage or create_storage(config.database_url)
        
        audit_trail = AuditTrail(storage, enabled=config.enable_audit_logging)
        registry = IdentityRegistry(storage)
        accounts = AccountStore(storage, max_retries=config.ledger_max_retries)
        limiter = AttemptLimiter(
            max_failures=config.max_failed_attempts,
            window_seconds=config.attempt_window_seconds,
            lockout_seconds=config.lockout_seconds
        )
        verifier = CredentialVerifier(
            accounts, registry, limiter, audit_trail,
            scrypt_n=config.scrypt_n, scrypt_r=config.scrypt_r, scrypt_p=config.scrypt_p
        )
        ledger = TransactionLedger(storage, audit_trail, max_retries=config.ledger_max_retries)
        issuer = SessionIssuer(
            secret=config.jwt_secret,
            ttl=timedelta(hours=config.session_ttl_hours),
            algorithm=config.jwt_algorithm,
            issuer=config.jwt_issuer
        )
        return cls(registry, accounts, verifier, ledger, issuer, audit_trail)
    
    # Signup
    
    def validate_signup(
        self,
        profile: SignupProfile,
        identifiers: Mapping[Union[Namespace, str], Optional[str]],
        credentials: SignupCredentials
    ) -> Dict[Namespace, str]:
        """
        Check every field format before anything is reserved or stored.
        
        The first violated constraint is raised as ValidationError.
        """
        raw: Dict[Namespace, Optional[str]] = {}
        for key, value in identifiers.items():
            try:
                raw[key if isinstance(key, Namespace) else Namespace(key)] = value
            except ValueError:
                raise ValidationError(str(key), f"Unknown identifier namespace: {key}")
        if not Namespace.EMAIL.normalize(raw.get(Namespace.EMAIL)):
            raise ValidationError("email", "Email and password are required")
        _required(credentials.password, "password", "Email and password are required")
        validate_pin_format(credentials.pin)
        _required(profile.full_name, "full_name", "Full name is required")
        _required(profile.phone_number, "phone_number", "Phone number is required")
        _required(raw.get(Namespace.ACCOUNT_NUMBER), "account_number", "Account number is required")
        _required(raw.get(Namespace.CARD_NUMBER), "card_number", "Card number is required")
        _required(profile.card_cvc, "card_cvc", "Card CVC is required")
        _required(profile.card_expiry, "card_expiry", "Card expiry date is required")
        card_type = (profile.card_type or "").strip().lower()
        if card_type not in {t.value for t in CardType}:
            raise ValidationError("card_type", "Card type must be Visa or Mastercard")
        kyc_id = Namespace.KYC_ID.normalize(raw.get(Namespace.KYC_ID))
        if kyc_id is not None and not KYC_PATTERN.fullmatch(kyc_id):
            raise ValidationError("kyc_id", "KYC number must be 14 digits")
        
        return normalize_identifiers(raw)
    
    def signup(
        self,
        profile: SignupProfile,
        identifiers: Mapping[Union[Namespace, str], Optional[str]],
        credentials: SignupCredentials
    ) -> str:
        """
        Create an account.
        
        Either the identifiers, credentials and an empty ledger are all
        committed, or every reservation is released and nothing is stored.
        
        Returns:
            The new account id
        """
        normalized = self.validate_signup(profile, identifiers, credentials)
        account_id = self.registry.register(normalized, account_id=str(uuid.uuid4()))
        
        ledger_opened = False
        try:
            password_hash = self.verifier.hash_password(credentials.password)
            pin_hash = self.verifier.hash_pin(credentials.pin)
            now = datetime.now(timezone.utc)
            account = Account(
                id=account_id,
                created_at=now,
                updated_at=now,
                email=normalized[Namespace.EMAIL],
                account_number=normalized[Namespace.ACCOUNT_NUMBER],
                card_number=normalized[Namespace.CARD_NUMBER],
                upi_handle=normalized.get(Namespace.UPI_HANDLE),
                kyc_id=normalized.get(Namespace.KYC_ID),
                password_hash=password_hash,
                pin_hash=pin_hash,
                full_name=profile.full_name.strip(),
                phone_number=profile.phone_number.strip(),
                address=(profile.address or "").strip(),
                card_type=CardType(profile.card_type.strip().lower()),
                card_expiry=profile.card_expiry.strip(),
                card_cvc=profile.card_cvc.strip()
            )
            # The ledger exists before the account is visible to PIN scans
            self.ledger.open(account_id)
            ledger_opened = True
            self.accounts.create(account)
        except Exception:
            if ledger_opened:
                self.ledger.discard(account_id)
            released = self.registry.release(account_id, normalized)
            if self.audit_trail:
                self.audit_trail.log_event(
                    AuditEventType.IDENTIFIERS_RELEASED, "account", account_id,
                    metadata={"released": released}
                )
            logger.exception("Signup failed after identifiers were reserved; released %d", released)
            raise
        
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_CREATED, "account", account_id,
                metadata={"namespaces": [ns.value for ns in normalized]},
                user_id=account_id
            )
        log_action(logger, "info", "Account registered", user_id=account_id,
                   action="signup", resource="account")
        return account_id
    
    # Authentication
    
    def login_with_password(self, email: str, password: str) -> LoginResult:
        account_id = self.verifier.login_by_password(email, password)
        return self._session_for(account_id)
    
    def login_with_pin(self, pin: str, caller: str = "anonymous") -> LoginResult:
        account_id = self.verifier.login_by_pin(pin, caller=caller)
        return self._session_for(account_id)
    
    def authenticate(self, token: str) -> str:
        """Resolve a bearer token to the account id it was issued for"""
        return self.issuer.validate(token)
    
    def change_pin(self, account_id: str, old_pin: str, new_pin: str) -> None:
        self.verifier.change_pin(account_id, old_pin, new_pin)
    
    def verify_pin(self, account_id: str, pin: str) -> bool:
        """Returns True or raises InvalidCredential"""
        self.verifier.authorize_pin(account_id, pin)
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.PIN_VERIFIED, "account", account_id,
                metadata={"success": True}, user_id=account_id
            )
        return True
    
    # Directory
    
    def get_account(self, account_id: str) -> Dict[str, Any]:
        """Public profile including the current balance"""
        account = self.accounts.require(account_id)
        return account.public_profile(self.ledger.get_balance(account_id))
    
    def resolve_payee(
        self,
        upi_handle: Optional[str] = None,
        phone_number: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Look up a payee by UPI handle, or by phone number when no handle is given.
        
        Returns only name, handle, phone and account number.
        """
        account: Optional[Account] = None
        if upi_handle and upi_handle.strip():
            account_id = self.registry.lookup(Namespace.UPI_HANDLE, upi_handle)
            account = self.accounts.get(account_id) if account_id else None
        elif phone_number and phone_number.strip():
            account = self.accounts.find_by_phone(phone_number)
        else:
            raise ValidationError("upi_handle", "Please provide UPI handle or phone number")
        
        if account is None:
            raise AccountNotFound("UPI ID or Phone number not found")
        return account.payee_view()
    
    # Ledger
    
    def record_transaction(self, account_id: str, draft: TransactionDraft) -> Transaction:
        return self.ledger.append(account_id, draft)
    
    def list_transactions(self, account_id: str, limit: int = 10) -> List[Transaction]:
        return self.ledger.list_recent(account_id, limit)
    
    def settle_transaction(
        self,
        transaction_id: str,
        outcome: Union[TransactionStatus, str]
    ) -> Transaction:
        return self.ledger.settle(transaction_id, outcome)
    
    def _session_for(self, account_id: str) -> LoginResult:
        return LoginResult(
            token=self.issuer.issue(account_id),
            account=self.get_account(account_id)
        )
