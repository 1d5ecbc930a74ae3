"""
Credential Verifier Module

Password and PIN hashing, verification and the login flows built on them.

PIN login receives no identifier, so it scans a snapshot of every account
in creation order and stops at the first stored PIN hash that matches.
Salted hashes cannot be indexed without weakening them, so the scan stays
linear; the AttemptLimiter bounds how many guesses any caller can make.
"""

import hashlib
import re
import secrets
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from .accounts import Account, AccountStore
from .audit import AuditEventType, AuditTrail
from .errors import InvalidCredential, RateLimitExceeded, ValidationError
from .logging_config import get_logger, log_action
from .registry import IdentityRegistry, Namespace


logger = get_logger(__name__)

PIN_PATTERN = re.compile(r"[0-9]{4}")
HASH_SCHEME = "scrypt"


def validate_pin_format(pin: Optional[str], field: str = "pin") -> str:
    """Raise ValidationError unless pin is exactly four decimal digits"""
    if not isinstance(pin, str) or not PIN_PATTERN.fullmatch(pin):
        raise ValidationError(field, "PIN must be 4 digits")
    return pin


class AttemptLimiter:
    """
    Sliding-window failure counter with temporary lockout per caller key.
    
    An attempt is reserved with acquire() before any hash is computed and
    later settled with record_failure(), record_success() or release().
    Reservations still in flight count against the limit, so concurrent
    guesses on one key never exceed max_failures per lockout cycle.
    """
    
    def __init__(
        self,
        max_failures: int = 5,
        window_seconds: float = 300,
        lockout_seconds: float = 900,
        clock: Callable[[], float] = time.monotonic,
        sweep_threshold: int = 1024
    ):
        self.max_failures = max_failures
        self.window_seconds = window_seconds
        self.lockout_seconds = lockout_seconds
        self.sweep_threshold = sweep_threshold
        self._clock = clock
        self._failures: Dict[str, Deque[float]] = {}
        self._locked_until: Dict[str, float] = {}
        self._in_flight: Dict[str, int] = {}
        self._next_sweep = sweep_threshold
        self._lock = threading.Lock()
    
    @property
    def tracked_keys(self) -> int:
        """Number of keys currently holding limiter state"""
        with self._lock:
            return len(set(self._failures) | set(self._locked_until) | set(self._in_flight))
    
    def check(self, key: str) -> None:
        """Raise RateLimitExceeded while key is locked out"""
        with self._lock:
            self._check_locked(key, self._clock())
    
    def acquire(self, key: str) -> None:
        """
        Reserve one attempt for key.
        
        Raises:
            RateLimitExceeded: If the key is locked, or failures in the window
                plus attempts still in flight already reach max_failures
        """
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            self._check_locked(key, now)
            failures = self._prune(key, now)
            pending = self._in_flight.get(key, 0)
            if pending + failures >= self.max_failures:
                raise RateLimitExceeded(retry_after=self._retry_after(key, now))
            self._in_flight[key] = pending + 1
    
    def release(self, key: str) -> None:
        """Drop a reservation whose attempt ended without an outcome"""
        with self._lock:
            self._settle(key)
    
    def record_failure(self, key: str) -> bool:
        """
        Count a failed attempt, consuming its reservation if one is held.
        
        Returns:
            True if this failure locked the key
        """
        with self._lock:
            now = self._clock()
            self._settle(key)
            self._failures.setdefault(key, deque()).append(now)
            self._maybe_sweep(now)
            if self._prune(key, now) >= self.max_failures:
                self._locked_until[key] = now + self.lockout_seconds
                self._failures.pop(key, None)
                return True
            return False
    
    def record_success(self, key: str) -> None:
        with self._lock:
            self._settle(key)
            self._failures.pop(key, None)
            self._locked_until.pop(key, None)
    
    # Internal helpers; callers hold self._lock
    
    def _check_locked(self, key: str, now: float) -> None:
        until = self._locked_until.get(key)
        if until is None:
            return
        if now < until:
            raise RateLimitExceeded(retry_after=until - now)
        del self._locked_until[key]
        self._failures.pop(key, None)
    
    def _prune(self, key: str, now: float) -> int:
        """Drop failures older than the window; forget the key once empty"""
        failures = self._failures.get(key)
        if failures is None:
            return 0
        while failures and now - failures[0] > self.window_seconds:
            failures.popleft()
        if not failures:
            del self._failures[key]
            return 0
        return len(failures)
    
    def _settle(self, key: str) -> None:
        pending = self._in_flight.get(key, 0)
        if pending > 1:
            self._in_flight[key] = pending - 1
        else:
            self._in_flight.pop(key, None)
    
    def _retry_after(self, key: str, now: float) -> float:
        failures = self._failures.get(key)
        if failures:
            return max(self.window_seconds - (now - failures[0]), 1.0)
        return 1.0
    
    def _maybe_sweep(self, now: float) -> None:
        """Amortised cleanup of expired lockouts and stale failure windows"""
        if len(self._failures) + len(self._locked_until) < self._next_sweep:
            return
        for key in [k for k, until in self._locked_until.items() if now >= until]:
            del self._locked_until[key]
        for key in list(self._failures):
            self._prune(key, now)
        remaining = len(self._failures) + len(self._locked_until)
        self._next_sweep = max(self.sweep_threshold, 2 * remaining)


class CredentialVerifier:
    """
    Hashes and verifies passwords and PINs, and runs the login flows
    """
    
    def __init__(
        self,
        accounts: AccountStore,
        registry: IdentityRegistry,
        limiter: Optional[AttemptLimiter] = None,
        audit_trail: Optional[AuditTrail] = None,
        scrypt_n: int = 16384,
        scrypt_r: int = 8,
        scrypt_p: int = 1
    ):
        self.accounts = accounts
        self.registry = registry
        self.limiter = limiter or AttemptLimiter()
        self.audit_trail = audit_trail
        self.scrypt_n = scrypt_n
        self.scrypt_r = scrypt_r
        self.scrypt_p = scrypt_p
        self._dummy_hash: Optional[str] = None
    
    # Hashing
    
    def _hash_secret(self, plain: str) -> str:
        salt = secrets.token_hex(16)
        digest = self._derive(plain, salt, self.scrypt_n, self.scrypt_r, self.scrypt_p)
        return f"{HASH_SCHEME}${self.scrypt_n}${self.scrypt_r}${self.scrypt_p}${salt}${digest}"
    
    @staticmethod
    def _derive(plain: str, salt: str, n: int, r: int, p: int) -> str:
        return hashlib.scrypt(
            plain.encode(),
            salt=salt.encode(),
            n=n, r=r, p=p,
            maxmem=256 * r * n + 1024 * 1024
        ).hex()
    
    def _matches(self, candidate: str, stored_hash: str) -> bool:
        """Constant-time comparison of candidate against an encoded hash"""
        try:
            scheme, n, r, p, salt, digest = stored_hash.split("$")
        except (AttributeError, ValueError):
            return False
        if scheme != HASH_SCHEME or not isinstance(candidate, str):
            return False
        expected = self._derive(candidate, salt, int(n), int(r), int(p))
        return secrets.compare_digest(expected, digest)
    
    def hash_password(self, plain: str) -> str:
        if not isinstance(plain, str) or not plain.strip():
            raise ValidationError("password", "Password is required")
        return self._hash_secret(plain.strip())
    
    def hash_pin(self, plain: str) -> str:
        return self._hash_secret(validate_pin_format(plain))
    
    # Verification
    
    def verify_password(self, account_id: str, candidate: str) -> bool:
        account = self.accounts.get(account_id)
        if account is None or not isinstance(candidate, str):
            return False
        return self._matches(candidate.strip(), account.password_hash)
    
    def verify_pin(self, account_id: str, candidate: str) -> bool:
        account = self.accounts.get(account_id)
        if account is None:
            return False
        return self._matches(candidate, account.pin_hash)
    
    def authorize_pin(self, account_id: str, candidate: str) -> Account:
        """
        Re-verify the PIN of a known account, counting failures per account.
        
        Raises:
            ValidationError: If candidate is not four digits
            RateLimitExceeded: If the account is locked out
            InvalidCredential: If the account is unknown or the PIN is wrong
        """
        validate_pin_format(candidate)
        key = f"pin:{account_id}"
        account = self._reserved(key, lambda: self._pin_owner(account_id, candidate))
        
        if account is None:
            self._failed(key, account_id, "pin_verify")
            raise InvalidCredential("Invalid PIN")
        
        self.limiter.record_success(key)
        return account
    
    # Login flows
    
    def login_by_password(self, email: str, candidate: str) -> str:
        """
        Authenticate by email and password.
        
        Returns:
            The authenticated account id
        """
        normalized = Namespace.EMAIL.normalize(email)
        if normalized is None or not candidate:
            raise ValidationError("email", "Email and password are required")
        
        key = f"password:{normalized}"
        
        def evaluate() -> Optional[Account]:
            account_id = self.registry.lookup(Namespace.EMAIL, normalized)
            account = self.accounts.get(account_id) if account_id else None
            if account is None:
                # Burn the same hashing cost so unknown emails are not distinguishable by timing
                self._matches(candidate, self._get_dummy_hash())
                return None
            return account if self._matches(candidate.strip(), account.password_hash) else None
        
        account = self._reserved(key, evaluate)
        if account is None:
            self._failed(key, None, "password_login")
            raise InvalidCredential("Invalid email or password")
        
        self._succeeded(key, account.id, "password_login")
        return account.id
    
    def login_by_pin(self, candidate: str, caller: str = "anonymous") -> str:
        """
        Authenticate by PIN alone.
        
        Scans a snapshot of all accounts in creation order; the first
        account whose PIN hash matches wins. Accounts created while the
        scan runs may or may not be seen.
        
        Args:
            candidate: Four-digit PIN
            caller: Key identifying the caller for attempt limiting
            
        Returns:
            The authenticated account id
        """
        validate_pin_format(candidate)
        key = f"pin-login:{caller}"
        
        def scan() -> Optional[Account]:
            for account in self.accounts.snapshot():
                if self._matches(candidate, account.pin_hash):
                    return account
            return None
        
        matched = self._reserved(key, scan)
        if matched is None:
            self._failed(key, None, "pin_login")
            raise InvalidCredential("Invalid PIN")
        
        self._succeeded(key, matched.id, "pin_login")
        return matched.id
    
    def change_pin(self, account_id: str, old_candidate: str, new_plain_pin: str) -> None:
        """
        Replace the PIN of an account after verifying the current one.
        
        The new PIN format is checked before any hashing happens.
        """
        validate_pin_format(new_plain_pin, field="new_pin")
        if not isinstance(old_candidate, str) or not old_candidate:
            raise ValidationError("old_pin", "Old PIN is required")
        
        key = f"pin:{account_id}"
        if self._reserved(key, lambda: self._pin_owner(account_id, old_candidate)) is None:
            self._failed(key, account_id, "pin_change")
            raise InvalidCredential("Invalid old PIN")
        self.limiter.record_success(key)
        
        new_hash = self.hash_pin(new_plain_pin)
        
        def set_pin(acc: Account) -> None:
            acc.pin_hash = new_hash
        
        self.accounts.update(account_id, set_pin)
        
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.PIN_CHANGED, "account", account_id, user_id=account_id
            )
        log_action(logger, "info", "PIN changed", user_id=account_id,
                   action="pin_change", resource="account")
    
    # Helpers
    
    def _reserved(self, key: str, evaluate: Callable[[], Optional[Account]]) -> Optional[Account]:
        """
        Run evaluate under an attempt reservation for key.
        
        The caller settles the reservation with _failed or _succeeded; it is
        released here only when evaluate raises.
        """
        self.limiter.acquire(key)
        try:
            return evaluate()
        except BaseException:
            self.limiter.release(key)
            raise
    
    def _pin_owner(self, account_id: str, candidate: str) -> Optional[Account]:
        account = self.accounts.get(account_id)
        if account is None or not self._matches(candidate, account.pin_hash):
            return None
        return account
    
    def _get_dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self._hash_secret(secrets.token_hex(8))
        return self._dummy_hash
    
    def _failed(self, key: str, account_id: Optional[str], action: str) -> None:
        locked = self.limiter.record_failure(key)
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.LOGIN_FAILED if action.endswith("login") else AuditEventType.PIN_VERIFIED,
                "account" if account_id else "caller",
                account_id or key,
                metadata={"action": action, "success": False}
            )
            if locked:
                self.audit_trail.log_event(
                    AuditEventType.ATTEMPTS_LOCKED, "caller", key,
                    metadata={"action": action}
                )
        log_action(logger, "warning", "Credential check failed", user_id=account_id,
                   action=action, resource="credential", extra={"locked": locked})
    
    def _succeeded(self, key: str, account_id: str, action: str) -> None:
        self.limiter.record_success(key)
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.LOGIN_SUCCESS, "account", account_id,
                metadata={"action": action}, user_id=account_id
            )
        log_action(logger, "info", "Login succeeded", user_id=account_id,
                   action=action, resource="session")
