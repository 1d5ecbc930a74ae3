"""
Identity Registry Module

Owns the mapping from each identifier namespace to an account id and
enforces process-wide uniqueness when an account is created. Each
reservation is an insert-if-absent on the key ``<namespace>:<value>``; a
signup reserves its identifiers one namespace at a time in priority order
and releases what it already holds if any later reservation collides.
"""

import uuid
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple, Union

from .errors import DuplicateIdentifier, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface


logger = get_logger(__name__)


class Namespace(Enum):
    """Identifier namespaces, declared in conflict-check priority order"""
    EMAIL = "email"
    ACCOUNT_NUMBER = "account_number"
    CARD_NUMBER = "card_number"
    UPI_HANDLE = "upi_handle"      # sparse
    KYC_ID = "kyc_id"              # sparse
    
    @property
    def required(self) -> bool:
        """Required namespaces must be present on every account"""
        return self not in (Namespace.UPI_HANDLE, Namespace.KYC_ID)
    
    def normalize(self, value: Optional[str]) -> Optional[str]:
        """Trim the value, lower-case emails; empty values count as absent"""
        if value is None:
            return None
        value = str(value).strip()
        if not value:
            return None
        if self is Namespace.EMAIL:
            value = value.lower()
        return value


# Iteration order of the Enum is the priority order
NAMESPACE_PRIORITY: Tuple[Namespace, ...] = tuple(Namespace)

IdentifierMap = Mapping[Union[Namespace, str], Optional[str]]


def normalize_identifiers(identifiers: IdentifierMap) -> Dict[Namespace, str]:
    """
    Normalize an identifier mapping keyed by Namespace or its string value.
    
    Raises:
        ValidationError: If a required namespace is missing or a key is unknown
    """
    result: Dict[Namespace, str] = {}
    for key, raw in identifiers.items():
        try:
            namespace = key if isinstance(key, Namespace) else Namespace(key)
        except ValueError:
            raise ValidationError(str(key), f"Unknown identifier namespace: {key}")
        value = namespace.normalize(raw)
        if value is not None:
            result[namespace] = value
    
    for namespace in NAMESPACE_PRIORITY:
        if namespace.required and namespace not in result:
            raise ValidationError(namespace.value, f"{namespace.value} is required")
    return result


class IdentityRegistry:
    """
    Enforces uniqueness of identifiers across all accounts
    """
    
    def __init__(self, storage: StorageInterface, table_name: str = "identifiers"):
        self.storage = storage
        self.table_name = table_name
    
    @staticmethod
    def _key(namespace: Namespace, value: str) -> str:
        return f"{namespace.value}:{value}"
    
    def register(self, identifiers: IdentifierMap, account_id: Optional[str] = None) -> str:
        """
        Reserve every present identifier for one account.
        
        Args:
            identifiers: Mapping of namespace to value; sparse namespaces may be empty
            account_id: Id to bind the identifiers to (generated if not provided)
            
        Returns:
            The account id the identifiers are now bound to
            
        Raises:
            ValidationError: If a required identifier is missing
            DuplicateIdentifier: Naming the first namespace, in priority order,
                whose value is already bound to another account
        """
        normalized = normalize_identifiers(identifiers)
        account_id = account_id or str(uuid.uuid4())
        
        reserved: List[Tuple[Namespace, str]] = []
        try:
            for namespace in NAMESPACE_PRIORITY:
                value = normalized.get(namespace)
                if value is None:
                    continue
                claimed = self.storage.insert_if_absent(
                    self.table_name,
                    self._key(namespace, value),
                    {"account_id": account_id, "namespace": namespace.value, "value": value}
                )
                if not claimed:
                    raise DuplicateIdentifier(namespace.value)
                reserved.append((namespace, value))
        except Exception as e:
            self._release_pairs(account_id, reserved)
            if isinstance(e, DuplicateIdentifier):
                log_action(logger, "info", "Identifier already registered",
                           action="register", resource="identifier",
                           extra={"namespace": e.namespace})
            raise
        
        return account_id
    
    def lookup(self, namespace: Union[Namespace, str], value: Optional[str]) -> Optional[str]:
        """Resolve an identifier to the account id it is bound to"""
        if not isinstance(namespace, Namespace):
            namespace = Namespace(namespace)
        value = namespace.normalize(value)
        if value is None:
            return None
        record = self.storage.load(self.table_name, self._key(namespace, value))
        return record["account_id"] if record else None
    
    def release(self, account_id: str, identifiers: IdentifierMap) -> int:
        """
        Compensating release of reservations made for account_id.
        
        Keys that are absent or bound to a different account are left alone.
        
        Returns:
            Number of reservations removed
        """
        pairs = []
        for key, raw in identifiers.items():
            namespace = key if isinstance(key, Namespace) else Namespace(key)
            value = namespace.normalize(raw)
            if value is not None:
                pairs.append((namespace, value))
        return self._release_pairs(account_id, pairs)
    
    def _release_pairs(self, account_id: str, pairs: List[Tuple[Namespace, str]]) -> int:
        released = 0
        for namespace, value in pairs:
            if self.storage.delete_if_match(
                self.table_name, self._key(namespace, value), {"account_id": account_id}
            ):
                released += 1
        return released
