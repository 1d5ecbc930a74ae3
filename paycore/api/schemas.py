"""
Pydantic schemas for API requests and responses
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from ..ledger import Counterparty, Transaction


class SignupRequest(BaseModel):
    # Required fields are checked by the service so the first violation is reported
    email: Optional[str] = None
    password: Optional[str] = None
    pin_code: Optional[str] = Field(None, description="4-digit PIN for quick login")
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    address: str = ""
    account_number: Optional[str] = None
    card_number: Optional[str] = None
    card_cvc: Optional[str] = None
    card_expiry: Optional[str] = None
    card_type: Optional[str] = Field(None, description="visa or mastercard")
    upi_handle: Optional[str] = None
    kyc_id: Optional[str] = Field(None, description="14-digit CKYC number")


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class PinLoginRequest(BaseModel):
    pin_code: Optional[str] = None


class ChangePinRequest(BaseModel):
    account_id: str
    old_pin: Optional[str] = None
    new_pin: Optional[str] = None


class VerifyPinRequest(BaseModel):
    account_id: str
    pin_code: Optional[str] = None


class ResolvePayeeRequest(BaseModel):
    upi_handle: Optional[str] = None
    phone_number: Optional[str] = None


class CounterpartyModel(BaseModel):
    name: Optional[str] = None
    account: Optional[str] = None
    upi_handle: Optional[str] = None
    routing_code: Optional[str] = Field(None, description="IFSC / SWIFT / sort code")
    card_type: Optional[str] = None
    card_last_four: Optional[str] = None
    
    def to_counterparty(self) -> Counterparty:
        return Counterparty(**self.model_dump())


class AppendTransactionRequest(BaseModel):
    kind: str = Field(..., description="local_transfer_out, international_transfer_out, "
                                       "add_funds, received, upi_transfer or card_payment")
    signed_amount: str = Field(..., description="Decimal amount as string; negative for debits")
    counterparty: CounterpartyModel = Field(default_factory=CounterpartyModel)
    status: str = "completed"
    notes: Optional[str] = None
    estimated_completion: Optional[datetime] = None


class SettleTransactionRequest(BaseModel):
    status: str = Field(..., description="completed or failed")


def transaction_to_dict(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "kind": txn.kind.value,
        "signed_amount": str(txn.signed_amount),
        "status": txn.status.value,
        "counterparty": txn.counterparty.to_dict(),
        "notes": txn.notes,
        "estimated_completion": (
            txn.estimated_completion.isoformat() if txn.estimated_completion else None
        ),
        "settled_at": txn.settled_at.isoformat() if txn.settled_at else None,
        "created_at": txn.created_at.isoformat(),
    }
