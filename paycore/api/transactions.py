"""
Ledger endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status

from .deps import get_current_account, get_service, require_same_account, require_service_key
from .schemas import AppendTransactionRequest, SettleTransactionRequest, transaction_to_dict
from ..errors import ValidationError
from ..ledger import TransactionDraft, TransactionKind, TransactionStatus
from ..service import AccountService


accounts_router = APIRouter()
transactions_router = APIRouter()


@accounts_router.post("/{account_id}/transactions", status_code=status.HTTP_201_CREATED)
def append_transaction(
    account_id: str,
    request: AppendTransactionRequest,
    http_request: Request,
    x_service_key: Optional[str] = Header(None),
    current_account: str = Depends(get_current_account),
    service: AccountService = Depends(get_service)
):
    """
    Record a transaction against the caller's own account.
    
    A holder token alone may only post debits. Credits (add_funds,
    received) move money into the account and also require the
    X-Service-Key header of the collaborator that settled the funds.
    """
    require_same_account(account_id, current_account)
    try:
        kind = TransactionKind(request.kind)
    except ValueError:
        raise ValidationError("kind", f"Unknown transaction kind: {request.kind}")
    if kind.is_credit:
        require_service_key(http_request, x_service_key)
    try:
        initial_status = TransactionStatus(request.status)
    except ValueError:
        raise ValidationError("status", f"Unknown status: {request.status}")
    
    transaction = service.record_transaction(account_id, TransactionDraft(
        kind=kind,
        signed_amount=request.signed_amount,
        counterparty=request.counterparty.to_counterparty(),
        status=initial_status,
        notes=request.notes,
        estimated_completion=request.estimated_completion,
    ))
    return {
        "transaction": transaction_to_dict(transaction),
        "balance": str(service.ledger.get_balance(account_id)),
    }


@accounts_router.get("/{account_id}/transactions")
def list_transactions(
    account_id: str,
    limit: int = Query(10, ge=0, le=500),
    current_account: str = Depends(get_current_account),
    service: AccountService = Depends(get_service)
):
    """Most recent transactions first"""
    require_same_account(account_id, current_account)
    transactions = service.list_transactions(account_id, limit)
    return {"transactions": [transaction_to_dict(txn) for txn in transactions]}


@transactions_router.post("/{transaction_id}/settle")
def settle_transaction(
    transaction_id: str,
    request: SettleTransactionRequest,
    current_account: str = Depends(get_current_account),
    service: AccountService = Depends(get_service)
):
    """Complete or fail a pending transaction of the caller's account"""
    require_same_account(service.ledger.get_transaction(transaction_id).account_id, current_account)
    transaction = service.settle_transaction(transaction_id, request.status)
    return {"transaction": transaction_to_dict(transaction)}
