"""
Request dependencies: the account service and bearer-token authentication
"""

import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..errors import TokenInvalid
from ..service import AccountService


security = HTTPBearer(auto_error=False)


def get_service(request: Request) -> AccountService:
    return request.app.state.service


def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    service: AccountService = Depends(get_service)
) -> str:
    """Validate the bearer token and return the account id it was issued for"""
    if not credentials:
        raise TokenInvalid("Not authenticated")
    return service.authenticate(credentials.credentials)


def require_same_account(account_id: str, current_account: str) -> None:
    if account_id != current_account:
        raise HTTPException(status_code=403, detail="Token does not belong to this account")


def require_service_key(request: Request, presented: Optional[str]) -> None:
    """Only collaborators holding the configured ledger service key may post credits"""
    expected = request.app.state.config.ledger_service_key
    if not expected or not presented or not secrets.compare_digest(presented, expected):
        raise HTTPException(status_code=403, detail="Credits require the ledger service key")
