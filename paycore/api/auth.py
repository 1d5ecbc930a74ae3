"""
Signup, login, PIN and directory endpoints
"""

from fastapi import APIRouter, Depends, Request, status

from .deps import get_current_account, get_service, require_same_account
from .schemas import (
    ChangePinRequest, LoginRequest, PinLoginRequest, ResolvePayeeRequest,
    SignupRequest, VerifyPinRequest
)
from ..registry import Namespace
from ..service import AccountService, SignupCredentials, SignupProfile


router = APIRouter()


@router.post("/signup", status_code=status.HTTP_201_CREATED)
def signup(request: SignupRequest, service: AccountService = Depends(get_service)):
    """Register a new account holder"""
    account_id = service.signup(
        profile=SignupProfile(
            full_name=request.full_name,
            phone_number=request.phone_number,
            card_type=request.card_type,
            card_expiry=request.card_expiry,
            card_cvc=request.card_cvc,
            address=request.address,
        ),
        identifiers={
            Namespace.EMAIL: request.email,
            Namespace.ACCOUNT_NUMBER: request.account_number,
            Namespace.CARD_NUMBER: request.card_number,
            Namespace.UPI_HANDLE: request.upi_handle,
            Namespace.KYC_ID: request.kyc_id,
        },
        credentials=SignupCredentials(password=request.password, pin=request.pin_code),
    )
    return {
        "message": "User registered successfully",
        "account": service.get_account(account_id),
    }


@router.post("/login")
def login(request: LoginRequest, service: AccountService = Depends(get_service)):
    """Login with email and password"""
    result = service.login_with_password(request.email, request.password)
    return {"token": result.token, "token_type": "bearer", "account": result.account}


@router.post("/login-pin")
def login_pin(
    request: PinLoginRequest,
    http_request: Request,
    service: AccountService = Depends(get_service)
):
    """Login with the 4-digit PIN only"""
    caller = http_request.client.host if http_request.client else "anonymous"
    result = service.login_with_pin(request.pin_code, caller=caller)
    return {"token": result.token, "token_type": "bearer", "account": result.account}


@router.post("/change-pin")
def change_pin(
    request: ChangePinRequest,
    current_account: str = Depends(get_current_account),
    service: AccountService = Depends(get_service)
):
    require_same_account(request.account_id, current_account)
    service.change_pin(request.account_id, request.old_pin, request.new_pin)
    return {"message": "PIN changed successfully"}


@router.post("/verify-pin")
def verify_pin(
    request: VerifyPinRequest,
    current_account: str = Depends(get_current_account),
    service: AccountService = Depends(get_service)
):
    require_same_account(request.account_id, current_account)
    service.verify_pin(request.account_id, request.pin_code)
    return {"success": True, "message": "PIN verified successfully"}


@router.get("/me")
def get_me(
    current_account: str = Depends(get_current_account),
    service: AccountService = Depends(get_service)
):
    """Profile of the token holder"""
    return service.get_account(current_account)


@router.get("/me/{account_id}")
def get_account(
    account_id: str,
    current_account: str = Depends(get_current_account),
    service: AccountService = Depends(get_service)
):
    require_same_account(account_id, current_account)
    return service.get_account(account_id)


@router.post("/verify-upi")
def resolve_payee(request: ResolvePayeeRequest, service: AccountService = Depends(get_service)):
    """Resolve a payee by UPI handle or phone number"""
    payee = service.resolve_payee(upi_handle=request.upi_handle, phone_number=request.phone_number)
    return {"success": True, "account": payee, "message": "UPI verified successfully"}
