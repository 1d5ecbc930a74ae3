"""
Integration tests for the paycore API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from paycore.api import create_app
from paycore.config import PaycoreConfig


SIGNUP = {
    "email": "Jane@Example.com",
    "password": "correct horse",
    "pin_code": "2468",
    "full_name": "Jane Smith",
    "phone_number": "+1987654321",
    "address": "42 High Street",
    "account_number": "ACC100",
    "card_number": "5500000000000004",
    "card_cvc": "321",
    "card_expiry": "08/28",
    "card_type": "Mastercard",
    "upi_handle": "jane@upi",
}

SERVICE_KEY = {"X-Service-Key": "test-service-key"}


@pytest.fixture
def client(service, config):
    """Test client over an in-memory service"""
    return TestClient(create_app(service, config))


@pytest.fixture
def signed_up(client):
    """Register the default holder and return (account_id, auth headers)"""
    r = client.post("/auth/signup", json=SIGNUP)
    assert r.status_code == 201
    account_id = r.json()["account"]["id"]
    
    r = client.post("/auth/login", json={"email": "jane@example.com", "password": "correct horse"})
    return account_id, {"Authorization": f"Bearer {r.json()['token']}"}


class TestHealthEndpoints:
    
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestSignupFlow:
    """Signup endpoint tests"""
    
    def test_signup(self, client):
        """Test registering a holder"""
        r = client.post("/auth/signup", json=SIGNUP)
        assert r.status_code == 201
        data = r.json()
        assert data["message"] == "User registered successfully"
        assert data["account"]["email"] == "jane@example.com"
        assert data["account"]["card_last_four"] == "0004"
        assert data["account"]["balance"] == "0"
        assert "card_cvc" not in data["account"]
    
    def test_duplicate_signup(self, client):
        client.post("/auth/signup", json=SIGNUP)
        r = client.post("/auth/signup", json={**SIGNUP, "account_number": "ACC200"})
        
        assert r.status_code == 409
        assert r.json()["code"] == "DUPLICATE_IDENTIFIER"
        assert r.json()["namespace"] == "email"
    
    def test_missing_field(self, client):
        """Test that the first missing field is named in the error"""
        body = dict(SIGNUP)
        del body["full_name"]
        del body["card_cvc"]
        r = client.post("/auth/signup", json=body)
        
        assert r.status_code == 400
        assert r.json()["success"] is False
        assert r.json()["field"] == "full_name"
    
    def test_bad_pin(self, client):
        r = client.post("/auth/signup", json={**SIGNUP, "pin_code": "12345"})
        assert r.status_code == 400
        assert r.json()["field"] == "pin"


class TestLoginFlow:
    """Password and PIN login"""
    
    def test_password_login(self, client, signed_up):
        account_id, _ = signed_up
        r = client.post("/auth/login", json={"email": "JANE@example.com", "password": "correct horse"})
        
        assert r.status_code == 200
        assert r.json()["token_type"] == "bearer"
        assert r.json()["account"]["id"] == account_id
    
    def test_wrong_password(self, client, signed_up):
        r = client.post("/auth/login", json={"email": "jane@example.com", "password": "wrong"})
        assert r.status_code == 401
        assert r.json()["code"] == "INVALID_CREDENTIAL"
    
    def test_pin_login(self, client, signed_up):
        account_id, _ = signed_up
        r = client.post("/auth/login-pin", json={"pin_code": "2468"})
        assert r.status_code == 200
        assert r.json()["account"]["id"] == account_id
    
    def test_pin_login_lockout(self, client, signed_up):
        """Repeated wrong PINs from one caller lock it out"""
        for _ in range(5):
            assert client.post("/auth/login-pin", json={"pin_code": "0000"}).status_code == 401
        
        r = client.post("/auth/login-pin", json={"pin_code": "2468"})
        assert r.status_code == 429
        assert int(r.headers["Retry-After"]) > 0
    
    def test_me(self, client, signed_up):
        account_id, headers = signed_up
        r = client.get("/auth/me", headers=headers)
        assert r.status_code == 200
        assert r.json()["id"] == account_id
        
        assert client.get(f"/auth/me/{account_id}", headers=headers).status_code == 200
    
    def test_me_requires_token(self, client, signed_up):
        assert client.get("/auth/me").status_code == 401
        r = client.get("/auth/me", headers={"Authorization": "Bearer nonsense"})
        assert r.status_code == 401
        assert r.json()["code"] == "TOKEN_INVALID"
    
    def test_other_account_forbidden(self, client, signed_up):
        _, headers = signed_up
        assert client.get("/auth/me/someone-else", headers=headers).status_code == 403


class TestPinManagement:
    
    def test_change_then_verify(self, client, signed_up):
        account_id, headers = signed_up
        r = client.post("/auth/change-pin", headers=headers, json={
            "account_id": account_id, "old_pin": "2468", "new_pin": "1357"
        })
        assert r.status_code == 200
        
        r = client.post("/auth/verify-pin", headers=headers,
                        json={"account_id": account_id, "pin_code": "1357"})
        assert r.status_code == 200
        assert r.json()["success"] is True
        
        r = client.post("/auth/verify-pin", headers=headers,
                        json={"account_id": account_id, "pin_code": "2468"})
        assert r.status_code == 401
    
    def test_change_pin_invalid_new_pin(self, client, signed_up):
        account_id, headers = signed_up
        r = client.post("/auth/change-pin", headers=headers, json={
            "account_id": account_id, "old_pin": "2468", "new_pin": "abcd"
        })
        assert r.status_code == 400
        assert r.json()["field"] == "new_pin"


class TestPayeeLookup:
    
    def test_verify_upi(self, client, signed_up):
        r = client.post("/auth/verify-upi", json={"upi_handle": "jane@upi"})
        assert r.status_code == 200
        assert r.json()["account"] == {
            "full_name": "Jane Smith",
            "upi_handle": "jane@upi",
            "phone_number": "+1987654321",
            "account_number": "ACC100",
        }
    
    def test_verify_by_phone(self, client, signed_up):
        r = client.post("/auth/verify-upi", json={"phone_number": "+1987654321"})
        assert r.json()["account"]["account_number"] == "ACC100"
    
    def test_unknown_payee(self, client, signed_up):
        assert client.post("/auth/verify-upi", json={"upi_handle": "x@upi"}).status_code == 404
        assert client.post("/auth/verify-upi", json={}).status_code == 400


class TestTransactionFlow:
    """Ledger endpoints end to end"""
    
    def test_add_funds_spend_and_list(self, client, signed_up):
        account_id, headers = signed_up
        url = f"/accounts/{account_id}/transactions"
        
        r = client.post(url, headers={**headers, **SERVICE_KEY},
                        json={"kind": "add_funds", "signed_amount": "500.00"})
        assert r.status_code == 201
        assert r.json()["balance"] == "500.00"
        
        r = client.post(url, headers=headers, json={
            "kind": "upi_transfer",
            "signed_amount": "-120.50",
            "counterparty": {"name": "Corner Shop", "upi_handle": "shop@upi"},
            "notes": "groceries"
        })
        assert r.status_code == 201
        assert r.json()["balance"] == "379.50"
        assert r.json()["transaction"]["counterparty"]["upi_handle"] == "shop@upi"
        
        r = client.get(url, headers=headers, params={"limit": 1})
        assert r.status_code == 200
        transactions = r.json()["transactions"]
        assert len(transactions) == 1
        assert transactions[0]["kind"] == "upi_transfer"
        
        assert client.get("/auth/me", headers=headers).json()["balance"] == "379.50"
    
    def test_credit_requires_service_key(self, client, signed_up):
        """A holder token alone cannot mint money into its own account"""
        account_id, headers = signed_up
        url = f"/accounts/{account_id}/transactions"
        
        for kind in ("add_funds", "received"):
            r = client.post(url, headers=headers, json={"kind": kind, "signed_amount": "1000"})
            assert r.status_code == 403
            r = client.post(url, headers={**headers, "X-Service-Key": "guess"},
                            json={"kind": kind, "signed_amount": "1000"})
            assert r.status_code == 403
        
        assert client.get("/auth/me", headers=headers).json()["balance"] == "0"
    
    def test_credits_refused_without_configured_key(self, service, signed_up):
        """With no ledger service key configured, no header unlocks credits"""
        account_id, headers = signed_up
        unkeyed = TestClient(create_app(service, PaycoreConfig(
            database_url="memory://", jwt_secret="test-secret", _env_file=None
        )))
        r = unkeyed.post(f"/accounts/{account_id}/transactions",
                         headers={**headers, **SERVICE_KEY},
                         json={"kind": "add_funds", "signed_amount": "5"})
        assert r.status_code == 403
    
    def test_insufficient_funds(self, client, signed_up):
        account_id, headers = signed_up
        r = client.post(f"/accounts/{account_id}/transactions", headers=headers,
                        json={"kind": "card_payment", "signed_amount": "-1"})
        assert r.status_code == 409
        assert r.json()["code"] == "INSUFFICIENT_FUNDS"
    
    def test_invalid_kind(self, client, signed_up):
        account_id, headers = signed_up
        r = client.post(f"/accounts/{account_id}/transactions", headers=headers,
                        json={"kind": "withdrawal", "signed_amount": "-1"})
        assert r.status_code == 400
        assert r.json()["field"] == "kind"
    
    def test_settle_pending(self, client, signed_up):
        account_id, headers = signed_up
        url = f"/accounts/{account_id}/transactions"
        client.post(url, headers={**headers, **SERVICE_KEY},
                    json={"kind": "add_funds", "signed_amount": "100"})
        r = client.post(url, headers=headers, json={
            "kind": "international_transfer_out",
            "signed_amount": "-60",
            "status": "pending",
            "counterparty": {"name": "Overseas Ltd", "routing_code": "SWIFTXX"}
        })
        transaction_id = r.json()["transaction"]["id"]
        
        r = client.post(f"/transactions/{transaction_id}/settle", headers=headers,
                        json={"status": "failed"})
        assert r.status_code == 200
        assert r.json()["transaction"]["status"] == "failed"
        
        r = client.post(f"/transactions/{transaction_id}/settle", headers=headers,
                        json={"status": "completed"})
        assert r.status_code == 409
        assert r.json()["code"] == "INVALID_STATE_TRANSITION"
    
    def test_settle_unknown(self, client, signed_up):
        _, headers = signed_up
        r = client.post("/transactions/nope/settle", headers=headers, json={"status": "completed"})
        assert r.status_code == 404
    
    def test_requires_own_account(self, client, signed_up):
        _, headers = signed_up
        r = client.get("/accounts/other/transactions", headers=headers)
        assert r.status_code == 403
