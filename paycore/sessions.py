"""
Session Issuer Module

Mints and validates stateless bearer tokens (HS256 JWT) that bind a
caller to an account id for a fixed window. Nothing is persisted, so a
token stays valid until it expires.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from .errors import TokenExpired, TokenInvalid


class SessionIssuer:
    """Issues and validates session tokens"""
    
    def __init__(
        self,
        secret: str,
        ttl: timedelta = timedelta(days=7),
        algorithm: str = "HS256",
        issuer: str = "paycore"
    ):
        if not secret:
            raise ValueError("Session secret must not be empty")
        self._secret = secret
        self.ttl = ttl
        self.algorithm = algorithm
        self.issuer = issuer
    
    def issue(self, account_id: str, now: Optional[datetime] = None) -> str:
        """Mint a token for account_id valid for the configured window"""
        issued_at = now or datetime.now(timezone.utc)
        payload = {
            "sub": account_id,
            "iss": self.issuer,
            "iat": issued_at,
            "exp": issued_at + self.ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)
    
    def validate(self, token: str) -> str:
        """
        Verify signature and expiry.
        
        Returns:
            The account id the token was issued for
            
        Raises:
            TokenExpired: If the token is past its expiry
            TokenInvalid: For any other decoding or signature failure
        """
        if not token:
            raise TokenInvalid("Token missing")
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                options={"require": ["exp", "iat", "sub", "iss"]},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpired("Token expired")
        except jwt.InvalidTokenError:
            raise TokenInvalid("Invalid token")
        
        account_id = payload.get("sub")
        if not isinstance(account_id, str) or not account_id:
            raise TokenInvalid("Invalid token")
        return account_id
