"""
Authentication utilities

Bearer credentials are HS256 JWTs carrying the account identity (`sub`),
`email`, `name` and the issuance time `iat`. Decoding is a pure function so
the ledger never depends on the token format.
"""
from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
import hmac
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any
import os

from credit_ledger.config import CREDENTIAL_MAX_AGE_DAYS
from credit_ledger.errors import (
    CredentialDecodeError,
    Unauthenticated,
    AdminAuthRequired,
    AdminNotConfigured,
)

security = HTTPBearer(auto_error=False)
JWT_SECRET = os.environ.get('JWT_SECRET', 'credit-ledger-dev-secret-change-in-production')
JWT_ALGORITHM = "HS256"
ADMIN_KEY_MIN_LENGTH = 32


def create_token(account_id: str, email: str = "", name: str = "") -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": account_id,
        "email": email,
        "name": name,
        "iat": now,
        "exp": now + timedelta(days=CREDENTIAL_MAX_AGE_DAYS)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_credential(token: str) -> Dict[str, Any]:
    """
    Resolve a bearer credential to an account identity.

    Raises:
        CredentialDecodeError if the token is malformed, badly signed,
        expired, or older than the maximum credential age
    """
    try:
        payload = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["sub", "iat"]}
        )
    except jwt.ExpiredSignatureError:
        raise CredentialDecodeError("Token expired")
    except jwt.InvalidTokenError as e:
        raise CredentialDecodeError(f"Invalid token: {e}")

    account_id = payload.get("sub")
    if not account_id or not isinstance(account_id, str):
        raise CredentialDecodeError("Token has no subject")

    issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
    if datetime.now(timezone.utc) - issued_at > timedelta(days=CREDENTIAL_MAX_AGE_DAYS):
        raise CredentialDecodeError("Token too old")

    return {
        "account_id": account_id,
        "email": payload.get("email") or "",
        "name": payload.get("name") or "",
        "iat": issued_at
    }


async def get_bearer_credential(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Optional[str]:
    """Raw bearer token, or None when the header is missing"""
    return credentials.credentials if credentials else None


async def get_current_identity(token: Optional[str] = Depends(get_bearer_credential)) -> Dict[str, Any]:
    """Decode the bearer token or fail with 401"""
    if not token:
        raise Unauthenticated()
    try:
        return decode_credential(token)
    except CredentialDecodeError as e:
        raise Unauthenticated(str(e))


async def require_admin_key(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")) -> str:
    """Check the administrative secret, which is separate from user credentials"""
    admin_key = os.environ.get("ADMIN_SECRET_KEY", "")
    if len(admin_key) < ADMIN_KEY_MIN_LENGTH:
        raise AdminNotConfigured()
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), admin_key.encode()):
        raise AdminAuthRequired()
    return "admin"
