from datetime import datetime, timedelta, timezone
from typing import Optional
import jwt
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import os

# Tokens are issued by the merchant account service; the ledger only verifies them
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "your-secret-key-change-in-production-2024")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

security = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Mint an access token carrying user_id and role (operator tooling and tests)."""
    claims = data.copy()
    expires_at = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    claims.update({"exp": expires_at, "type": "access"})
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Access token has expired")
    except jwt.PyJWTError:
        raise _unauthorized("Could not validate credentials")

    if payload.get("type") != "access":
        raise _unauthorized("Invalid token type")
    return payload


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Token claims for the caller; the user document is loaded by PermissionChecker."""
    payload = decode_access_token(credentials.credentials)
    if not payload.get("user_id"):
        raise _unauthorized("Invalid authentication credentials")
    return payload
