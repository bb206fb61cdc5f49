from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import jwt as pyjwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

security = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, secret: str, algorithm: str = "HS256", hours: int = 24) -> str:
    """Generate a JWT whose subject is the user id"""
    payload = {
        "sub": user_id,
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=hours),
    }
    return pyjwt.encode(payload, secret, algorithm=algorithm)


def verify_token(token: str, secret: str, algorithm: str = "HS256") -> Optional[Dict]:
    """Verify and decode a JWT token"""
    try:
        return pyjwt.decode(token, secret, algorithms=[algorithm])
    except pyjwt.ExpiredSignatureError:
        return None
    except pyjwt.InvalidTokenError:
        return None


async def current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """FastAPI dependency resolving the caller's user id from the bearer token"""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")

    config = request.app.state.config
    payload = verify_token(credentials.credentials, config.JWT_SECRET, config.JWT_ALGORITHM)
    if payload is None or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return payload["sub"]


def require_self(user_id: str, caller_id: str):
    """User-scoped routes only act on the caller's own records"""
    if user_id != caller_id:
        raise HTTPException(status_code=403, detail="You are not permitted to do this operation")
