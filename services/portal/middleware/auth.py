"""
Portal session authentication.

The portal's login flow issues HS256 JWTs signed with SESSION_SECRET, sent
back either as a Bearer token or in the `portal_session` cookie. Claims:
sub, email, tenant_id, role (owner|admin|member|viewer), user_type
(tenant|admin).
"""

import logging
import os
import time
from typing import Optional

from fastapi import HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

logger = logging.getLogger(__name__)

SESSION_COOKIE = "portal_session"
SESSION_ALGORITHM = "HS256"
SESSION_ISSUER = os.getenv("SESSION_ISSUER", "mechatronics-portal")
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(8 * 3600)))


def _session_secret() -> str:
    secret = os.getenv("SESSION_SECRET", "")
    if not secret:
        logger.error("SESSION_SECRET is not configured")
        raise HTTPException(status_code=503, detail="Auth service unavailable")
    return secret


def issue_session_token(claims: dict, ttl_seconds: Optional[int] = None) -> str:
    now = int(time.time())
    payload = {
        **claims,
        "iss": SESSION_ISSUER,
        "iat": now,
        "exp": now + (ttl_seconds or SESSION_TTL_SECONDS),
    }
    return jwt.encode(payload, _session_secret(), algorithm=SESSION_ALGORITHM)


async def validate_token(token: str) -> dict:
    try:
        return jwt.decode(
            token,
            _session_secret(),
            algorithms=[SESSION_ALGORITHM],
            issuer=SESSION_ISSUER,
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTClaimsError:
        raise HTTPException(status_code=401, detail="Invalid token claims")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


class JWTBearer(HTTPBearer):
    def __init__(self) -> None:
        super().__init__(auto_error=False)

    async def __call__(self, request: Request) -> HTTPAuthorizationCredentials:
        token = None
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
        else:
            token = request.cookies.get(SESSION_COOKIE)

        if not token:
            raise HTTPException(status_code=401, detail="Missing authorization")

        request.state.user = await validate_token(token)
        return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)
