"""
auth/tokens.py -- Bearer token verification for identity-provider JWTs.

Security design decisions:
  JWT: python-jose with HS256. The identity provider signs tokens with the
       shared SECRET_KEY; they carry sub (user ID), email, role and expiry.
       Verification returns None on any failure -- route layer turns that
       into a 401.

  Minting: create_access_token() exists for service accounts and the test
       suite. End users always receive their tokens from the identity
       provider, never from this service.

  SECRET_KEY: sourced from core.config.get_settings(). Dev mode (DEBUG=true)
       auto-generates a random key with a warning; production mode refuses to
       start without one. Short keys (<32 chars) are rejected [M6].

Layer rule: no imports from api/, audit/, cache/, or security/. Import from
core/ is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import Principal
from core.config import get_settings

logger = logging.getLogger("prodreport.auth")

_settings = get_settings()

_ALGORITHM = "HS256"
_DEFAULT_EXPIRE_SECONDS = 3600
_ROLES = frozenset({"admin", "manager", "viewer"})


def create_access_token(user_id: str, email: str, role: str, expire_seconds: int = _DEFAULT_EXPIRE_SECONDS) -> str:
    """Encode a signed JWT carrying the caller's identity claims."""
    expire = datetime.now(timezone.utc) + timedelta(seconds=expire_seconds)
    payload = {
        "sub": user_id,
        "email": email,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> Principal | None:
    """Verify a JWT and return the Principal it names, or None on any failure.

    Returning None (rather than raising) keeps the caller simple: any invalid
    token is treated as unauthenticated. Unknown roles are rejected so a
    mis-issued token cannot smuggle in a privilege name this service does
    not understand.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in _ROLES:
        logger.info("Rejected token with missing subject or unknown role %r", role)
        return None
    return Principal(user_id=str(user_id), email=payload.get("email", ""), role=role)
