# auth.py
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

import jwt

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AuthenticatedUser:
    user_id: str
    email: Optional[str] = None


def verify_user_token(token: Optional[str], secret: Optional[str],
                      audience: Optional[str] = 'authenticated') -> Optional[AuthenticatedUser]:
    """
    Verifies a Supabase access token (HS256) and returns its subject.
    Returns None for a missing, forged, expired or subject-less token.
    """
    if not token:
        return None
    if not secret:
        logger.error("SUPABASE_JWT_SECRET is not set, rejecting every token")
        return None
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=audience,
            options={"require": ["sub", "exp"]},
        )
    except jwt.PyJWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        return None
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        return None
    return AuthenticatedUser(user_id=subject, email=claims.get("email"))


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


def admin_key_matches(presented: Optional[str], expected: Optional[str]) -> bool:
    # No configured key means the admin surface is closed
    if not expected or not presented:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())
