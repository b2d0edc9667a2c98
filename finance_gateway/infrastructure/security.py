"""Password hashing and bearer token issuing/verification"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import bcrypt
import jwt

from finance_gateway.config import settings
from finance_gateway.domain.exceptions import AuthError, ValidationError

JWT_ALGORITHM = "HS256"

# bcrypt only reads the first 72 bytes and bcrypt>=5 rejects longer input
MAX_PASSWORD_BYTES = 72


def _password_bytes(password: str) -> bytes:
    encoded = password.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return encoded


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(_password_bytes(password), hashed_password.encode("utf-8"))


def create_access_token(user_id: int, email: str, expires_in: timedelta | None = None) -> str:
    """Issue a signed token carrying the user id and email"""
    now = datetime.now(timezone.utc)
    expiry = now + (expires_in or timedelta(hours=settings.jwt_expiry_hours))
    claims = {"id": user_id, "email": email, "iat": now, "exp": expiry}
    return jwt.encode(claims, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Verify signature and expiry.

    Raises:
        AuthError: Token is expired, tampered with or missing claims
    """
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as e:
        raise AuthError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthError("Invalid or expired token") from e

    if "id" not in claims:
        raise AuthError("Invalid or expired token")
    return claims
