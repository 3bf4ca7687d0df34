from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from outbound_events.config import settings


def create_super_admin_token(super_admin_id: str) -> str:
    """Create a signed operator JWT."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expiration_minutes)
    payload = {
        "sub": super_admin_id,
        "type": "super_admin",
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_super_admin_token(token: str) -> dict | None:
    """Decode and validate an operator JWT. Returns payload or None if invalid."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    if payload.get("type") != "super_admin" or not payload.get("sub"):
        return None
    return payload
