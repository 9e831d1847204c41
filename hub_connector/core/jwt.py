from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union
import jwt
from jwt.exceptions import PyJWTError
from hub_connector.core.config import settings

ADMIN_ROLE = "admin"


def create_access_token(
    subject: Union[str, Any], expires_delta: timedelta = None, role: str = ADMIN_ROLE
) -> str:
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {"exp": expire, "sub": str(subject), "role": role}
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt


def decode_token(token: str) -> Optional[dict]:
    """Return the token payload, or None when the signature or expiry is invalid."""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except PyJWTError:
        return None


def is_admin_token(token: Optional[str]) -> bool:
    if not token:
        return False
    payload = decode_token(token)
    return bool(payload and payload.get("sub") and payload.get("role") == ADMIN_ROLE)
