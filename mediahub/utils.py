import jwt
from datetime import datetime, timedelta
from typing import Optional

from .core.config import settings


# =========================
# JWT Token Handling
# =========================
def create_jwt_token(data: dict, expires_in: timedelta = timedelta(hours=24)) -> str:
    """Create a signed access token; used by ops scripts and tests to mint admin tokens."""
    to_encode = data.copy()
    to_encode.update({"exp": datetime.utcnow() + expires_in, "type": "access"})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_jwt_token(token: str) -> Optional[dict]:
    """Decode and verify JWT token"""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None
