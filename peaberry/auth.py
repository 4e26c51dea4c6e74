import secrets
import time
from datetime import datetime, timedelta
from typing import Optional

import jwt
from passlib.context import CryptContext

from .models import utcnow

# Use pbkdf2_sha256 as default to avoid bcrypt 72-byte limitation in some envs
pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")

ALGORITHM = "HS256"
DEFAULT_EXPIRES_SECONDS = 60 * 60 * 24 * 7


def create_access_token(user_id: int, role: str, secret: str, expires_seconds: int = DEFAULT_EXPIRES_SECONDS) -> str:
    now = int(time.time())
    exp = now + expires_seconds
    payload = {"sub": str(user_id), "role": role, "iat": now, "exp": exp}
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_access_token(token: str, secret: str) -> dict:
    return jwt.decode(token, secret, algorithms=[ALGORITHM])


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def random_credential_hash() -> str:
    """Hash of a throwaway secret nobody knows; used when only a credential slot must stay filled."""
    return hash_password(secrets.token_urlsafe(32))


def new_reset_token(ttl_minutes: int, now: Optional[datetime] = None) -> tuple[str, datetime]:
    issued = now or utcnow()
    return secrets.token_urlsafe(32), issued + timedelta(minutes=ttl_minutes)
