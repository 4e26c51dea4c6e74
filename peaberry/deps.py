"""
Dependency wiring shared by the public and admin routers.

Everything hangs off `app.state`, which `create_app` fills from the settings
it was built with: the settings themselves, the session factory and the
identity provider.
"""
import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from . import models
from .auth import decode_access_token
from .config import Settings
from .identity import IdentityProvider


# Dependency to get DB session per request
def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_identity_provider(request: Request) -> IdentityProvider:
    return request.app.state.identity_provider


def _user_from_request(request: Request, db: Session, settings: Settings) -> models.User | None:
    auth = request.headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        return None
    token = auth.split(None, 1)[1]
    try:
        payload = decode_access_token(token, settings.jwt_secret)
        user_id = int(payload.get("sub"))
    except (jwt.PyJWTError, TypeError, ValueError):
        raise HTTPException(status_code=401, detail="invalid token")
    user = db.get(models.User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="user no longer exists")
    return user


async def get_optional_user(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> models.User | None:
    return _user_from_request(request, db, settings)


async def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> models.User:
    user = _user_from_request(request, db, settings)
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


async def require_admin(user: models.User = Depends(get_current_user)) -> models.User:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
