"""
Identity provider clients (Firebase Auth and an in-memory stand-in).

Clients are constructed explicitly from `Settings` and handed to request
handlers through FastAPI dependencies; nothing here initializes the SDK as
an import side effect.
"""
import logging
import secrets
from typing import Dict, Optional, Protocol, Set

from .config import ConfigurationError, Settings

logger = logging.getLogger(__name__)


class InvalidIdTokenError(Exception):
    pass


class IdentityProvider(Protocol):
    def verify_id_token(self, id_token: str) -> dict:
        ...

    def list_user_uids(self) -> Set[str]:
        ...


class FirebaseIdentityProvider:
    """firebase-admin backed client bound to its own named app."""

    def __init__(self, project_id: str, credentials_file: Optional[str] = None, app_name: str = "peaberry"):
        import firebase_admin
        from firebase_admin import credentials

        try:
            self._app = firebase_admin.get_app(app_name)
        except ValueError:
            cred = credentials.Certificate(credentials_file) if credentials_file else credentials.ApplicationDefault()
            self._app = firebase_admin.initialize_app(cred, {"projectId": project_id}, name=app_name)
        self.project_id = project_id
        logger.info("Firebase identity provider ready for project %s", project_id)

    def verify_id_token(self, id_token: str) -> dict:
        from firebase_admin import auth

        try:
            return auth.verify_id_token(id_token, app=self._app)
        except (ValueError, auth.InvalidIdTokenError, auth.ExpiredIdTokenError, auth.RevokedIdTokenError) as e:
            raise InvalidIdTokenError(str(e)) from e

    def list_user_uids(self) -> Set[str]:
        from firebase_admin import auth

        return {user.uid for user in auth.list_users(app=self._app).iterate_all()}


class InMemoryIdentityProvider:
    """Simple in-memory provider for development and tests."""

    def __init__(self):
        self.users: Dict[str, dict] = {}
        self.tokens: Dict[str, str] = {}

    def add_user(self, uid: str, email: str, name: Optional[str] = None, picture: Optional[str] = None) -> dict:
        claims = {"uid": uid, "email": email, "name": name, "picture": picture}
        self.users[uid] = claims
        return claims

    def remove_user(self, uid: str) -> None:
        self.users.pop(uid, None)

    def issue_token(self, uid: str) -> str:
        if uid not in self.users:
            raise KeyError(uid)
        token = secrets.token_hex(16)
        self.tokens[token] = uid
        return token

    def verify_id_token(self, id_token: str) -> dict:
        uid = self.tokens.get(id_token)
        if uid is None or uid not in self.users:
            raise InvalidIdTokenError("unknown or revoked token")
        return dict(self.users[uid])

    def list_user_uids(self) -> Set[str]:
        return set(self.users)

    def reset(self) -> None:
        self.users.clear()
        self.tokens.clear()


def build_identity_provider(settings: Settings) -> IdentityProvider:
    if settings.use_in_memory_identity:
        logger.warning("using in-memory identity provider; Google sign-in is simulated")
        return InMemoryIdentityProvider()
    if not settings.firebase_project_id:
        raise ConfigurationError("FIREBASE_PROJECT_ID is required for the Firebase identity provider")
    return FirebaseIdentityProvider(settings.firebase_project_id, settings.firebase_credentials_file)
