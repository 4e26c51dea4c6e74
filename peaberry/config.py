"""Runtime configuration, read from the environment (and `.env`) once."""
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(RuntimeError):
    pass


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO")

    database_url: str = Field(default="sqlite:///./peaberry.db")

    jwt_secret: str = Field(default="peaberry-dev-secret-change-me-in-production")
    jwt_exp_seconds: int = Field(default=60 * 60 * 24 * 7)

    # Firebase Auth (Google sign-in) and the lifecycle webhook
    firebase_project_id: Optional[str] = Field(default=None)
    firebase_credentials_file: Optional[str] = Field(default=None)
    firebase_webhook_secret: Optional[str] = Field(default=None)
    firebase_webhook_endpoint: str = Field(default="http://localhost:5000/api/webhooks/firebase-auth")
    use_in_memory_identity: bool = Field(default=False)
    # what a user.delete event does to the linked local row
    webhook_delete_policy: Literal["orphan", "delete"] = Field(default="orphan")

    password_reset_ttl_minutes: int = Field(default=60)
    public_base_url: str = Field(default="http://localhost:5000")

    def check_ready(self) -> None:
        missing = []
        if not self.firebase_webhook_secret:
            missing.append("FIREBASE_WEBHOOK_SECRET")
        if not self.use_in_memory_identity and not self.firebase_project_id:
            missing.append("FIREBASE_PROJECT_ID (or USE_IN_MEMORY_IDENTITY=1)")
        if missing:
            raise ConfigurationError("missing configuration: " + ", ".join(missing))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
