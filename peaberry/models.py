from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base

ROLES = ("user", "admin", "cafe_owner")
CAFE_STATUSES = ("draft", "published", "archived")
ROAST_LEVELS = ("light", "light_medium", "medium", "medium_dark", "dark", "extra_dark")
BREWING_METHODS = ("espresso_based", "pour_over", "siphon", "mixed_drinks", "nitro", "cold_brew")

# identity linkage between a local row and the external identity provider
LOCAL_ONLY = "local_only"
LINKED = "linked"
ORPHANED = "orphaned"

DEFAULT_PROVIDER_ID = "google.com"


def utcnow() -> datetime:
    # naive UTC; SQLite drops tzinfo on the way back anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class LocalCredential:
    password_hash: str


@dataclass(frozen=True)
class ProviderLinked:
    provider_id: str
    provider_uid: str
    photo_url: Optional[str]
    has_local_password: bool


Credential = Union[LocalCredential, ProviderLinked]


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(
            "password_hash IS NOT NULL OR provider_uid IS NOT NULL",
            name="ck_users_has_credential",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    bio = Column(Text, nullable=True)
    role = Column(String, nullable=False, default="user", index=True)
    # Null for accounts that only sign in through the identity provider
    password_hash = Column(String, nullable=True)

    provider_id = Column(String, nullable=True)
    provider_uid = Column(String, nullable=True, index=True)
    photo_url = Column(String, nullable=True)
    identity_status = Column(String, nullable=False, default=LOCAL_ONLY, index=True)
    orphaned_at = Column(DateTime, nullable=True)

    password_reset_token = Column(String, nullable=True, index=True)
    password_reset_token_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    ratings = relationship("Rating", back_populates="user", cascade="all, delete-orphan")
    favorites = relationship("Favorite", back_populates="user", cascade="all, delete-orphan")

    @property
    def credential(self) -> Credential:
        if self.provider_uid is not None and self.identity_status == LINKED:
            return ProviderLinked(
                provider_id=self.provider_id or DEFAULT_PROVIDER_ID,
                provider_uid=self.provider_uid,
                photo_url=self.photo_url,
                has_local_password=self.password_hash is not None,
            )
        if self.password_hash is None:
            # orphaned rows keep their stale UID until an admin reconciles them
            return ProviderLinked(
                provider_id=self.provider_id or DEFAULT_PROVIDER_ID,
                provider_uid=self.provider_uid,
                photo_url=self.photo_url,
                has_local_password=False,
            )
        return LocalCredential(password_hash=self.password_hash)

    @property
    def can_login_locally(self) -> bool:
        return self.password_hash is not None

    def link_provider(self, provider_uid: str, provider_id: str = DEFAULT_PROVIDER_ID, photo_url: Optional[str] = None) -> bool:
        """Attach provider linkage. Returns False when nothing changed."""
        photo = photo_url if photo_url is not None else self.photo_url
        if (
            self.identity_status == LINKED
            and self.provider_uid == provider_uid
            and self.provider_id == provider_id
            and self.photo_url == photo
        ):
            return False
        self.provider_id = provider_id
        self.provider_uid = provider_uid
        self.photo_url = photo
        self.identity_status = LINKED
        self.orphaned_at = None
        return True

    def mark_orphaned(self, when: Optional[datetime] = None) -> None:
        self.identity_status = ORPHANED
        self.orphaned_at = when or utcnow()

    def unlink_provider(self) -> None:
        if self.password_hash is None:
            raise ValueError("account has no local password; delete it instead")
        self.provider_id = None
        self.provider_uid = None
        self.identity_status = LOCAL_ONLY
        self.orphaned_at = None

    def clear_reset_token(self) -> None:
        self.password_reset_token = None
        self.password_reset_token_expires_at = None


class Cafe(Base):
    __tablename__ = "cafes"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    address = Column(String, nullable=False)
    area = Column(String, nullable=False, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    # 1-4, $ to $$$$
    price_level = Column(Integer, nullable=False, default=1)
    sells_coffee_beans = Column(Boolean, nullable=False, default=False)
    image_url = Column(String, nullable=True)
    website = Column(String, nullable=False, default="")
    phone = Column(String, nullable=False, default="")
    instagram_handle = Column(String, nullable=False, default="")
    google_maps_url = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="draft", index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    roast_level_links = relationship("CafeRoastLevel", back_populates="cafe", cascade="all, delete-orphan")
    brewing_method_links = relationship("CafeBrewingMethod", back_populates="cafe", cascade="all, delete-orphan")
    ratings = relationship("Rating", back_populates="cafe", cascade="all, delete-orphan")
    favorites = relationship("Favorite", back_populates="cafe", cascade="all, delete-orphan")

    @property
    def roast_levels(self) -> list[str]:
        return sorted((link.roast_level for link in self.roast_level_links), key=ROAST_LEVELS.index)

    @property
    def brewing_methods(self) -> list[str]:
        return sorted((link.brewing_method for link in self.brewing_method_links), key=BREWING_METHODS.index)


class CafeRoastLevel(Base):
    __tablename__ = "cafe_roast_levels"
    __table_args__ = (UniqueConstraint("cafe_id", "roast_level", name="cafe_roast_level_idx"),)

    id = Column(Integer, primary_key=True)
    cafe_id = Column(Integer, ForeignKey("cafes.id", ondelete="CASCADE"), nullable=False, index=True)
    roast_level = Column(String, nullable=False)

    cafe = relationship("Cafe", back_populates="roast_level_links")


class CafeBrewingMethod(Base):
    __tablename__ = "cafe_brewing_methods"
    __table_args__ = (UniqueConstraint("cafe_id", "brewing_method", name="cafe_brewing_method_idx"),)

    id = Column(Integer, primary_key=True)
    cafe_id = Column(Integer, ForeignKey("cafes.id", ondelete="CASCADE"), nullable=False, index=True)
    brewing_method = Column(String, nullable=False)

    cafe = relationship("Cafe", back_populates="brewing_method_links")


class Rating(Base):
    __tablename__ = "ratings"
    __table_args__ = (UniqueConstraint("user_id", "cafe_id", name="user_cafe_idx"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    cafe_id = Column(Integer, ForeignKey("cafes.id", ondelete="CASCADE"), nullable=False, index=True)
    rating = Column(Integer, nullable=False)  # 1-5 stars
    review = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    user = relationship("User", back_populates="ratings")
    cafe = relationship("Cafe", back_populates="ratings")


class Favorite(Base):
    __tablename__ = "favorites"
    __table_args__ = (UniqueConstraint("user_id", "cafe_id", name="user_cafe_favorite_idx"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    cafe_id = Column(Integer, ForeignKey("cafes.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    user = relationship("User", back_populates="favorites")
    cafe = relationship("Cafe", back_populates="favorites")
