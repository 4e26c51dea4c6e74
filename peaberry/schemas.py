import re
from datetime import datetime
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic.config import ConfigDict

COMMON_PASSWORDS = {"password", "123456", "qwerty", "welcome", "admin"}

RoastLevel = Literal["light", "light_medium", "medium", "medium_dark", "dark", "extra_dark"]
BrewingMethod = Literal["espresso_based", "pour_over", "siphon", "mixed_drinks", "nitro", "cold_brew"]
CafeStatus = Literal["draft", "published", "archived"]
SortOption = Literal["default", "distance", "rating_high", "reviews_count"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def check_password_strength(password: str) -> str:
    if len(password) < 8:
        raise ValueError("Password must be at least 8 characters")
    if len(password) > 100:
        raise ValueError("Password must be less than 100 characters")
    classes = sum(
        1
        for pattern in (r"[A-Z]", r"[a-z]", r"[0-9]", r"[!@#$%^&*(),.?\":{}|<>]")
        if re.search(pattern, password)
    )
    if classes < 2:
        raise ValueError(
            "Password must contain at least 2 of: uppercase, lowercase, numbers, or special characters"
        )
    if password.lower() in COMMON_PASSWORDS:
        raise ValueError("This password is too common and easily guessed")
    return password


# -------------------- users / auth --------------------

class UserCreate(CamelModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: str = Field(..., min_length=3, max_length=254)
    name: str = Field(..., min_length=1, max_length=100)
    bio: Optional[str] = Field(default=None, max_length=1000)
    password: str

    @field_validator("email")
    def looks_like_email(cls, v: str):
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("invalid email address")
        return v.strip().lower()

    @field_validator("password")
    def strong_password(cls, v: str):
        return check_password_strength(v)


class LoginRequest(CamelModel):
    username: str
    password: str


class ChangePasswordRequest(CamelModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    def strong_password(cls, v: str):
        return check_password_strength(v)


class OAuthLoginRequest(CamelModel):
    id_token: str = Field(..., min_length=1)


class ForgotPasswordRequest(CamelModel):
    email: str


class ResetPasswordRequest(CamelModel):
    token: str = Field(..., min_length=1)
    password: str

    @field_validator("password")
    def strong_password(cls, v: str):
        return check_password_strength(v)


class UserRead(CamelModel):
    id: int
    username: str
    email: str
    name: str
    bio: Optional[str] = None
    role: str = "user"
    provider_id: Optional[str] = None
    provider_uid: Optional[str] = None
    photo_url: Optional[str] = None
    identity_status: str
    created_at: datetime


class AdminUserRead(UserRead):
    orphaned_at: Optional[datetime] = None
    can_login_locally: bool


class TokenResponse(CamelModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead


# -------------------- cafes --------------------

class CafeBase(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    address: str = Field(..., min_length=1, max_length=300)
    area: str = Field(..., min_length=1, max_length=100)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    price_level: int = Field(default=1, ge=1, le=4)
    sells_coffee_beans: bool = False
    image_url: Optional[str] = None
    website: str = ""
    phone: str = ""
    instagram_handle: str = ""
    google_maps_url: str = ""
    status: CafeStatus = "draft"


class CafeCreate(CafeBase):
    roast_levels: list[RoastLevel] = Field(default_factory=list)
    brewing_methods: list[BrewingMethod] = Field(default_factory=list)


class CafeUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=5000)
    address: Optional[str] = Field(default=None, min_length=1, max_length=300)
    area: Optional[str] = Field(default=None, min_length=1, max_length=100)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    price_level: Optional[int] = Field(default=None, ge=1, le=4)
    sells_coffee_beans: Optional[bool] = None
    image_url: Optional[str] = None
    website: Optional[str] = None
    phone: Optional[str] = None
    instagram_handle: Optional[str] = None
    google_maps_url: Optional[str] = None
    status: Optional[CafeStatus] = None


class CafeRead(CafeBase):
    id: int
    created_at: datetime


class CafeWithDetails(CafeRead):
    roast_levels: list[str] = []
    brewing_methods: list[str] = []
    average_rating: float = 0.0
    total_ratings: int = 0
    is_favorite: Optional[bool] = None
    distance_km: Optional[float] = None


class CafeFilter(CamelModel):
    query: Optional[str] = None
    area: Optional[str] = None
    roast_levels: list[RoastLevel] = Field(default_factory=list)
    brewing_methods: list[BrewingMethod] = Field(default_factory=list)
    min_rating: Optional[float] = Field(default=None, ge=0, le=5)
    price_level: Optional[int] = Field(default=None, ge=1, le=4)
    sells_coffee_beans: Optional[bool] = None
    status: Optional[CafeStatus] = "published"
    name: Optional[str] = None
    address: Optional[str] = None
    sort_by: SortOption = "default"
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)


class RoastLevelsUpdate(CamelModel):
    roast_levels: list[RoastLevel]


class BrewingMethodsUpdate(CamelModel):
    brewing_methods: list[BrewingMethod]


class CafeStatusUpdate(CamelModel):
    status: CafeStatus


# -------------------- ratings / favorites --------------------

class RatingCreate(CamelModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(default=None, max_length=2000)


class RatingRead(CamelModel):
    id: int
    user_id: int
    cafe_id: int
    rating: int
    review: Optional[str] = None
    created_at: datetime


class FavoriteCreate(CamelModel):
    cafe_id: int = Field(..., gt=0)


class FavoriteRead(CamelModel):
    id: int
    user_id: int
    cafe_id: int
    created_at: datetime


# -------------------- webhook / reconciliation --------------------

class AuthEventData(BaseModel):
    """Payload forwarded by the auth lifecycle functions."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    uid: str = Field(..., min_length=1)
    email: Optional[str] = None
    display_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("displayName", "display_name"))
    photo_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("photoURL", "photoUrl", "photo_url"))
    provider_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("providerId", "provider_id"))
    timestamp: Optional[str] = None

    @field_validator("email")
    def normalize_email(cls, v: Optional[str]):
        return v.strip().lower() if v else v


class AuthWebhookEvent(BaseModel):
    event: str
    data: AuthEventData


class WebhookResult(CamelModel):
    event: str
    status: Literal["applied", "noop", "ignored"]
    user_id: Optional[int] = None
    detail: Optional[str] = None


class CleanupRequest(CamelModel):
    user_ids: list[int] = Field(..., min_length=1)
    action: Literal["delete", "unlink"] = "delete"
    confirm: bool = False


class CleanupItem(CamelModel):
    user_id: int
    status: Literal["deleted", "unlinked", "not_found", "skipped", "failed"]
    detail: Optional[str] = None


class CleanupResponse(CamelModel):
    action: str
    results: list[CleanupItem]
    processed: int
    succeeded: int


class OrphanScanResponse(CamelModel):
    checked: int
    newly_orphaned: list[int]
