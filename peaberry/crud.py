import logging
import secrets
from typing import Iterable, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from . import models, schemas
from .auth import hash_password
from .utils import clean_text, haversine_km, sanitize_input

logger = logging.getLogger(__name__)


class NotFoundError(LookupError):
    pass


# -------------------- users --------------------

def get_user(db: Session, user_id: int) -> models.User | None:
    return db.get(models.User, user_id)


def get_user_by_username(db: Session, username: str) -> models.User | None:
    return db.query(models.User).filter(models.User.username == username).first()


def get_user_by_email(db: Session, email: str) -> models.User | None:
    return db.query(models.User).filter(func.lower(models.User.email) == email.strip().lower()).first()


def get_user_by_provider_uid(db: Session, provider_uid: str) -> models.User | None:
    # orphaned rows keep their stale UID but must not match provider sign-ins
    return (
        db.query(models.User)
        .filter(models.User.provider_uid == provider_uid, models.User.identity_status == models.LINKED)
        .first()
    )


def get_user_by_reset_token(db: Session, token: str) -> models.User | None:
    return db.query(models.User).filter(models.User.password_reset_token == token).first()


def list_users(db: Session, identity_status: Optional[str] = None) -> List[models.User]:
    query = db.query(models.User)
    if identity_status:
        query = query.filter(models.User.identity_status == identity_status)
    return query.order_by(models.User.id).all()


def create_user(db: Session, user: schemas.UserCreate, role: str = "user") -> models.User:
    if get_user_by_username(db, user.username):
        raise ValueError("Username already exists")
    if get_user_by_email(db, user.email):
        raise ValueError("Email already registered")
    db_user = models.User(
        username=user.username,
        email=user.email,
        name=user.name,
        bio=clean_text(user.bio),
        role=role,
        password_hash=hash_password(user.password),
        identity_status=models.LOCAL_ONLY,
    )
    db.add(db_user)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ValueError("Username or email already exists") from e
    db.refresh(db_user)
    return db_user


def _unique_username(db: Session, email: str) -> str:
    base = email.split("@", 1)[0] or "user"
    candidate = base
    while get_user_by_username(db, candidate):
        candidate = f"{base}_{secrets.randbelow(10000)}"
    return candidate


def sign_in_with_provider(db: Session, claims: dict, provider_id: str = models.DEFAULT_PROVIDER_ID) -> models.User:
    """Resolve verified provider claims to a local user, linking or creating as needed."""
    uid = claims["uid"]
    email = (claims.get("email") or "").strip().lower()
    user = get_user_by_provider_uid(db, uid)
    if user:
        return user
    if not email:
        raise ValueError("Email is required")

    user = get_user_by_email(db, email)
    if user:
        user.link_provider(uid, provider_id=provider_id, photo_url=claims.get("picture"))
        logger.info("linked existing user %s to provider uid %s on sign-in", user.id, uid)
    else:
        user = models.User(
            username=_unique_username(db, email),
            email=email,
            name=claims.get("name") or email.split("@", 1)[0],
            bio="",
            role="user",
            password_hash=None,
            provider_id=provider_id,
            provider_uid=uid,
            photo_url=claims.get("picture"),
            identity_status=models.LINKED,
        )
        logger.info("creating provider-only account for %s", email)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def set_password(db: Session, user: models.User, password: str) -> models.User:
    user.password_hash = hash_password(password)
    user.clear_reset_token()
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def delete_user(db: Session, user_id: int) -> bool:
    user = db.get(models.User, user_id)
    if not user:
        return False
    db.delete(user)
    db.commit()
    return True


# -------------------- cafes --------------------

def _cafe_query(db: Session):
    return db.query(models.Cafe).options(
        selectinload(models.Cafe.roast_level_links),
        selectinload(models.Cafe.brewing_method_links),
    )


def rating_summary(db: Session, cafe_ids: Iterable[int]) -> dict:
    ids = list(cafe_ids)
    if not ids:
        return {}
    rows = (
        db.query(models.Rating.cafe_id, func.avg(models.Rating.rating), func.count(models.Rating.id))
        .filter(models.Rating.cafe_id.in_(ids))
        .group_by(models.Rating.cafe_id)
        .all()
    )
    return {cafe_id: (round(float(avg), 1), count) for cafe_id, avg, count in rows}


def favorite_cafe_ids(db: Session, user_id: int) -> set:
    rows = db.query(models.Favorite.cafe_id).filter(models.Favorite.user_id == user_id).all()
    return {r[0] for r in rows}


def with_details(db: Session, cafes: List[models.Cafe], user_id: Optional[int] = None) -> List[schemas.CafeWithDetails]:
    summary = rating_summary(db, (c.id for c in cafes))
    favorites = favorite_cafe_ids(db, user_id) if user_id else set()
    details = []
    for cafe in cafes:
        average, count = summary.get(cafe.id, (0.0, 0))
        item = schemas.CafeWithDetails.model_validate(cafe)
        item.average_rating = average
        item.total_ratings = count
        item.is_favorite = (cafe.id in favorites) if user_id else None
        details.append(item)
    return details


def get_published_cafe(db: Session, cafe_id: int) -> models.Cafe:
    """Public paths only see published cafes; anything else is treated as missing."""
    cafe = db.get(models.Cafe, cafe_id)
    if not cafe or cafe.status != "published":
        raise NotFoundError("Cafe not found")
    return cafe


def get_cafe_with_details(db: Session, cafe_id: int, user_id: Optional[int] = None, published_only: bool = False) -> schemas.CafeWithDetails | None:
    cafe = _cafe_query(db).filter(models.Cafe.id == cafe_id).first()
    if not cafe or (published_only and cafe.status != "published"):
        return None
    return with_details(db, [cafe], user_id)[0]


def list_cafes(db: Session, filters: Optional[schemas.CafeFilter] = None, user_id: Optional[int] = None) -> List[schemas.CafeWithDetails]:
    filters = filters or schemas.CafeFilter()
    query = _cafe_query(db)
    if filters.status:
        query = query.filter(models.Cafe.status == filters.status)
    if filters.area:
        query = query.filter(models.Cafe.area == filters.area)
    if filters.price_level:
        query = query.filter(models.Cafe.price_level == filters.price_level)
    if filters.sells_coffee_beans is not None:
        query = query.filter(models.Cafe.sells_coffee_beans == filters.sells_coffee_beans)
    if filters.name:
        query = query.filter(func.lower(models.Cafe.name) == filters.name.strip().lower())
    if filters.address:
        query = query.filter(func.lower(models.Cafe.address) == filters.address.strip().lower())
    term = sanitize_input(filters.query)
    if term:
        like = f"%{term.lower()}%"
        query = query.filter(
            or_(
                func.lower(models.Cafe.name).like(like),
                func.lower(models.Cafe.description).like(like),
                func.lower(models.Cafe.area).like(like),
                func.lower(models.Cafe.address).like(like),
            )
        )

    cafes = query.order_by(models.Cafe.id).all()
    # roast levels and brewing methods: the cafe must offer ALL selected values
    if filters.roast_levels:
        wanted = set(filters.roast_levels)
        cafes = [c for c in cafes if wanted.issubset(c.roast_levels)]
    if filters.brewing_methods:
        wanted = set(filters.brewing_methods)
        cafes = [c for c in cafes if wanted.issubset(c.brewing_methods)]

    results = with_details(db, cafes, user_id)
    if filters.min_rating:
        results = [c for c in results if c.average_rating >= filters.min_rating]
    return sort_cafes(results, filters)


def sort_cafes(cafes: List[schemas.CafeWithDetails], filters: schemas.CafeFilter) -> List[schemas.CafeWithDetails]:
    if filters.lat is not None and filters.lng is not None:
        for cafe in cafes:
            cafe.distance_km = round(haversine_km(filters.lat, filters.lng, cafe.latitude, cafe.longitude), 2)
    if filters.sort_by == "rating_high":
        return sorted(cafes, key=lambda c: (-c.average_rating, -c.total_ratings, c.id))
    if filters.sort_by == "reviews_count":
        return sorted(cafes, key=lambda c: (-c.total_ratings, -c.average_rating, c.id))
    if filters.sort_by == "distance":
        if filters.lat is None or filters.lng is None:
            raise ValueError("lat and lng are required to sort by distance")
        return sorted(cafes, key=lambda c: (c.distance_km, c.id))
    return cafes


def list_areas(db: Session) -> List[str]:
    rows = (
        db.query(models.Cafe.area)
        .filter(models.Cafe.status == "published")
        .distinct()
        .order_by(models.Cafe.area)
        .all()
    )
    return [r[0] for r in rows]


def create_cafe(db: Session, cafe: schemas.CafeCreate) -> models.Cafe:
    duplicate = list_cafes(db, schemas.CafeFilter(name=cafe.name, address=cafe.address, status=None))
    if duplicate:
        raise ValueError(f'Cafe "{cafe.name}" already exists at this address.')
    fields = cafe.model_dump(exclude={"roast_levels", "brewing_methods"})
    fields["description"] = clean_text(fields["description"]) or ""
    db_cafe = models.Cafe(**fields)
    db_cafe.roast_level_links = [models.CafeRoastLevel(roast_level=v) for v in dict.fromkeys(cafe.roast_levels)]
    db_cafe.brewing_method_links = [models.CafeBrewingMethod(brewing_method=v) for v in dict.fromkeys(cafe.brewing_methods)]
    db.add(db_cafe)
    db.commit()
    db.refresh(db_cafe)
    return db_cafe


def update_cafe(db: Session, cafe_id: int, changes: schemas.CafeUpdate) -> models.Cafe | None:
    cafe = db.get(models.Cafe, cafe_id)
    if not cafe:
        return None
    for field, value in changes.model_dump(exclude_unset=True).items():
        if value is None and field not in ("image_url",):
            continue
        if field == "description":
            value = clean_text(value) or ""
        setattr(cafe, field, value)
    db.add(cafe)
    db.commit()
    db.refresh(cafe)
    return cafe


def replace_roast_levels(db: Session, cafe_id: int, levels: List[str]) -> List[str]:
    cafe = db.get(models.Cafe, cafe_id)
    if not cafe:
        raise NotFoundError("Cafe not found")
    # flush the removals first; the unit of work would otherwise insert before deleting
    cafe.roast_level_links.clear()
    db.flush()
    cafe.roast_level_links = [models.CafeRoastLevel(roast_level=v) for v in dict.fromkeys(levels)]
    db.commit()
    db.refresh(cafe)
    return cafe.roast_levels


def replace_brewing_methods(db: Session, cafe_id: int, methods: List[str]) -> List[str]:
    cafe = db.get(models.Cafe, cafe_id)
    if not cafe:
        raise NotFoundError("Cafe not found")
    cafe.brewing_method_links.clear()
    db.flush()
    cafe.brewing_method_links = [models.CafeBrewingMethod(brewing_method=v) for v in dict.fromkeys(methods)]
    db.commit()
    db.refresh(cafe)
    return cafe.brewing_methods


def delete_cafe(db: Session, cafe_id: int) -> bool:
    cafe = db.get(models.Cafe, cafe_id)
    if not cafe:
        return False
    db.delete(cafe)
    db.commit()
    return True


# -------------------- ratings --------------------

def get_user_rating(db: Session, user_id: int, cafe_id: int) -> models.Rating | None:
    return (
        db.query(models.Rating)
        .filter(models.Rating.user_id == user_id, models.Rating.cafe_id == cafe_id)
        .first()
    )


def upsert_rating(db: Session, user_id: int, cafe_id: int, rating: schemas.RatingCreate) -> models.Rating:
    """One rating per (user, cafe): rating again replaces the earlier one."""
    get_published_cafe(db, cafe_id)
    db_rating = get_user_rating(db, user_id, cafe_id)
    if db_rating is None:
        db_rating = models.Rating(user_id=user_id, cafe_id=cafe_id)
    db_rating.rating = rating.rating
    db_rating.review = clean_text(rating.review)
    db.add(db_rating)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ValueError("integrity error") from e
    db.refresh(db_rating)
    return db_rating


def list_cafe_ratings(db: Session, cafe_id: int) -> List[models.Rating]:
    get_published_cafe(db, cafe_id)
    return (
        db.query(models.Rating)
        .filter(models.Rating.cafe_id == cafe_id)
        .order_by(models.Rating.created_at.desc(), models.Rating.id.desc())
        .all()
    )


# -------------------- favorites --------------------

def add_favorite(db: Session, user_id: int, cafe_id: int) -> models.Favorite:
    get_published_cafe(db, cafe_id)
    existing = (
        db.query(models.Favorite)
        .filter(models.Favorite.user_id == user_id, models.Favorite.cafe_id == cafe_id)
        .first()
    )
    if existing:
        return existing
    favorite = models.Favorite(user_id=user_id, cafe_id=cafe_id)
    db.add(favorite)
    db.commit()
    db.refresh(favorite)
    return favorite


def remove_favorite(db: Session, user_id: int, cafe_id: int) -> bool:
    removed = (
        db.query(models.Favorite)
        .filter(models.Favorite.user_id == user_id, models.Favorite.cafe_id == cafe_id)
        .delete(synchronize_session="fetch")
    )
    db.commit()
    return removed > 0


def list_favorite_cafes(db: Session, user_id: int) -> List[schemas.CafeWithDetails]:
    cafes = (
        _cafe_query(db)
        .join(models.Favorite, models.Favorite.cafe_id == models.Cafe.id)
        .filter(models.Favorite.user_id == user_id, models.Cafe.status == "published")
        .order_by(models.Favorite.created_at, models.Favorite.id)
        .all()
    )
    return with_details(db, cafes, user_id)
