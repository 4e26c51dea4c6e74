"""
Peaberry REST API.

The ASGI app is built by `create_app`; serve it with

  uvicorn --factory peaberry.main:create_app
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import admin, crud, models, schemas, sync
from .auth import create_access_token, new_reset_token, verify_password
from .config import Settings, get_settings
from .db import create_db_engine, init_db, make_session_factory
from .deps import get_app_settings, get_current_user, get_db, get_identity_provider, get_optional_user
from .identity import IdentityProvider, InvalidIdTokenError, build_identity_provider
from .utils import deliver_reset_link

logger = logging.getLogger(__name__)

router = APIRouter()


def _token_response(user: models.User, settings: Settings) -> schemas.TokenResponse:
    return schemas.TokenResponse(
        access_token=create_access_token(user.id, user.role, settings.jwt_secret, settings.jwt_exp_seconds),
        user=schemas.UserRead.model_validate(user),
    )


async def health():
    return {"status": "ok"}


# -------------------- auth --------------------

@router.post("/register", response_model=schemas.TokenResponse, status_code=201)
async def register(
    payload: schemas.UserCreate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    try:
        user = crud.create_user(db, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _token_response(user, settings)


@router.post("/login", response_model=schemas.TokenResponse)
async def login(
    payload: schemas.LoginRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    user = crud.get_user_by_username(db, payload.username)
    if not user:
        raise HTTPException(status_code=401, detail="invalid credentials")
    if not user.can_login_locally:
        raise HTTPException(status_code=401, detail="This account signs in with Google; use Google sign-in")
    if not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="invalid credentials")
    return _token_response(user, settings)


@router.post("/logout")
async def logout():
    # tokens are stateless; the client discards its copy
    return {"status": "ok"}


@router.get("/user", response_model=schemas.UserRead)
async def current_user(user: models.User = Depends(get_current_user)):
    return user


@router.post("/change-password")
async def change_password(
    payload: schemas.ChangePasswordRequest,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not user.can_login_locally:
        raise HTTPException(status_code=400, detail="This account has no local password")
    if not verify_password(payload.current_password, user.password_hash):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    crud.set_password(db, user, payload.new_password)
    return {"status": "ok", "message": "Password changed successfully"}


@router.post("/oauth/login", response_model=schemas.TokenResponse)
async def oauth_login(
    payload: schemas.OAuthLoginRequest,
    db: Session = Depends(get_db),
    provider: IdentityProvider = Depends(get_identity_provider),
    settings: Settings = Depends(get_app_settings),
):
    try:
        claims = provider.verify_id_token(payload.id_token)
    except InvalidIdTokenError as e:
        logger.info("rejected ID token: %s", e)
        raise HTTPException(status_code=401, detail="Invalid ID token")
    sign_in_provider = (claims.get("firebase") or {}).get("sign_in_provider") or models.DEFAULT_PROVIDER_ID
    try:
        user = crud.sign_in_with_provider(db, claims, provider_id=sign_in_provider)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _token_response(user, settings)


@router.post("/forgot-password")
async def forgot_password(
    payload: schemas.ForgotPasswordRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    user = crud.get_user_by_email(db, payload.email)
    if user and user.can_login_locally:
        token, expires_at = new_reset_token(settings.password_reset_ttl_minutes)
        user.password_reset_token = token
        user.password_reset_token_expires_at = expires_at
        db.add(user)
        db.commit()
        deliver_reset_link(user.email, f"{settings.public_base_url}/reset-password?token={token}")
    # same answer either way so the endpoint does not reveal which emails exist
    return {"message": "If an account with that email exists, a password reset link has been sent."}


@router.post("/reset-password")
async def reset_password(payload: schemas.ResetPasswordRequest, db: Session = Depends(get_db)):
    user = crud.get_user_by_reset_token(db, payload.token)
    if not user or not user.password_reset_token_expires_at or user.password_reset_token_expires_at < models.utcnow():
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")
    crud.set_password(db, user, payload.password)
    return {"status": "ok", "message": "Password has been reset"}


# -------------------- cafes --------------------

def _split(value: Optional[str]) -> list:
    return [v.strip() for v in value.split(",") if v.strip()] if value else []


@router.get("/cafes", response_model=List[schemas.CafeWithDetails])
async def list_cafes(
    q: Optional[str] = Query(None, max_length=100),
    area: Optional[str] = None,
    roast_levels: Optional[str] = Query(None, alias="roastLevels"),
    brewing_methods: Optional[str] = Query(None, alias="brewingMethods"),
    min_rating: Optional[float] = Query(None, alias="minRating"),
    price_level: Optional[int] = Query(None, alias="priceLevel"),
    sells_coffee_beans: Optional[bool] = Query(None, alias="sellsCoffeeBeans"),
    sort_by: str = Query("default", alias="sortBy"),
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    db: Session = Depends(get_db),
    user: Optional[models.User] = Depends(get_optional_user),
):
    try:
        filters = schemas.CafeFilter(
            query=q,
            area=area,
            roast_levels=_split(roast_levels),
            brewing_methods=_split(brewing_methods),
            min_rating=min_rating,
            price_level=price_level,
            sells_coffee_beans=sells_coffee_beans,
            sort_by=sort_by,
            lat=lat,
            lng=lng,
        )
        return crud.list_cafes(db, filters, user_id=user.id if user else None)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid filter parameters")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/cafes/{cafe_id}", response_model=schemas.CafeWithDetails)
async def get_cafe(cafe_id: int, db: Session = Depends(get_db), user: Optional[models.User] = Depends(get_optional_user)):
    cafe = crud.get_cafe_with_details(db, cafe_id, user_id=user.id if user else None, published_only=True)
    if not cafe:
        raise HTTPException(status_code=404, detail="Cafe not found")
    return cafe


@router.get("/areas", response_model=List[str])
async def list_areas(db: Session = Depends(get_db)):
    return crud.list_areas(db)


# -------------------- ratings --------------------

@router.post("/cafes/{cafe_id}/ratings", response_model=schemas.RatingRead, status_code=201)
async def rate_cafe(
    cafe_id: int,
    payload: schemas.RatingCreate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return crud.upsert_rating(db, user.id, cafe_id, payload)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/cafes/{cafe_id}/ratings", response_model=List[schemas.RatingRead])
async def cafe_ratings(cafe_id: int, db: Session = Depends(get_db)):
    try:
        return crud.list_cafe_ratings(db, cafe_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/user/ratings", response_model=Optional[schemas.RatingRead])
async def my_rating(
    cafe_id: Optional[int] = Query(None, alias="cafeId"),
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if cafe_id is None:
        raise HTTPException(status_code=400, detail="cafeId parameter required")
    return crud.get_user_rating(db, user.id, cafe_id)


# -------------------- favorites --------------------

@router.post("/favorites", response_model=schemas.FavoriteRead, status_code=201)
async def add_favorite(
    payload: schemas.FavoriteCreate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return crud.add_favorite(db, user.id, payload.cafe_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/favorites/{cafe_id}", status_code=204)
async def remove_favorite(cafe_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    if not crud.remove_favorite(db, user.id, cafe_id):
        raise HTTPException(status_code=404, detail="Favorite not found")
    return Response(status_code=204)


@router.get("/favorites", response_model=List[schemas.CafeWithDetails])
async def list_favorites(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return crud.list_favorite_cafes(db, user.id)


# -------------------- identity provider webhook --------------------

@router.post("/webhooks/firebase-auth", response_model=schemas.WebhookResult)
async def firebase_auth_webhook(
    request: Request,
    x_firebase_auth_signature: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    body = await request.body()
    if not sync.verify_signature(body, x_firebase_auth_signature, settings.firebase_webhook_secret):
        logger.warning("rejected auth webhook with bad or missing signature")
        raise HTTPException(status_code=401, detail="invalid signature")
    try:
        event = schemas.AuthWebhookEvent.model_validate_json(body)
    except ValidationError:
        raise HTTPException(status_code=400, detail="malformed event payload")
    try:
        return sync.dispatch_event(db, event, delete_policy=settings.webhook_delete_policy)
    except SQLAlchemyError:
        logger.exception("failed to apply %s for uid %s", event.event, event.data.uid)
        raise HTTPException(status_code=503, detail="event not processed")


def create_app(settings: Optional[Settings] = None, identity_provider: Optional[IdentityProvider] = None) -> FastAPI:
    settings = settings or get_settings()
    # fail fast on incomplete configuration
    settings.check_ready()
    logging.basicConfig(level=settings.log_level.upper())

    engine = create_db_engine(settings.database_url)
    init_db(engine)

    app = FastAPI(title="Peaberry API", version="0.1.0")
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.identity_provider = identity_provider or build_identity_provider(settings)
    app.add_api_route("/health", health, methods=["GET"])
    app.include_router(router, prefix=settings.api_prefix)
    app.include_router(admin.router, prefix=f"{settings.api_prefix}/admin")
    return app
