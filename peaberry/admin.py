"""
Admin back-office routes: cafe listings, user management and the
orphaned-account reconciliation flow.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session

from . import crud, models, schemas, sync
from .deps import get_db, get_identity_provider, require_admin
from .identity import IdentityProvider

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


def _admin_user(user: models.User) -> schemas.AdminUserRead:
    return schemas.AdminUserRead.model_validate(user)


# -------------------- cafes --------------------

@router.get("/cafes", response_model=List[schemas.CafeWithDetails])
async def admin_list_cafes(status: Optional[schemas.CafeStatus] = None, db: Session = Depends(get_db)):
    return crud.list_cafes(db, schemas.CafeFilter(status=status))


@router.post("/cafes", response_model=schemas.CafeWithDetails, status_code=201)
async def admin_create_cafe(payload: schemas.CafeCreate, db: Session = Depends(get_db)):
    try:
        cafe = crud.create_cafe(db, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return crud.get_cafe_with_details(db, cafe.id)


@router.get("/cafes/{cafe_id}", response_model=schemas.CafeWithDetails)
async def admin_get_cafe(cafe_id: int, db: Session = Depends(get_db)):
    cafe = crud.get_cafe_with_details(db, cafe_id)
    if not cafe:
        raise HTTPException(status_code=404, detail="Cafe not found")
    return cafe


@router.put("/cafes/{cafe_id}", response_model=schemas.CafeWithDetails)
async def admin_update_cafe(cafe_id: int, payload: schemas.CafeUpdate, db: Session = Depends(get_db)):
    if not crud.update_cafe(db, cafe_id, payload):
        raise HTTPException(status_code=404, detail="Cafe not found")
    return crud.get_cafe_with_details(db, cafe_id)


@router.put("/cafes/{cafe_id}/roast-levels", response_model=List[str])
async def admin_set_roast_levels(cafe_id: int, payload: schemas.RoastLevelsUpdate, db: Session = Depends(get_db)):
    try:
        return crud.replace_roast_levels(db, cafe_id, payload.roast_levels)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.put("/cafes/{cafe_id}/brewing-methods", response_model=List[str])
async def admin_set_brewing_methods(cafe_id: int, payload: schemas.BrewingMethodsUpdate, db: Session = Depends(get_db)):
    try:
        return crud.replace_brewing_methods(db, cafe_id, payload.brewing_methods)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.put("/cafes/{cafe_id}/status", response_model=schemas.CafeWithDetails)
async def admin_set_status(cafe_id: int, payload: schemas.CafeStatusUpdate, db: Session = Depends(get_db)):
    if not crud.update_cafe(db, cafe_id, schemas.CafeUpdate(status=payload.status)):
        raise HTTPException(status_code=404, detail="Cafe not found")
    return crud.get_cafe_with_details(db, cafe_id)


@router.delete("/cafes/{cafe_id}", status_code=204)
async def admin_delete_cafe(cafe_id: int, db: Session = Depends(get_db)):
    if not crud.delete_cafe(db, cafe_id):
        raise HTTPException(status_code=404, detail="Cafe not found")
    return Response(status_code=204)


# -------------------- users --------------------

@router.get("/users", response_model=List[schemas.AdminUserRead])
async def admin_list_users(db: Session = Depends(get_db)):
    return [_admin_user(u) for u in crud.list_users(db)]


@router.get("/users/orphaned", response_model=List[schemas.AdminUserRead])
async def admin_list_orphaned(db: Session = Depends(get_db)):
    return [_admin_user(u) for u in crud.list_users(db, identity_status=models.ORPHANED)]


@router.post("/users/orphaned/scan", response_model=schemas.OrphanScanResponse)
async def admin_scan_orphans(db: Session = Depends(get_db), provider: IdentityProvider = Depends(get_identity_provider)):
    return sync.detect_orphans(db, provider)


@router.post("/users/cleanup", response_model=schemas.CleanupResponse)
async def admin_cleanup_users(
    payload: schemas.CleanupRequest,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    if not payload.confirm:
        raise HTTPException(status_code=400, detail="cleanup must be confirmed with confirm=true")
    if admin.id in payload.user_ids:
        raise HTTPException(status_code=400, detail="cannot clean up your own account")
    logger.info("admin %s requested %s of users %s", admin.id, payload.action, payload.user_ids)
    return sync.cleanup_orphans(db, payload.user_ids, action=payload.action)


@router.delete("/users/{user_id}")
async def admin_delete_user(user_id: int, db: Session = Depends(get_db), admin: models.User = Depends(require_admin)):
    if user_id == admin.id:
        raise HTTPException(status_code=400, detail="cannot delete your own account")
    if not crud.delete_user(db, user_id):
        raise HTTPException(status_code=404, detail="user not found")
    return {"deleted": user_id}
