"""
Keeps local user rows consistent with the external identity provider.

Firebase Auth lifecycle events arrive as HMAC-signed webhooks. Every handler
is idempotent and treats a missing account as a normal no-op: the provider
can fire events out of order and the sender may redeliver. Orphan detection
and cleanup are batch operations driven by an administrator.
"""
import hashlib
import hmac
import logging
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud, models, schemas
from .auth import random_credential_hash
from .identity import IdentityProvider

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Firebase-Auth-Signature"

USER_CREATE = "user.create"
PASSWORD_UPDATE = "password.update"
USER_DELETE = "user.delete"


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Constant-time check of a hex HMAC-SHA256 signature over the raw body."""
    if not signature or not secret:
        return False
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("ascii", "replace"))


def _result(event: str, status: str, user: Optional[models.User] = None, detail: Optional[str] = None) -> schemas.WebhookResult:
    return schemas.WebhookResult(event=event, status=status, user_id=user.id if user else None, detail=detail)


def handle_user_create(db: Session, data: schemas.AuthEventData, **_) -> schemas.WebhookResult:
    if not data.email:
        logger.info("user.create for uid %s has no email; nothing to link", data.uid)
        return _result(USER_CREATE, "noop", detail="no email")
    user = crud.get_user_by_email(db, data.email)
    if not user:
        # accounts are only created through registration or OAuth login
        logger.info("user.create for %s: no local account", data.email)
        return _result(USER_CREATE, "noop", detail="no local account")

    changed = user.link_provider(
        data.uid,
        provider_id=data.provider_id or models.DEFAULT_PROVIDER_ID,
        photo_url=data.photo_url,
    )
    if not changed:
        return _result(USER_CREATE, "noop", user, "already linked")
    db.add(user)
    db.commit()
    logger.info("linked user %s to provider uid %s", user.id, data.uid)
    return _result(USER_CREATE, "applied", user)


def handle_password_update(db: Session, data: schemas.AuthEventData, **_) -> schemas.WebhookResult:
    if not data.email:
        return _result(PASSWORD_UPDATE, "noop", detail="no email")
    user = crud.get_user_by_email(db, data.email)
    if not user:
        logger.info("password.update for %s: no local account", data.email)
        return _result(PASSWORD_UPDATE, "noop", detail="no local account")

    if user.provider_uid is not None:
        # the provider owns this password now; local login is refused from here on
        user.password_hash = None
        detail = "local password removed"
    else:
        user.password_hash = random_credential_hash()
        detail = "local password rotated"
    user.clear_reset_token()
    db.add(user)
    db.commit()
    logger.info("password.update applied to user %s (%s)", user.id, detail)
    return _result(PASSWORD_UPDATE, "applied", user, detail)


def handle_user_delete(db: Session, data: schemas.AuthEventData, delete_policy: str = "orphan", **_) -> schemas.WebhookResult:
    user = crud.get_user_by_provider_uid(db, data.uid)
    if not user:
        logger.info("user.delete for uid %s: no linked account", data.uid)
        return _result(USER_DELETE, "noop", detail="no linked account")

    if delete_policy == "delete":
        user_id = user.id
        db.delete(user)
        db.commit()
        logger.info("deleted user %s after provider deletion", user_id)
        return schemas.WebhookResult(event=USER_DELETE, status="applied", user_id=user_id, detail="deleted")

    user.mark_orphaned()
    db.add(user)
    db.commit()
    logger.info("user %s orphaned after provider deletion of uid %s", user.id, data.uid)
    return _result(USER_DELETE, "applied", user, "orphaned")


HANDLERS: Dict[str, Callable[..., schemas.WebhookResult]] = {
    USER_CREATE: handle_user_create,
    PASSWORD_UPDATE: handle_password_update,
    USER_DELETE: handle_user_delete,
}


def dispatch_event(db: Session, event: schemas.AuthWebhookEvent, delete_policy: str = "orphan") -> schemas.WebhookResult:
    handler = HANDLERS.get(event.event)
    if handler is None:
        logger.info("ignoring unsupported auth event %r", event.event)
        return schemas.WebhookResult(event=event.event, status="ignored", detail="unsupported event")
    try:
        return handler(db, event.data, delete_policy=delete_policy)
    except SQLAlchemyError:
        db.rollback()
        raise


# -------------------- reconciliation --------------------

def detect_orphans(db: Session, provider: IdentityProvider) -> schemas.OrphanScanResponse:
    """Flag linked rows whose provider UID no longer exists upstream."""
    live = provider.list_user_uids()
    linked = crud.list_users(db, identity_status=models.LINKED)
    if linked and not live:
        # never orphan every linked row on an empty listing
        logger.warning("identity provider listed no users; not flagging %d linked user(s)", len(linked))
        return schemas.OrphanScanResponse(checked=len(linked), newly_orphaned=[])
    flagged: List[int] = []
    for user in linked:
        if user.provider_uid not in live:
            user.mark_orphaned()
            db.add(user)
            flagged.append(user.id)
    if flagged:
        db.commit()
        logger.warning("orphan scan flagged %d user(s): %s", len(flagged), flagged)
    return schemas.OrphanScanResponse(checked=len(linked), newly_orphaned=flagged)


def _cleanup_one(db: Session, user_id: int, action: str) -> schemas.CleanupItem:
    user = crud.get_user(db, user_id)
    if not user:
        return schemas.CleanupItem(user_id=user_id, status="not_found")
    if user.identity_status != models.ORPHANED:
        return schemas.CleanupItem(user_id=user_id, status="skipped", detail="user is not orphaned")
    if action == "unlink":
        try:
            user.unlink_provider()
        except ValueError as e:
            return schemas.CleanupItem(user_id=user_id, status="skipped", detail=str(e))
        db.add(user)
        db.commit()
        return schemas.CleanupItem(user_id=user_id, status="unlinked")
    db.delete(user)
    db.commit()
    return schemas.CleanupItem(user_id=user_id, status="deleted")


def cleanup_orphans(db: Session, user_ids: Iterable[int], action: str = "delete") -> schemas.CleanupResponse:
    """Delete or unlink orphaned users one by one; a failure never stops the batch."""
    results: List[schemas.CleanupItem] = []
    for user_id in dict.fromkeys(user_ids):
        try:
            item = _cleanup_one(db, user_id, action)
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("cleanup of user %s failed", user_id)
            item = schemas.CleanupItem(user_id=user_id, status="failed", detail=e.__class__.__name__)
        results.append(item)
    succeeded = sum(1 for r in results if r.status in ("deleted", "unlinked"))
    logger.info("orphan cleanup (%s): %d of %d succeeded", action, succeeded, len(results))
    return schemas.CleanupResponse(action=action, results=results, processed=len(results), succeeded=succeeded)
