import json

from sqlalchemy.exc import OperationalError

from conftest import WEBHOOK_SECRET, make_user
from peaberry import crud, models
from peaberry.deps import get_app_settings
from peaberry.sync import compute_signature

URL = "/api/webhooks/firebase-auth"


def post_event(client, payload, secret=WEBHOOK_SECRET, signature=None):
    body = json.dumps(payload).encode()
    headers = {"Content-Type": "application/json"}
    sig = signature if signature is not None else compute_signature(body, secret)
    if sig:
        headers["X-Firebase-Auth-Signature"] = sig
    return client.post(URL, content=body, headers=headers)


def snapshot(user):
    return (
        user.password_hash,
        user.provider_id,
        user.provider_uid,
        user.photo_url,
        user.identity_status,
    )


def create_event(uid="u1", email="a@b.com", **extra):
    return {"event": "user.create", "data": {"uid": uid, "email": email, "displayName": "A", **extra}}


def test_user_create_links_existing_local_account(client, db_session):
    user = make_user(db_session, username="abee", email="a@b.com")
    password_hash = user.password_hash

    r = post_event(client, create_event(photoURL="https://example.com/a.jpg"))
    assert r.status_code == 200
    assert r.json()["status"] == "applied"
    assert r.json()["userId"] == user.id

    db_session.refresh(user)
    assert user.provider_id == models.DEFAULT_PROVIDER_ID
    assert user.provider_uid == "u1"
    assert user.photo_url == "https://example.com/a.jpg"
    assert user.identity_status == models.LINKED
    assert user.password_hash == password_hash


def test_bad_signature_is_rejected_without_changes(client, db_session):
    user = make_user(db_session, username="abee", email="a@b.com")
    before = snapshot(user)

    r = post_event(client, create_event(), signature="0" * 64)
    assert r.status_code == 401

    db_session.refresh(user)
    assert snapshot(user) == before
    assert user.provider_uid is None


def test_signature_with_wrong_secret_is_rejected(client, db_session):
    make_user(db_session, username="abee", email="a@b.com")
    r = post_event(client, create_event(), secret="some-other-secret")
    assert r.status_code == 401


def test_missing_signature_header_is_rejected(client):
    r = post_event(client, create_event(), signature="")
    assert r.status_code == 401


def test_user_create_twice_is_same_as_once(client, db_session):
    user = make_user(db_session, username="abee", email="a@b.com")

    first = post_event(client, create_event())
    db_session.refresh(user)
    after_first = snapshot(user)

    second = post_event(client, create_event())
    db_session.refresh(user)

    assert first.status_code == second.status_code == 200
    assert second.json()["status"] == "noop"
    assert snapshot(user) == after_first


def test_user_create_without_local_account_is_noop(client, db_session):
    r = post_event(client, create_event(email="nobody@example.com"))
    assert r.status_code == 200
    assert r.json()["status"] == "noop"
    assert crud.list_users(db_session) == []


def test_user_create_matches_email_case_insensitively(client, db_session):
    user = make_user(db_session, username="abee", email="a@b.com")
    r = post_event(client, create_event(email="A@B.com"))
    assert r.json()["status"] == "applied"
    db_session.refresh(user)
    assert user.provider_uid == "u1"


def test_password_update_for_unknown_email_changes_nothing(client, db_session):
    user = make_user(db_session, username="abee", email="a@b.com")
    before = snapshot(user)

    r = post_event(client, {"event": "password.update", "data": {"uid": "u9", "email": "ghost@example.com"}})
    assert r.status_code == 200
    assert r.json()["status"] == "noop"

    users = crud.list_users(db_session)
    assert len(users) == 1
    db_session.refresh(user)
    assert snapshot(user) == before


def test_password_update_on_linked_account_disables_local_login(client, db_session):
    user = make_user(db_session, username="abee", email="a@b.com", password="Secret123")
    user.password_reset_token = "pending-token"
    user.password_reset_token_expires_at = models.utcnow()
    db_session.commit()
    post_event(client, create_event())

    r = post_event(client, {"event": "password.update", "data": {"uid": "u1", "email": "a@b.com"}})
    assert r.status_code == 200
    assert r.json()["status"] == "applied"

    db_session.refresh(user)
    assert user.password_hash is None
    assert user.password_reset_token is None
    assert user.password_reset_token_expires_at is None
    assert isinstance(user.credential, models.ProviderLinked)

    login = client.post("/api/login", json={"username": "abee", "password": "Secret123"})
    assert login.status_code == 401
    assert "Google" in login.json()["detail"]


def test_password_update_on_local_account_rotates_credential(client, db_session):
    user = make_user(db_session, username="abee", email="a@b.com", password="Secret123")
    old_hash = user.password_hash

    r = post_event(client, {"event": "password.update", "data": {"uid": "u1", "email": "a@b.com"}})
    assert r.json()["status"] == "applied"

    db_session.refresh(user)
    assert user.password_hash is not None
    assert user.password_hash != old_hash
    login = client.post("/api/login", json={"username": "abee", "password": "Secret123"})
    assert login.status_code == 401


def test_user_delete_orphans_account_and_unlinks_provider_identity(client, db_session, identity):
    user = make_user(db_session, username="abee", email="a@b.com")
    post_event(client, create_event())

    r = post_event(client, {"event": "user.delete", "data": {"uid": "u1", "email": "a@b.com"}})
    assert r.status_code == 200
    assert r.json()["status"] == "applied"

    db_session.refresh(user)
    assert user.identity_status == models.ORPHANED
    assert user.orphaned_at is not None
    assert crud.get_user_by_provider_uid(db_session, "u1") is None

    # the same provider UID signing in again is a new identity, not the old row
    identity.add_user("u1", "fresh@example.com", name="Fresh")
    token = identity.issue_token("u1")
    login = client.post("/api/oauth/login", json={"idToken": token})
    assert login.status_code == 200
    assert login.json()["user"]["id"] != user.id
    assert login.json()["user"]["email"] == "fresh@example.com"


def test_user_delete_never_touches_local_only_accounts(client, db_session):
    user = make_user(db_session, username="abee", email="a@b.com")
    before = snapshot(user)

    r = post_event(client, {"event": "user.delete", "data": {"uid": "u1", "email": "a@b.com"}})
    assert r.status_code == 200
    assert r.json()["status"] == "noop"
    db_session.refresh(user)
    assert snapshot(user) == before


def test_user_delete_redelivery_is_noop(client, db_session):
    make_user(db_session, username="abee", email="a@b.com")
    post_event(client, create_event())
    payload = {"event": "user.delete", "data": {"uid": "u1"}}
    assert post_event(client, payload).json()["status"] == "applied"
    assert post_event(client, payload).json()["status"] == "noop"


def test_user_delete_with_delete_policy_removes_account(app, client, db_session):
    settings = app.state.settings.model_copy(update={"webhook_delete_policy": "delete"})
    app.dependency_overrides[get_app_settings] = lambda: settings
    user = make_user(db_session, username="abee", email="a@b.com")
    user_id = user.id
    post_event(client, create_event())

    r = post_event(client, {"event": "user.delete", "data": {"uid": "u1"}})
    assert r.status_code == 200
    assert r.json()["detail"] == "deleted"
    db_session.expire_all()
    assert crud.get_user(db_session, user_id) is None


def test_unknown_event_is_acknowledged_and_ignored(client, db_session):
    r = post_event(client, {"event": "user.disable", "data": {"uid": "u1"}})
    assert r.status_code == 200
    assert r.json()["status"] == "ignored"


def test_malformed_payload_with_valid_signature_is_400(client):
    r = post_event(client, {"event": "user.create", "data": {"email": "a@b.com"}})
    assert r.status_code == 400


def test_database_failure_is_not_acknowledged(client, db_session, monkeypatch):
    make_user(db_session, username="abee", email="a@b.com")

    def boom(db, email):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(crud, "get_user_by_email", boom)
    r = post_event(client, create_event())
    assert r.status_code == 503
