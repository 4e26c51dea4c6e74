import jwt
import pytest
from fastapi.testclient import TestClient

import peaberry.main
from conftest import JWT_SECRET, make_settings
from peaberry import crud
from peaberry.auth import decode_access_token
from peaberry.config import ConfigurationError
from peaberry.identity import InMemoryIdentityProvider, build_identity_provider
from peaberry.main import create_app

INJECTED_SECRET = "injected-secret-long-enough-for-hs256-keys"


def test_missing_webhook_secret_fails_fast():
    with pytest.raises(ConfigurationError, match="FIREBASE_WEBHOOK_SECRET"):
        create_app(make_settings(firebase_webhook_secret=None))


def test_firebase_requires_project_id():
    cfg = make_settings(use_in_memory_identity=False, firebase_project_id=None)
    with pytest.raises(ConfigurationError, match="FIREBASE_PROJECT_ID"):
        cfg.check_ready()
    with pytest.raises(ConfigurationError):
        build_identity_provider(cfg)


def test_in_memory_identity_is_selected_by_settings():
    assert isinstance(build_identity_provider(make_settings()), InMemoryIdentityProvider)


def test_delete_policy_is_validated():
    with pytest.raises(ValueError):
        make_settings(webhook_delete_policy="purge")


def test_importing_main_builds_no_app():
    assert not hasattr(peaberry.main, "app")


def test_app_factory_wires_settings_and_provider():
    provider = InMemoryIdentityProvider()
    app = create_app(make_settings(api_prefix="/v1"), identity_provider=provider)
    assert app.state.identity_provider is provider
    with TestClient(app) as client:
        assert client.get("/health").json() == {"status": "ok"}
    paths = app.openapi()["paths"]
    assert "/v1/webhooks/firebase-auth" in paths
    assert "/v1/admin/users/cleanup" in paths


def test_app_uses_injected_database_and_jwt_secret(tmp_path):
    db_file = tmp_path / "injected.db"
    app = create_app(
        make_settings(database_url=f"sqlite:///{db_file}", jwt_secret=INJECTED_SECRET),
        identity_provider=InMemoryIdentityProvider(),
    )
    try:
        assert db_file.exists()
        assert app.state.engine.url.database == str(db_file)

        with TestClient(app) as client:
            r = client.post(
                "/api/register",
                json={"username": "bean", "email": "bean@example.com", "name": "Bean", "password": "Secret123"},
            )
            assert r.status_code == 201
            token = r.json()["accessToken"]
            assert decode_access_token(token, INJECTED_SECRET)["sub"] == str(r.json()["user"]["id"])
            with pytest.raises(jwt.InvalidSignatureError):
                decode_access_token(token, JWT_SECRET)

            me = client.get("/api/user", headers={"Authorization": f"Bearer {token}"})
            assert me.json()["username"] == "bean"

        with app.state.session_factory() as db:
            assert crud.get_user_by_username(db, "bean") is not None
    finally:
        app.state.engine.dispose()
