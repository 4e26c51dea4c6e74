import json

import httpx
import pytest

from conftest import WEBHOOK_SECRET, make_user
from peaberry import models, sender
from peaberry.sync import verify_signature

URL = "/api/webhooks/firebase-auth"


class ForwardingSession:
    """Minimal requests.Session stand-in that routes posts into the TestClient."""

    def __init__(self, client):
        self.client = client
        self.sent = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.sent.append((url, data, headers))
        return self.client.post(url, content=data, headers=headers)


def test_encoded_payload_carries_a_valid_signature():
    payload = sender.build_payload("user.create", "u1", "a@b.com", displayName="A")
    body, signature = sender.encode_payload(payload, WEBHOOK_SECRET)
    assert verify_signature(body, signature, WEBHOOK_SECRET)

    decoded = json.loads(body)
    assert decoded["event"] == "user.create"
    assert decoded["data"]["displayName"] == "A"
    assert decoded["data"]["timestamp"]


def test_build_payload_rejects_unknown_events():
    with pytest.raises(ValueError):
        sender.build_payload("user.disable", "u1")


def test_build_payload_drops_empty_extras():
    payload = sender.build_payload("user.delete", "u1", photoURL=None)
    assert "photoURL" not in payload["data"]


def test_signed_event_is_applied_end_to_end(client, db_session):
    user = make_user(db_session, username="abee", email="a@b.com")
    session = ForwardingSession(client)

    payload = sender.build_payload("user.create", "u1", "a@b.com", photoURL="https://example.com/a.jpg")
    response = sender.send_auth_event(URL, WEBHOOK_SECRET, payload, session=session)
    assert response.json()["status"] == "applied"

    _, _, headers = session.sent[0]
    assert sender.SIGNATURE_HEADER in headers
    db_session.refresh(user)
    assert user.identity_status == models.LINKED
    assert user.photo_url == "https://example.com/a.jpg"


def test_sender_with_wrong_secret_raises(client, db_session):
    make_user(db_session, username="abee", email="a@b.com")
    payload = sender.build_payload("user.create", "u1", "a@b.com")
    with pytest.raises(httpx.HTTPStatusError):
        sender.send_auth_event(URL, "not-the-secret", payload, session=ForwardingSession(client))


def test_cli_builds_and_sends_event(monkeypatch, capsys):
    calls = []

    class Sent:
        text = '{"status":"noop"}'

    def fake_send(endpoint, secret, payload):
        calls.append((endpoint, secret, payload))
        return Sent()

    monkeypatch.setattr(sender, "send_auth_event", fake_send)
    code = sender.main(["user.delete", "--uid", "u7", "--endpoint", "http://hooks.test/auth"])
    assert code == 0
    endpoint, secret, payload = calls[0]
    assert endpoint == "http://hooks.test/auth"
    assert secret == WEBHOOK_SECRET
    assert payload["event"] == "user.delete"
    assert payload["data"]["uid"] == "u7"
    assert "noop" in capsys.readouterr().out


def test_own_session_is_closed_after_sending(monkeypatch):
    opened = []

    class FakeResponse:
        status_code = 200

        def raise_for_status(self):
            return None

    class RecordingSession:
        closed = False

        def __enter__(self):
            opened.append(self)
            return self

        def __exit__(self, *exc):
            self.closed = True

        def post(self, url, data=None, headers=None, timeout=None):
            return FakeResponse()

    monkeypatch.setattr(sender.requests, "Session", RecordingSession)
    payload = sender.build_payload("user.delete", "u1")
    response = sender.send_auth_event("http://hooks.test/auth", WEBHOOK_SECRET, payload)
    assert response.status_code == 200
    assert len(opened) == 1
    assert opened[0].closed
