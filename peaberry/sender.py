"""
Sender side of the auth lifecycle webhook.

The identity provider's triggers call `send_auth_event`, which serializes
the payload once, signs those exact bytes and posts them. The CLI fires a
test event at a running server:

  python -m peaberry.sender user.create --uid u1 --email a@b.com --display-name A
"""
import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

import requests

from .config import get_settings
from .sync import PASSWORD_UPDATE, SIGNATURE_HEADER, USER_CREATE, USER_DELETE, compute_signature

logger = logging.getLogger(__name__)

EVENTS = (USER_CREATE, PASSWORD_UPDATE, USER_DELETE)


def build_payload(event: str, uid: str, email: Optional[str] = None, **extra) -> dict:
    if event not in EVENTS:
        raise ValueError(f"unsupported event {event!r}")
    data = {"uid": uid, "email": email}
    data.update({k: v for k, v in extra.items() if v is not None})
    data["timestamp"] = datetime.now(timezone.utc).isoformat()
    return {"event": event, "data": data}


def encode_payload(payload: dict, secret: str) -> tuple[bytes, str]:
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return body, compute_signature(body, secret)


def send_auth_event(
    endpoint: str,
    secret: str,
    payload: dict,
    session: Optional[requests.Session] = None,
    timeout: float = 10.0,
) -> requests.Response:
    body, signature = encode_payload(payload, secret)
    headers = {"Content-Type": "application/json", SIGNATURE_HEADER: signature}
    if session is not None:
        response = session.post(endpoint, data=body, headers=headers, timeout=timeout)
    else:
        with requests.Session() as http:
            response = http.post(endpoint, data=body, headers=headers, timeout=timeout)
    logger.info("%s for uid %s -> %s", payload["event"], payload["data"].get("uid"), response.status_code)
    response.raise_for_status()
    return response


def main(argv=None):
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Send a signed auth lifecycle event")
    parser.add_argument("event", choices=EVENTS)
    parser.add_argument("--uid", required=True)
    parser.add_argument("--email")
    parser.add_argument("--display-name")
    parser.add_argument("--photo-url")
    parser.add_argument("--endpoint", default=settings.firebase_webhook_endpoint)
    parser.add_argument("--secret", default=settings.firebase_webhook_secret)
    args = parser.parse_args(argv)
    if not args.secret:
        parser.error("a webhook secret is required (--secret or FIREBASE_WEBHOOK_SECRET)")

    logging.basicConfig(level=settings.log_level.upper())
    payload = build_payload(
        args.event,
        args.uid,
        args.email,
        displayName=args.display_name,
        photoURL=args.photo_url,
    )
    try:
        response = send_auth_event(args.endpoint, args.secret, payload)
    except requests.RequestException as e:
        logger.error("webhook delivery failed: %s", e)
        return 1
    print(response.text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
