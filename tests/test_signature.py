import json

from peaberry.sync import compute_signature, verify_signature

SECRET = "peaberry-webhook-secret"
BODY = json.dumps({"event": "user.create", "data": {"uid": "u1", "email": "a@b.com"}}).encode()


def test_valid_signature_verifies():
    assert verify_signature(BODY, compute_signature(BODY, SECRET), SECRET)


def test_uppercase_hex_is_accepted():
    assert verify_signature(BODY, compute_signature(BODY, SECRET).upper(), SECRET)


def test_any_single_byte_change_in_payload_fails():
    signature = compute_signature(BODY, SECRET)
    for i in range(len(BODY)):
        mutated = bytearray(BODY)
        mutated[i] ^= 0x01
        assert not verify_signature(bytes(mutated), signature, SECRET), i


def test_any_single_byte_change_in_secret_fails():
    signature = compute_signature(BODY, SECRET)
    for i in range(len(SECRET)):
        wrong = SECRET[:i] + chr(ord(SECRET[i]) ^ 0x01) + SECRET[i + 1:]
        assert not verify_signature(BODY, signature, wrong), i


def test_missing_or_garbage_signature_fails():
    assert not verify_signature(BODY, None, SECRET)
    assert not verify_signature(BODY, "", SECRET)
    assert not verify_signature(BODY, "not-hex-at-all", SECRET)
    assert not verify_signature(BODY, "é" * 64, SECRET)


def test_missing_secret_rejects_everything():
    signature = compute_signature(BODY, SECRET)
    assert not verify_signature(BODY, signature, None)
    assert not verify_signature(BODY, signature, "")
