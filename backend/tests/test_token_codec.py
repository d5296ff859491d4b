"""
Bearer token codec and response signing.
Covers:
  token_codec.issue / verify   (round trip, tampering, expiry, malformed input)
  session_service.sign_response / verify_signature
  session_service.new_challenge_token
"""
import time

import jwt
import pytest

import session_service
import token_codec

SECRET = "unit-test-secret-that-is-32-bytes!!"


# ── 1. Issue / verify ─────────────────────────────────────────────────────────

def test_issue_then_verify_returns_claims():
    token = token_codec.issue({"username": "ops", "type": "admin"}, SECRET, 60)
    result = token_codec.verify(token, SECRET)
    assert result.valid
    assert result.claims["username"] == "ops"
    assert result.claims["exp"] - result.claims["iat"] == 60


def test_verify_rejects_wrong_secret():
    token = token_codec.issue({"type": "admin"}, SECRET, 60)
    result = token_codec.verify(token, "another-secret-that-is-32-bytes-long")
    assert not result.valid
    assert result.reason == "bad_signature"


def test_verify_rejects_tampered_payload():
    token = token_codec.issue({"username": "ops", "type": "member"}, SECRET, 60)
    forged = jwt.encode(
        {"username": "ops", "type": "admin", "iat": int(time.time()), "exp": int(time.time()) + 60},
        "attacker-controlled-secret-32-bytes!",
        algorithm="HS256",
    )
    header, _, signature = token.split(".")
    spliced = ".".join([header, forged.split(".")[1], signature])
    assert not token_codec.verify(spliced, SECRET).valid


def test_verify_rejects_expired_token():
    past = int(time.time()) - 120
    token = jwt.encode({"type": "admin", "iat": past, "exp": past + 60}, SECRET, algorithm="HS256")
    result = token_codec.verify(token, SECRET)
    assert not result.valid
    assert result.reason == "expired"


@pytest.mark.parametrize("token", [None, "", "abc", "a.b", "a.b.c.d", "!!.??.**"])
def test_verify_never_raises_on_garbage(token):
    assert not token_codec.verify(token, SECRET).valid


def test_issue_rejects_non_positive_ttl():
    with pytest.raises(ValueError):
        token_codec.issue({}, SECRET, 0)


def test_admin_and_member_tokens_carry_their_type():
    admin = token_codec.verify(token_codec.issue_admin_token("ops", SECRET, 60), SECRET)
    member = token_codec.verify(token_codec.issue_member_token("a@b.com", SECRET, 60), SECRET)
    assert admin.claims["type"] == "admin"
    assert member.claims["type"] == "member"
    assert member.claims["email"] == "a@b.com"


# ── 2. Response signing ───────────────────────────────────────────────────────

def test_signed_response_verifies():
    signed = session_service.sign_response({"valid": True, "session_token": "abc"})
    assert signed["signature_algorithm"] == "HMAC-SHA256"
    assert session_service.verify_signature(signed)


def test_signature_is_independent_of_key_order():
    a = session_service.sign_response({"x": 1, "y": 2})
    b = session_service.sign_response({"y": 2, "x": 1})
    assert a["signature"] == b["signature"]


def test_modified_signed_response_fails_verification():
    signed = session_service.sign_response({"valid": True, "license_status": "active"})
    signed["license_status"] = "revoked"
    assert not session_service.verify_signature(signed)


# ── 3. Challenge tokens ───────────────────────────────────────────────────────

def test_challenge_token_shape():
    token = session_service.new_challenge_token()
    stamp, random_part = token.split(".")
    assert int(stamp, 36) > 0
    assert len(random_part) == 16
    int(random_part, 16)


def test_challenge_tokens_are_unique():
    assert len({session_service.new_challenge_token() for _ in range(500)}) == 500
