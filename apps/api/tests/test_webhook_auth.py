"""Tests for webhook authentication and access-token checks."""
from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import jwt
import pytest
from httpx import ASGITransport, AsyncClient

from callrelay.core.config import settings
from callrelay.core.security import InvalidTokenError, decode_token, issue_token, verify_webhook
from callrelay.main import create_app
from callrelay.services.provider import VoiceProviderClient

BODY = json.dumps({"message": {"type": "speech-update", "call": {"id": "abc123"}, "status": "started"}}).encode()


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def test_verify_webhook_with_shared_secret(monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", "s3cret")

    assert verify_webhook({"x-vapi-secret": "s3cret"}, BODY)
    assert not verify_webhook({"x-vapi-secret": "wrong"}, BODY)
    assert not verify_webhook({}, BODY)


def test_verify_webhook_with_signature(monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", "s3cret")

    assert verify_webhook({"x-vapi-signature": sign("s3cret", BODY)}, BODY)
    assert verify_webhook({"x-vapi-signature": f"sha256={sign('s3cret', BODY)}"}, BODY)
    assert not verify_webhook({"x-vapi-signature": sign("s3cret", BODY + b" ")}, BODY)


def test_non_ascii_headers_are_rejected_not_raised(monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", "s3cret")

    assert not verify_webhook({"x-vapi-secret": "s3crét"}, BODY)
    assert not verify_webhook({"x-vapi-signature": "sigñature"}, BODY)


def test_unconfigured_secret_only_allowed_outside_production(monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", "")

    monkeypatch.setattr(settings, "app_env", "development")
    assert verify_webhook({}, BODY)

    monkeypatch.setattr(settings, "app_env", "production")
    assert not verify_webhook({}, BODY)


def test_decode_token_roundtrip_and_rejections():
    principal = decode_token(issue_token("sup-1", "supervisor"))
    assert (principal.user_id, principal.role) == ("sup-1", "supervisor")

    with pytest.raises(InvalidTokenError):
        decode_token("not-a-token")
    with pytest.raises(InvalidTokenError):
        decode_token(jwt.encode({"sub": "u1", "role": "root"}, settings.jwt_secret, algorithm=settings.jwt_algorithm))
    with pytest.raises(InvalidTokenError):
        decode_token(jwt.encode({"sub": "u1", "role": "agent"}, "another-secret", algorithm="HS256"))


@pytest.mark.asyncio
async def test_webhook_route_rejects_bad_signature(engine, monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", "s3cret")
    provider = VoiceProviderClient(
        base_url="https://api.vapi.test",
        api_key="key",
        assistant_id="assistant-1",
        phone_number_id="number-1",
        transport=httpx.MockTransport(lambda request: httpx.Response(404)),
    )
    app = create_app(engine=engine, provider=provider)

    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
            rejected = await client.post("/api/webhook", content=BODY, headers={"x-vapi-signature": "deadbeef"})
            accepted = await client.post(
                "/api/webhook", content=BODY, headers={"x-vapi-signature": sign("s3cret", BODY)}
            )
            garbage = await client.post("/api/webhook", content=b"{not json", headers={"x-vapi-secret": "s3cret"})
            latin = await client.post(
                "/api/webhook", content=BODY, headers={"x-vapi-secret": "s3cr\xe9t".encode("latin-1")}
            )

    assert rejected.status_code == 401
    assert accepted.status_code == 200
    assert accepted.json() == {"success": True}
    assert garbage.json() == {"success": True}
    assert latin.status_code == 401
