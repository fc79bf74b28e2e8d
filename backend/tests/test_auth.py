"""Tests for sign-in routes and the bearer-token guard."""

import pytest
from sqlalchemy import func, select

from aegis.api.routes import auth as auth_routes
from aegis.db.models import Subscription, TelemetryLog, User
from aegis.services.auth import create_access_token, decode_token, hash_password, verify_password
from aegis.services.identity import IdentityError, VerifiedIdentity
from tests.conftest import auth_headers, device_info, make_device, make_user, miss_first_lookup


class TestPasswordHashing:
    def test_hash_and_verify(self):
        hashed = hash_password("correct horse")
        assert hashed != "correct horse"
        assert verify_password("correct horse", hashed)
        assert not verify_password("wrong horse", hashed)


class TestTokens:
    def test_round_trip_claims(self):
        token = create_access_token("user-1", "a@aegis-mobile.com")
        payload = decode_token(token)
        assert payload.sub == "user-1"
        assert payload.email == "a@aegis-mobile.com"

    def test_tampered_token_rejected(self):
        from fastapi import HTTPException

        token = create_access_token("user-1", "a@aegis-mobile.com")
        with pytest.raises(HTTPException) as exc:
            decode_token(token[:-2] + "xx")
        assert exc.value.status_code == 401


@pytest.mark.asyncio
class TestEmailRegister:
    async def test_register_creates_user_device_and_trial(self, client, session_factory):
        resp = await client.post("/api/auth/email-register", json={
            "email": "New.User@aegis-mobile.com",
            "password": "s3cret-pass",
            "name": "New User",
            "deviceInfo": device_info("hw-reg-1"),
        })
        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        data = body["data"]
        assert data["token"]
        assert data["user"]["email"] == "new.user@aegis-mobile.com"
        assert data["device"]["id"]
        assert data["subscription"]["tier"] == "free"
        assert data["subscription"]["status"] == "trial"
        assert data["subscription"]["trialEndsAt"]

        async with session_factory() as s:
            subs = (await s.execute(select(func.count()).select_from(Subscription))).scalar_one()
            events = (
                await s.execute(
                    select(TelemetryLog.event_type).where(TelemetryLog.event_type == "email_register")
                )
            ).scalars().all()
        assert subs == 1
        assert events == ["email_register"]

    async def test_duplicate_email_conflict(self, client, session_factory):
        await make_user(session_factory, email="taken@aegis-mobile.com")
        resp = await client.post("/api/auth/email-register", json={
            "email": "taken@aegis-mobile.com",
            "password": "s3cret-pass",
            "name": "Someone",
            "deviceInfo": device_info(),
        })
        assert resp.status_code == 409
        assert resp.json() == {"success": False, "error": "Email already registered"}

    async def test_racing_registration_conflicts(self, client, session_factory, monkeypatch):
        await make_user(session_factory, email="race@aegis-mobile.com")
        miss_first_lookup(monkeypatch, auth_routes, "find_user")

        resp = await client.post("/api/auth/email-register", json={
            "email": "race@aegis-mobile.com",
            "password": "s3cret-pass",
            "name": "Racer",
            "deviceInfo": device_info("hw-race"),
        })
        assert resp.status_code == 409
        assert resp.json() == {"success": False, "error": "Email already registered"}

        async with session_factory() as s:
            count = (
                await s.execute(
                    select(func.count()).select_from(User).where(User.email == "race@aegis-mobile.com")
                )
            ).scalar_one()
        assert count == 1

    async def test_device_of_other_user_conflict(self, client, session_factory):
        owner = await make_user(session_factory, email="owner@aegis-mobile.com")
        await make_device(session_factory, owner, device_id="hw-shared")

        resp = await client.post("/api/auth/email-register", json={
            "email": "thief@aegis-mobile.com",
            "password": "s3cret-pass",
            "name": "Thief",
            "deviceInfo": device_info("hw-shared"),
        })
        assert resp.status_code == 409
        assert resp.json()["error"] == "Device belongs to another user"

        # the whole registration rolled back
        async with session_factory() as s:
            thief = (
                await s.execute(select(User).where(User.email == "thief@aegis-mobile.com"))
            ).scalar_one_or_none()
        assert thief is None

    async def test_short_password_is_validation_error(self, client):
        resp = await client.post("/api/auth/email-register", json={
            "email": "x@aegis-mobile.com",
            "password": "short",
            "name": "X",
            "deviceInfo": device_info(),
        })
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["error"] == "Invalid request data"
        assert body["details"]


@pytest.mark.asyncio
class TestEmailLogin:
    async def test_login_success(self, client, session_factory):
        await make_user(session_factory, email="login@aegis-mobile.com", password="pa55word!")
        resp = await client.post("/api/auth/email-login", json={
            "email": "login@aegis-mobile.com",
            "password": "pa55word!",
            "deviceInfo": device_info("hw-login"),
        })
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["token"]
        assert data["subscription"]["status"] == "trial"

    async def test_wrong_password(self, client, session_factory):
        await make_user(session_factory, email="login@aegis-mobile.com", password="pa55word!")
        resp = await client.post("/api/auth/email-login", json={
            "email": "login@aegis-mobile.com",
            "password": "nope",
            "deviceInfo": device_info(),
        })
        assert resp.status_code == 401
        assert resp.json()["error"] == "Invalid email or password"

    async def test_unknown_email(self, client):
        resp = await client.post("/api/auth/email-login", json={
            "email": "ghost@aegis-mobile.com",
            "password": "whatever",
            "deviceInfo": device_info(),
        })
        assert resp.status_code == 401

    async def test_rate_limited_after_five_attempts(self, client):
        payload = {
            "email": "ghost@aegis-mobile.com",
            "password": "whatever",
            "deviceInfo": device_info(),
        }
        headers = {"x-forwarded-for": "203.0.113.9, 10.0.0.1"}
        for _ in range(5):
            resp = await client.post("/api/auth/email-login", json=payload, headers=headers)
            assert resp.status_code == 401

        resp = await client.post("/api/auth/email-login", json=payload, headers=headers)
        assert resp.status_code == 429
        assert resp.json()["error"] == "Too many login attempts"

        # a different client address has its own window
        resp = await client.post(
            "/api/auth/email-login", json=payload, headers={"x-forwarded-for": "198.51.100.7"}
        )
        assert resp.status_code == 401


@pytest.mark.asyncio
class TestProviderVerify:
    async def test_email_provider_rejected(self, client):
        resp = await client.post("/api/auth/verify", json={
            "idToken": "tok",
            "provider": "email",
            "deviceInfo": device_info(),
        })
        assert resp.status_code == 400

    async def test_google_sign_in_creates_user(self, client, monkeypatch):
        async def fake_verify(token, provider):
            assert provider == "google"
            return VerifiedIdentity(email="g@aegis-mobile.com", provider_id="google-sub-1", name="G")

        monkeypatch.setattr("aegis.api.routes.auth.verify_provider_token", fake_verify)
        resp = await client.post("/api/auth/verify", json={
            "idToken": "google-id-token",
            "provider": "google",
            "deviceInfo": device_info("hw-google"),
        })
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["user"]["email"] == "g@aegis-mobile.com"
        assert data["user"]["name"] == "G"
        assert data["subscription"]["status"] == "trial"

        # second sign-in reuses the user and the trial
        resp2 = await client.post("/api/auth/verify", json={
            "idToken": "google-id-token",
            "provider": "google",
            "deviceInfo": device_info("hw-google"),
        })
        assert resp2.json()["data"]["user"]["id"] == data["user"]["id"]
        assert resp2.json()["data"]["device"]["id"] == data["device"]["id"]

    async def test_racing_first_sign_in_reuses_account(self, client, monkeypatch):
        async def fake_verify(token, provider):
            return VerifiedIdentity(email="g@aegis-mobile.com", provider_id="google-sub-1")

        monkeypatch.setattr("aegis.api.routes.auth.verify_provider_token", fake_verify)
        body = {"idToken": "t", "provider": "google", "deviceInfo": device_info("hw-google")}
        first = await client.post("/api/auth/verify", json=body)
        assert first.status_code == 200

        # the account exists but this request's lookup ran before it was committed
        miss_first_lookup(monkeypatch, auth_routes, "find_user")
        second = await client.post("/api/auth/verify", json=body)
        assert second.status_code == 200
        assert second.json()["data"]["user"]["id"] == first.json()["data"]["user"]["id"]

    async def test_provider_id_mismatch(self, client, monkeypatch):
        identities = iter([
            VerifiedIdentity(email="g@aegis-mobile.com", provider_id="sub-1"),
            VerifiedIdentity(email="g@aegis-mobile.com", provider_id="sub-2"),
        ])

        async def fake_verify(token, provider):
            return next(identities)

        monkeypatch.setattr("aegis.api.routes.auth.verify_provider_token", fake_verify)
        body = {"idToken": "t", "provider": "apple", "deviceInfo": device_info("hw-apple", "ios")}
        assert (await client.post("/api/auth/verify", json=body)).status_code == 200
        resp = await client.post("/api/auth/verify", json=body)
        assert resp.status_code == 401
        assert resp.json()["error"] == "Authentication failed"

    async def test_identity_failure(self, client, monkeypatch):
        async def fake_verify(token, provider):
            raise IdentityError("bad signature")

        monkeypatch.setattr("aegis.api.routes.auth.verify_provider_token", fake_verify)
        resp = await client.post("/api/auth/verify", json={
            "idToken": "t",
            "provider": "google",
            "deviceInfo": device_info(),
        })
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "error": "Authentication failed"}


@pytest.mark.asyncio
class TestBearerGuard:
    async def test_missing_header(self, client):
        resp = await client.post("/api/url/classify", json={"url": "https://example.com"})
        assert resp.status_code == 401
        assert resp.json()["success"] is False

    async def test_garbage_token(self, client):
        resp = await client.post(
            "/api/url/classify",
            json={"url": "https://example.com"},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert resp.status_code == 401
        assert resp.json()["error"] == "Invalid or expired token"

    async def test_token_for_deleted_user(self, client, session_factory):
        user = await make_user(session_factory)
        headers = auth_headers(user)
        async with session_factory() as s:
            await s.delete(await s.get(User, user.id))
            await s.commit()
        resp = await client.get("/api/subscription/current", headers=headers)
        assert resp.status_code == 401
