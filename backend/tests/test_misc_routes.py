"""Tests for quarantine uploads, URL classification, telemetry and health."""

import httpx
import pytest
from sqlalchemy import select

from aegis.config import settings
from aegis.db.models import Device, Quarantine, TelemetryLog
from aegis.services.storage import quarantine_key
from aegis.services.telemetry import record_event, record_event_best_effort
from aegis.services.url_reputation import SAFE_BROWSING_URL, SafeBrowsingClient
from tests.conftest import SHA_EVIL, auth_headers, make_device, make_user


@pytest.mark.asyncio
class TestHealthEndpoints:
    async def test_root(self, client):
        resp = await client.get("/")
        assert resp.status_code == 200
        data = resp.json()
        assert data["service"] == settings.APP_NAME
        assert data["status"] == "running"

    async def test_api_health(self, client):
        resp = await client.get("/api/health")
        assert resp.json()["version"] == settings.APP_VERSION

    async def test_openapi_lists_routes(self, client):
        paths = (await client.get("/openapi.json")).json()["paths"]
        for path in (
            "/api/auth/verify",
            "/api/device/command",
            "/api/scan/hash-check",
            "/api/quarantine/signed-upload",
            "/api/admin/threats/upload",
            "/api/telemetry/batch",
        ):
            assert path in paths

    async def test_unknown_route_is_enveloped(self, client):
        resp = await client.get("/api/nope")
        assert resp.status_code == 404
        assert resp.json()["success"] is False


# ── Quarantine ────────────────────────────────────────────────────────


async def _quarantined_item(session_factory, device):
    async with session_factory() as s:
        item = Quarantine(
            device_id=device.id,
            file_name="joker.apk",
            file_path="/sdcard/joker.apk",
            file_hash=SHA_EVIL,
            threat_name="Android.Trojan.Joker",
            severity="high",
        )
        s.add(item)
        await s.commit()
        return item


@pytest.mark.asyncio
class TestSignedUpload:
    async def test_issues_presigned_url(self, client, session_factory, storage):
        user = await make_user(session_factory)
        device = await make_device(session_factory, user)
        item = await _quarantined_item(session_factory, device)

        resp = await client.post(
            "/api/quarantine/signed-upload",
            json={"quarantineId": item.id, "fileSize": 4096, "contentType": "application/vnd.android.package-archive"},
            headers=auth_headers(user),
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["expiresIn"] == 900
        assert data["storageKey"].startswith(f"quarantine/{user.id}/{device.id}/")
        assert data["storageKey"].endswith(f"-{SHA_EVIL}")
        assert data["uploadUrl"].startswith("https://s3.test/")

        presigned = storage.presigned[0]
        assert presigned["metadata"] == {
            "userId": user.id, "deviceId": device.id, "fileHash": SHA_EVIL,
        }
        assert presigned["content_length"] == 4096

        async with session_factory() as s:
            stored = await s.get(Quarantine, item.id)
        assert stored.storage_key == data["storageKey"]
        assert stored.file_size == 4096
        assert stored.upload_status == "pending"

    async def test_other_users_item(self, client, session_factory):
        owner = await make_user(session_factory, email="owner@aegis-mobile.com")
        other = await make_user(session_factory, email="other@aegis-mobile.com")
        item = await _quarantined_item(session_factory, await make_device(session_factory, owner))

        resp = await client.post(
            "/api/quarantine/signed-upload",
            json={"quarantineId": item.id, "fileSize": 10, "contentType": "application/octet-stream"},
            headers=auth_headers(other),
        )
        assert resp.status_code == 404

    async def test_storage_not_configured(self, client, session_factory, monkeypatch):
        monkeypatch.setattr(settings, "S3_BUCKET_NAME", "")
        user = await make_user(session_factory)
        resp = await client.post(
            "/api/quarantine/signed-upload",
            json={"quarantineId": "q", "fileSize": 10, "contentType": "application/octet-stream"},
            headers=auth_headers(user),
        )
        assert resp.status_code == 500
        assert resp.json() == {"success": False, "error": "Server configuration error"}

    async def test_zero_size_rejected(self, client, session_factory):
        user = await make_user(session_factory)
        resp = await client.post(
            "/api/quarantine/signed-upload",
            json={"quarantineId": "q", "fileSize": 0, "contentType": "application/octet-stream"},
            headers=auth_headers(user),
        )
        assert resp.status_code == 400


class TestQuarantineKey:
    def test_key_layout(self):
        key = quarantine_key("u1", "d1", "abc")
        prefix, stamp_hash = key.rsplit("/", 1)
        assert prefix == "quarantine/u1/d1"
        stamp, file_hash = stamp_hash.split("-", 1)
        assert stamp.isdigit()
        assert file_hash == "abc"


# ── URL classification ────────────────────────────────────────────────


@pytest.mark.asyncio
class TestUrlClassify:
    async def test_route_returns_classifier_verdict(self, client, session_factory, url_classifier):
        user = await make_user(session_factory)
        url_classifier.verdict = {
            "isSafe": False,
            "category": "SOCIAL_ENGINEERING",
            "reason": "This URL is flagged as SOCIAL_ENGINEERING",
        }
        resp = await client.post(
            "/api/url/classify", json={"url": "http://phish.example.com/login"}, headers=auth_headers(user)
        )
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "data": url_classifier.verdict}

    @pytest.mark.parametrize("url", ["not a url", "ftp://files.example.com/x"])
    async def test_rejects_non_http_urls(self, client, session_factory, url):
        user = await make_user(session_factory)
        resp = await client.post("/api/url/classify", json={"url": url}, headers=auth_headers(user))
        assert resp.status_code == 400

    async def test_match_is_unsafe(self, monkeypatch):
        monkeypatch.setattr(settings, "SAFE_BROWSING_API_KEY", "key")

        def handler(request):
            assert str(request.url).startswith(SAFE_BROWSING_URL)
            assert request.url.params["key"] == "key"
            return httpx.Response(200, json={"matches": [{"threatType": "MALWARE"}]})

        verdict = await SafeBrowsingClient(transport=httpx.MockTransport(handler)).classify(
            "http://bad.example.com"
        )
        assert verdict == {
            "isSafe": False,
            "category": "MALWARE",
            "reason": "This URL is flagged as MALWARE",
        }

    async def test_no_match_is_safe(self, monkeypatch):
        monkeypatch.setattr(settings, "SAFE_BROWSING_API_KEY", "key")
        client = SafeBrowsingClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
        assert await client.classify("https://good.example.com") == {"isSafe": True}

    async def test_vendor_error_fails_open(self, monkeypatch):
        monkeypatch.setattr(settings, "SAFE_BROWSING_API_KEY", "key")
        client = SafeBrowsingClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        assert await client.classify("https://x.example.com") == {"isSafe": True}

    async def test_missing_key_fails_open(self, monkeypatch):
        monkeypatch.setattr(settings, "SAFE_BROWSING_API_KEY", "")
        assert await SafeBrowsingClient().classify("https://x.example.com") == {"isSafe": True}


# ── Telemetry ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestTelemetryBatch:
    async def test_bulk_insert(self, client, session_factory):
        user = await make_user(session_factory)
        device = await make_device(session_factory, user)
        events = [
            {"eventType": "app_open", "eventData": {"screen": "home"}, "timestamp": "2025-06-01T08:00:00Z"},
            {"eventType": "scan_started", "eventData": {}, "timestamp": "2025-06-01T08:01:00Z"},
        ]
        resp = await client.post(
            "/api/telemetry/batch",
            json={"deviceId": device.id, "events": events},
            headers=auth_headers(user),
        )
        assert resp.status_code == 200
        assert resp.json()["data"] == {"eventsProcessed": 2}

        async with session_factory() as s:
            rows = (
                await s.execute(select(TelemetryLog).order_by(TelemetryLog.timestamp))
            ).scalars().all()
        assert [r.event_type for r in rows] == ["app_open", "scan_started"]
        assert rows[0].event_data == {"screen": "home"}
        assert {r.device_id for r in rows} == {device.id}

    async def test_foreign_device(self, client, session_factory):
        owner = await make_user(session_factory, email="owner@aegis-mobile.com")
        other = await make_user(session_factory, email="other@aegis-mobile.com")
        device = await make_device(session_factory, owner)
        resp = await client.post(
            "/api/telemetry/batch",
            json={"deviceId": device.id, "events": [
                {"eventType": "x", "eventData": {}, "timestamp": "2025-06-01T08:00:00Z"}
            ]},
            headers=auth_headers(other),
        )
        assert resp.status_code == 404

    async def test_empty_batch_rejected(self, client, session_factory):
        user = await make_user(session_factory)
        resp = await client.post(
            "/api/telemetry/batch",
            json={"deviceId": "d", "events": []},
            headers=auth_headers(user),
        )
        assert resp.status_code == 400


@pytest.mark.asyncio
class TestBestEffortTelemetry:
    async def test_failed_write_keeps_callers_work(self, session_factory):
        user = await make_user(session_factory)
        async with session_factory() as s:
            s.add(Device(
                user_id=user.id,
                device_id="hw-kept",
                device_name="Phone",
                platform="android",
                os_version="14",
                app_version="1.0.0",
            ))
            record_event(s, user.id, "kept", {})
            # dangling device id violates the foreign key
            await record_event_best_effort(s, user.id, "dropped", {}, device_id="no-such-device")
            await s.commit()

        async with session_factory() as s:
            devices = (await s.execute(select(Device.device_id))).scalars().all()
            events = (await s.execute(select(TelemetryLog.event_type))).scalars().all()
        assert devices == ["hw-kept"]
        assert events == ["kept"]
