"""Tests for FCM payload building and send outcomes."""

import httpx
import pytest

from aegis.config import settings
from aegis.services.push import (
    FcmPushSender,
    PushMessage,
    build_fcm_payload,
    build_fcm_v1_url,
)


class TestFcmPayload:
    def test_android_is_high_priority(self):
        payload = build_fcm_payload(
            PushMessage(token="t", platform="fcm", data={"commandType": "ring"})
        )
        assert payload == {
            "message": {
                "token": "t",
                "data": {"commandType": "ring"},
                "android": {"priority": "high"},
            }
        }

    def test_ios_carries_aps_and_sound(self):
        payload = build_fcm_payload(
            PushMessage(token="t", platform="apns", data={}, sound="default")
        )
        aps = payload["message"]["apns"]["payload"]["aps"]
        assert aps == {"content-available": 1, "sound": "default"}
        assert "android" not in payload["message"]

    def test_v1_url(self):
        assert build_fcm_v1_url("aegis-prod") == (
            "https://fcm.googleapis.com/v1/projects/aegis-prod/messages:send"
        )


def _sender_with(handler):
    sender = FcmPushSender()

    async def fake_token():
        return "access", "aegis-prod"

    sender._access_token = fake_token
    sender._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return sender


@pytest.mark.asyncio
class TestFcmSend:
    async def test_delivered(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["authorization"]
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"name": "projects/aegis-prod/messages/1"})

        sender = _sender_with(handler)
        outcome = await sender.send(PushMessage(token="t", platform="fcm", data={}))
        await sender.cleanup()

        assert outcome.delivered
        assert seen["auth"] == "Bearer access"
        assert seen["url"].endswith("/projects/aegis-prod/messages:send")

    async def test_unregistered_token_is_dead(self):
        body = {
            "error": {
                "status": "NOT_FOUND",
                "details": [{"errorCode": "UNREGISTERED"}],
            }
        }
        sender = _sender_with(lambda r: httpx.Response(404, json=body))
        outcome = await sender.send(PushMessage(token="t", platform="fcm", data={}))

        assert not outcome.delivered
        assert outcome.invalid_token
        assert outcome.error == "UNREGISTERED"

    async def test_transient_error_keeps_token(self):
        body = {"error": {"status": "UNAVAILABLE"}}
        sender = _sender_with(lambda r: httpx.Response(503, json=body))
        outcome = await sender.send(PushMessage(token="t", platform="fcm", data={}))

        assert not outcome.delivered
        assert not outcome.invalid_token
        assert outcome.error == "UNAVAILABLE"

    async def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out")

        sender = _sender_with(handler)
        outcome = await sender.send(PushMessage(token="t", platform="fcm", data={}))
        assert not outcome.delivered
        assert not outcome.skipped

    async def test_unconfigured_is_skipped(self, monkeypatch):
        monkeypatch.setattr(settings, "FIREBASE_SERVICE_ACCOUNT_JSON", "")
        monkeypatch.setattr(settings, "FIREBASE_SERVICE_ACCOUNT_PATH", "")
        outcome = await FcmPushSender().send(PushMessage(token="t", platform="fcm", data={}))
        assert outcome.skipped
        assert not outcome.delivered

    async def test_malformed_service_account_json(self, monkeypatch):
        monkeypatch.setattr(settings, "FIREBASE_SERVICE_ACCOUNT_JSON", "{not json")
        outcome = await FcmPushSender().send(PushMessage(token="t", platform="fcm", data={}))
        assert outcome.skipped
        assert "not valid JSON" in outcome.error
