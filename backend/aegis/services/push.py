"""Push delivery through Firebase Cloud Messaging (HTTP v1 API).

Both Android (FCM) and iOS (APNs via FCM) tokens go through the same
``messages:send`` endpoint. Service-account credentials are read from
``AEGIS_FIREBASE_SERVICE_ACCOUNT_JSON`` or ``AEGIS_FIREBASE_SERVICE_ACCOUNT_PATH``;
when neither is set every send is skipped and logged.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

import google.auth.transport.requests
import httpx
from google.oauth2 import service_account

from aegis.config import settings

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/firebase.messaging"]

# FCM error codes meaning the registration token will never work again
_DEAD_TOKEN_CODES = {"UNREGISTERED", "INVALID_ARGUMENT"}


class PushNotConfigured(Exception):
    pass


@dataclass
class PushMessage:
    token: str
    platform: str  # apns | fcm
    data: dict[str, str]
    sound: Optional[str] = None


@dataclass
class PushOutcome:
    delivered: bool
    invalid_token: bool = False
    skipped: bool = False
    error: str = ""


def build_fcm_v1_url(project_id: str) -> str:
    return f"https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"


def _service_account_info() -> dict:
    if settings.FIREBASE_SERVICE_ACCOUNT_JSON:
        try:
            return json.loads(settings.FIREBASE_SERVICE_ACCOUNT_JSON)
        except json.JSONDecodeError as e:
            raise PushNotConfigured(
                f"FIREBASE_SERVICE_ACCOUNT_JSON is not valid JSON: {e}"
            ) from e

    path = settings.FIREBASE_SERVICE_ACCOUNT_PATH
    if path:
        if not os.path.exists(path):
            raise PushNotConfigured(f"Service account file not found: {path}")
        with open(path, "r") as f:
            return json.load(f)

    raise PushNotConfigured("Firebase credentials not configured")


def build_fcm_payload(message: PushMessage) -> dict[str, Any]:
    body: dict[str, Any] = {"token": message.token, "data": message.data}
    if message.platform == "apns":
        aps: dict[str, Any] = {"content-available": 1}
        if message.sound:
            aps["sound"] = message.sound
        body["apns"] = {"payload": {"aps": aps}}
    else:
        body["android"] = {"priority": "high"}
    return {"message": body}


class FcmPushSender:
    """Sends data messages with a cached OAuth2 service-account token."""

    def __init__(self):
        self._credentials: Optional[service_account.Credentials] = None
        self._project_id: Optional[str] = None
        self._lock = asyncio.Lock()
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=settings.PUSH_TIMEOUT_SECONDS)
        return self._client

    async def cleanup(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _access_token(self) -> tuple[str, str]:
        async with self._lock:
            if self._credentials is None:
                info = _service_account_info()
                project_id = info.get("project_id", "").strip()
                if not project_id:
                    raise PushNotConfigured("Service account JSON has no project_id")
                self._credentials = service_account.Credentials.from_service_account_info(
                    info, scopes=SCOPES
                )
                self._project_id = project_id
            if not self._credentials.valid:
                request = google.auth.transport.requests.Request()
                await asyncio.to_thread(self._credentials.refresh, request)
            return self._credentials.token, self._project_id

    async def send(self, message: PushMessage) -> PushOutcome:
        try:
            access_token, project_id = await self._access_token()
        except PushNotConfigured as e:
            logger.warning("Push not configured; skipping send: %s", e)
            return PushOutcome(delivered=False, skipped=True, error=str(e))
        except Exception as e:
            logger.warning("Failed to obtain FCM access token: %s", e)
            return PushOutcome(delivered=False, skipped=True, error=str(e))

        try:
            resp = await self._get_client().post(
                build_fcm_v1_url(project_id),
                json=build_fcm_payload(message),
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            logger.warning("FCM request failed: %s", e)
            return PushOutcome(delivered=False, error=str(e))

        if resp.status_code == 200:
            return PushOutcome(delivered=True)

        code = _fcm_error_code(resp)
        logger.warning("FCM rejected message: status=%s code=%s", resp.status_code, code)
        return PushOutcome(
            delivered=False,
            invalid_token=resp.status_code == 404 or code in _DEAD_TOKEN_CODES,
            error=code or f"HTTP {resp.status_code}",
        )


def _fcm_error_code(resp: httpx.Response) -> str:
    try:
        error = resp.json().get("error", {})
    except ValueError:
        return ""
    for detail in error.get("details", []):
        if detail.get("errorCode"):
            return detail["errorCode"]
    return error.get("status", "")


_sender: Optional[FcmPushSender] = None


def get_push_sender() -> FcmPushSender:
    """FastAPI dependency returning the process-wide push sender."""
    global _sender
    if _sender is None:
        _sender = FcmPushSender()
    return _sender


async def close_push_sender() -> None:
    global _sender
    if _sender is not None:
        await _sender.cleanup()
        _sender = None
