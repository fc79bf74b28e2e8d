"""In-app purchase receipt verification (App Store, Google Play).

Each path makes at most the vendor calls it needs, with a bounded timeout
and no retries. Any transport or parse failure is reported as an invalid
receipt rather than raised.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import google.auth.transport.requests
import httpx
from google.oauth2 import service_account

from aegis.config import settings

logger = logging.getLogger(__name__)

APPLE_PRODUCTION_URL = "https://buy.itunes.apple.com/verifyReceipt"
APPLE_SANDBOX_URL = "https://sandbox.itunes.apple.com/verifyReceipt"
APPLE_SANDBOX_RECEIPT_STATUS = 21007

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
ANDROID_PUBLISHER_URL = (
    "https://androidpublisher.googleapis.com/androidpublisher/v3/applications/"
    "{package}/purchases/subscriptions/{product}/tokens/{token}"
)
# paymentState: 0 pending, 1 received, 2 free trial, 3 deferred
_VALID_PAYMENT_STATES = {1, 2, 3}


@dataclass
class VerificationResult:
    valid: bool
    subscription_id: str = ""
    expiry_ms: Optional[int] = None


INVALID = VerificationResult(valid=False)


def latest_expiry_ms(receipts: list[dict]) -> Optional[int]:
    """Greatest ``expires_date_ms`` among App Store receipt entries."""
    expiries = [int(r.get("expires_date_ms") or 0) for r in receipts or []]
    best = max(expiries, default=0)
    return best or None


def _interpret_apple(data: dict) -> VerificationResult:
    """Raises ValueError, TypeError or AttributeError on malformed payloads."""
    return VerificationResult(
        valid=data.get("status") == 0,
        subscription_id=(data.get("receipt") or {}).get("original_transaction_id", ""),
        expiry_ms=latest_expiry_ms(data.get("latest_receipt_info") or []),
    )


def _interpret_google(data: dict, purchase_token: str) -> VerificationResult:
    expiry_ms = int(data.get("expiryTimeMillis") or 0)
    now_ms = int(time.time() * 1000)
    valid = (
        data.get("paymentState") in _VALID_PAYMENT_STATES
        and expiry_ms > now_ms
        and "cancelReason" not in data
    )
    return VerificationResult(
        valid=valid,
        subscription_id=purchase_token,
        expiry_ms=expiry_ms or None,
    )


class ReceiptVerifier:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport
        self._google_credentials: Optional[service_account.Credentials] = None
        self._lock = asyncio.Lock()

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    # ── App Store ─────────────────────────────────────────────────────

    async def verify_apple(self, receipt_data: str) -> VerificationResult:
        if not settings.APPLE_SHARED_SECRET:
            logger.warning("Apple shared secret not configured; rejecting receipt")
            return INVALID

        body = {"receipt-data": receipt_data, "password": settings.APPLE_SHARED_SECRET}
        try:
            async with self._client(settings.RECEIPT_TIMEOUT_SECONDS) as client:
                resp = await client.post(APPLE_PRODUCTION_URL, json=body)
                data = resp.json()
                if data.get("status") == APPLE_SANDBOX_RECEIPT_STATUS:
                    # Sandbox receipt sent to production
                    resp = await client.post(APPLE_SANDBOX_URL, json=body)
                    data = resp.json()
            result = _interpret_apple(data)
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Apple receipt verification failed: %s", e)
            return INVALID

        if not result.valid:
            logger.info("Apple rejected receipt with status %s", data.get("status"))
        return result

    # ── Google Play ───────────────────────────────────────────────────

    async def _google_token(self) -> str:
        async with self._lock:
            if self._google_credentials is None:
                info = json.loads(settings.GOOGLE_SERVICE_ACCOUNT_JSON)
                self._google_credentials = service_account.Credentials.from_service_account_info(
                    info, scopes=[ANDROID_PUBLISHER_SCOPE]
                )
            if not self._google_credentials.valid:
                request = google.auth.transport.requests.Request()
                await asyncio.to_thread(self._google_credentials.refresh, request)
            return self._google_credentials.token

    async def verify_google(self, receipt_data: str) -> VerificationResult:
        if not settings.GOOGLE_SERVICE_ACCOUNT_JSON or not settings.ANDROID_PACKAGE_NAME:
            logger.warning("Google Play credentials not configured; rejecting receipt")
            return INVALID

        try:
            receipt = json.loads(receipt_data)
            product_id = receipt["productId"]
            purchase_token = receipt["purchaseToken"]
            url = ANDROID_PUBLISHER_URL.format(
                package=quote(settings.ANDROID_PACKAGE_NAME, safe=""),
                product=quote(product_id, safe=""),
                token=quote(purchase_token, safe=""),
            )
        except (ValueError, KeyError, TypeError):
            logger.info("Malformed Google Play receipt")
            return INVALID

        try:
            access_token = await self._google_token()
            async with self._client(settings.RECEIPT_TIMEOUT_SECONDS) as client:
                resp = await client.get(url, headers={"Authorization": f"Bearer {access_token}"})
                resp.raise_for_status()
                data = resp.json()
        except Exception as e:
            logger.warning("Google Play verification failed: %s", e)
            return INVALID

        try:
            return _interpret_google(data, purchase_token)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("Unreadable Google Play purchase: %s", e)
            return INVALID

    async def verify(self, platform: str, receipt_data: str) -> VerificationResult:
        if platform == "ios":
            return await self.verify_apple(receipt_data)
        return await self.verify_google(receipt_data)


_verifier: Optional[ReceiptVerifier] = None


def get_receipt_verifier() -> ReceiptVerifier:
    """FastAPI dependency returning the process-wide receipt verifier."""
    global _verifier
    if _verifier is None:
        _verifier = ReceiptVerifier()
    return _verifier
