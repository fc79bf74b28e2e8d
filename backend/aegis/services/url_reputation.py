"""URL classification with the Google Safe Browsing v4 Lookup API.

Classification fails open: a missing key, timeout or vendor error yields
``{"isSafe": True}`` so browsing protection never blocks the user on an
outage.
"""

import logging
from typing import Any, Optional

import httpx

from aegis.config import settings

logger = logging.getLogger(__name__)

SAFE_BROWSING_URL = "https://safebrowsing.googleapis.com/v4/threatMatches:find"

THREAT_TYPES = [
    "MALWARE",
    "SOCIAL_ENGINEERING",
    "UNWANTED_SOFTWARE",
    "POTENTIALLY_HARMFUL_APPLICATION",
]

SAFE = {"isSafe": True}


def build_lookup_body(url: str) -> dict[str, Any]:
    return {
        "client": {"clientId": "aegis-mobile", "clientVersion": settings.APP_VERSION},
        "threatInfo": {
            "threatTypes": THREAT_TYPES,
            "platformTypes": ["ANY_PLATFORM"],
            "threatEntryTypes": ["URL"],
            "threatEntries": [{"url": url}],
        },
    }


class SafeBrowsingClient:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    async def classify(self, url: str) -> dict[str, Any]:
        if not settings.SAFE_BROWSING_API_KEY:
            logger.warning("Safe Browsing key not configured; treating URL as safe")
            return dict(SAFE)

        try:
            async with httpx.AsyncClient(
                timeout=settings.SAFE_BROWSING_TIMEOUT_SECONDS,
                transport=self._transport,
            ) as client:
                resp = await client.post(
                    SAFE_BROWSING_URL,
                    params={"key": settings.SAFE_BROWSING_API_KEY},
                    json=build_lookup_body(url),
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Safe Browsing lookup failed, failing open: %s", e)
            return dict(SAFE)

        matches = data.get("matches") or []
        if not matches:
            return dict(SAFE)

        threat_type = matches[0].get("threatType", "UNKNOWN")
        return {
            "isSafe": False,
            "category": threat_type,
            "reason": f"This URL is flagged as {threat_type}",
        }


_client: Optional[SafeBrowsingClient] = None


def get_url_classifier() -> SafeBrowsingClient:
    global _client
    if _client is None:
        _client = SafeBrowsingClient()
    return _client
