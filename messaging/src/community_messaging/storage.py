from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from urllib.parse import quote

import aiohttp

from .models import _now_ms

logger = logging.getLogger(__name__)

SIGNED_URL_TTL_S = 3600
EXPIRY_MARGIN_MS = 60_000


@dataclass(frozen=True)
class SignedUrl:
    url: str
    expires_at_ms: int

    def usable(self, now_ms: int, margin_ms: int = EXPIRY_MARGIN_MS) -> bool:
        return now_ms < self.expires_at_ms - margin_ms


class SignedUrlSigner:
    """Resolves attachment storage paths to time-limited signed URLs.

    Signed URLs are cached only while they stay valid; a cached URL is
    dropped once it is within ``EXPIRY_MARGIN_MS`` of its expiry.
    """

    def __init__(
        self,
        storage_url: str,
        *,
        bucket: str,
        api_key: str = "",
        access_token: str = "",
        ttl_s: int = SIGNED_URL_TTL_S,
        session: aiohttp.ClientSession | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.storage_url = storage_url.rstrip("/")
        self.bucket = bucket
        self.api_key = api_key
        self.access_token = access_token
        self.ttl_s = ttl_s
        self._session = session
        self._owns_session = session is None
        self._now = now_func
        self._cache: Dict[str, SignedUrl] = {}

    async def __call__(self, storage_path: str) -> Optional[str]:
        return await self.sign(storage_path)

    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.api_key:
            headers["apikey"] = self.api_key
        token = self.access_token or self.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def forget(self, storage_path: str) -> None:
        self._cache.pop(storage_path, None)

    async def sign(self, storage_path: str) -> Optional[str]:
        now_ms = self._now()
        cached = self._cache.get(storage_path)
        if cached is not None:
            if cached.usable(now_ms):
                return cached.url
            self._cache.pop(storage_path, None)

        url = f"{self.storage_url}/object/sign/{self.bucket}/{quote(storage_path.lstrip('/'))}"
        try:
            async with self._client().post(url, json={"expiresIn": self.ttl_s}, headers=self._headers()) as response:
                if response.status >= 400:
                    logger.warning("signing %s failed with status %s", storage_path, response.status)
                    return None
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, ValueError):
            logger.exception("signing %s failed", storage_path)
            return None

        signed = (payload.get("signedURL") or payload.get("signedUrl")) if isinstance(payload, dict) else None
        if not isinstance(signed, str) or not signed:
            logger.warning("signing %s returned no URL", storage_path)
            return None
        if not signed.startswith("http"):
            signed = f"{self.storage_url}/{signed.lstrip('/')}"
        self._cache[storage_path] = SignedUrl(url=signed, expires_at_ms=now_ms + self.ttl_s * 1000)
        return signed
