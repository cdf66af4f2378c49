"""
Object storage client for attachment downloads.

Attachment bytes never pass through this service; the client only asks
the object store for a time-limited signed URL.
"""
from typing import Optional
from urllib.parse import quote

import httpx

from opscore.core.config import settings
from opscore.core.exceptions import DeliveryError
from opscore.core.logging import get_logger

logger = get_logger(__name__)


class StorageClient:
    def __init__(
        self,
        base_url: str = None,
        service_key: Optional[str] = None,
        timeout: float = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.STORAGE_URL).rstrip("/")
        self.service_key = service_key if service_key is not None else settings.STORAGE_SERVICE_KEY
        self.timeout = timeout if timeout is not None else settings.STORAGE_HTTP_TIMEOUT
        self._transport = transport

    def create_signed_url(self, bucket: str, path: str, expires_in: int = None) -> str:
        expires_in = expires_in or settings.SIGNED_URL_EXPIRY_SECONDS
        url = f"{self.base_url}/object/sign/{quote(bucket)}/{quote(path.lstrip('/'))}"
        headers = {}
        if self.service_key:
            headers["Authorization"] = f"Bearer {self.service_key}"
            headers["apikey"] = self.service_key

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(url, json={"expiresIn": expires_in}, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DeliveryError(
                f"Object store refused to sign {bucket}/{path}: {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Object store unavailable: {e}") from e

        data = response.json()
        signed = data.get("signedURL") or data.get("signedUrl")
        if not signed:
            raise DeliveryError("Object store response had no signed URL")
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}{signed if signed.startswith('/') else '/' + signed}"


def get_storage_client() -> StorageClient:
    return StorageClient()
