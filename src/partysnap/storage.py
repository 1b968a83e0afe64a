"""Object storage client used to sign private photo paths."""

from __future__ import annotations

from abc import ABC, abstractmethod
from urllib.parse import quote

import httpx

from partysnap.errors import StorageError


class BaseStorage(ABC):
    """Creates time-limited URLs for private objects."""

    @abstractmethod
    async def create_signed_url(self, path: str, expires_in: int) -> str:
        """Return a signed URL for ``path`` valid for ``expires_in`` seconds.

        Raises:
            StorageError: The storage backend refused or failed.
        """

    async def close(self) -> None:  # noqa: B027
        """Release client resources."""


class SupabaseStorage(BaseStorage):
    """Signs paths through the Supabase Storage REST API with the service key."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str = "photos",
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self._headers = {"Authorization": f"Bearer {service_key}", "apikey": service_key}
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def create_signed_url(self, path: str, expires_in: int) -> str:
        endpoint = f"{self.base_url}/storage/v1/object/sign/{self.bucket}/{quote(path)}"
        try:
            response = await self._client.post(endpoint, json={"expiresIn": expires_in}, headers=self._headers)
            response.raise_for_status()
            signed = response.json().get("signedURL")
        except (httpx.HTTPError, ValueError) as exc:
            msg = f"Failed to sign {path}: {exc}"
            raise StorageError(msg) from exc
        if not signed:
            msg = f"No signed URL returned for {path}"
            raise StorageError(msg)
        return f"{self.base_url}/storage/v1{signed}"

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
