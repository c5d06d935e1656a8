import asyncio
from typing import Any, Optional, Protocol

import httpx
from google.cloud import storage as gcs_storage

from mosaic_match.config import Settings, get_settings


def people_path(record_id: str) -> str:
    return f"chat/{record_id}/people.json"


def personality_path(record_id: str) -> str:
    return f"chat/{record_id}/personality-insights.json"


class RecordFetcher(Protocol):
    async def fetch(self, path: str, record_id: str) -> Any:
        """Return the object at ``path`` as decoded JSON, text or raw bytes."""
        ...


def get_storage_client(settings: Optional[Settings] = None):
    settings = settings or get_settings()
    return gcs_storage.Client(project=settings.GCP_PROJECT_ID or None)


def get_bucket(settings: Optional[Settings] = None):
    settings = settings or get_settings()
    client = get_storage_client(settings)
    return client.bucket(settings.GCS_BUCKET_NAME)


class GcsRecordFetcher:
    """Reads conversation records from Google Cloud Storage.

    The GCS SDK is blocking, so each download runs in a worker thread and is
    bounded by the same per-call timeout as backend RPCs.
    """

    def __init__(
        self,
        bucket=None,
        settings: Optional[Settings] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        settings = settings or get_settings()
        self._bucket = bucket if bucket is not None else get_bucket(settings)
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else settings.rpc_timeout_seconds
        )

    async def fetch(self, path: str, record_id: str) -> bytes:
        blob = self._bucket.blob(path)
        return await asyncio.to_thread(
            blob.download_as_bytes, timeout=self.timeout_seconds
        )


class HttpRecordFetcher:
    """Reads conversation records from an HTTP object cache."""

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def fetch(self, path: str, record_id: str) -> Any:
        response = await self._http.get(
            f"{self.base_url}/{path}", params={"recordId": record_id}
        )
        response.raise_for_status()
        if "json" in response.headers.get("content-type", ""):
            return response.json()
        return response.content

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


def build_record_fetcher(settings: Optional[Settings] = None) -> Optional[RecordFetcher]:
    """Pick the record store from configuration (GCS wins over HTTP)."""
    settings = settings or get_settings()
    if settings.GCS_BUCKET_NAME:
        return GcsRecordFetcher(settings=settings)
    if settings.RECORD_BASE_URL:
        return HttpRecordFetcher(
            settings.RECORD_BASE_URL, timeout_seconds=settings.rpc_timeout_seconds
        )
    return None
