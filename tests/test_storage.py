"""Tests for the conversation record stores."""
from unittest.mock import MagicMock, patch

import httpx
import pytest

from mosaic_match.config import Settings
from mosaic_match.utils.storage import (
    GcsRecordFetcher,
    HttpRecordFetcher,
    build_record_fetcher,
    people_path,
    personality_path,
)


class TestRecordPaths:
    def test_paths(self):
        assert people_path("abc") == "chat/abc/people.json"
        assert personality_path("abc") == "chat/abc/personality-insights.json"


class TestHttpRecordFetcher:
    @pytest.mark.asyncio
    async def test_json_response_is_decoded(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            return httpx.Response(200, json=[{"username": "me"}])

        fetcher = HttpRecordFetcher(
            "https://records.test/",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        data = await fetcher.fetch("chat/abc/people.json", "abc")
        assert data == [{"username": "me"}]
        assert seen["url"].path == "/chat/abc/people.json"
        assert seen["url"].params["recordId"] == "abc"

    @pytest.mark.asyncio
    async def test_binary_response_returned_raw(self):
        fetcher = HttpRecordFetcher(
            "https://records.test",
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda r: httpx.Response(200, content=b"{}"))
            ),
        )
        assert await fetcher.fetch("chat/abc/people.json", "abc") == b"{}"

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        fetcher = HttpRecordFetcher(
            "https://records.test",
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda r: httpx.Response(503))
            ),
        )
        with pytest.raises(httpx.HTTPStatusError):
            await fetcher.fetch("chat/abc/people.json", "abc")


class TestGcsRecordFetcher:
    @pytest.mark.asyncio
    async def test_downloads_blob(self):
        bucket = MagicMock()
        bucket.blob.return_value.download_as_bytes.return_value = b'{"a": 1}'
        fetcher = GcsRecordFetcher(bucket=bucket)
        assert await fetcher.fetch("chat/abc/people.json", "abc") == b'{"a": 1}'
        bucket.blob.assert_called_once_with("chat/abc/people.json")

    @pytest.mark.asyncio
    async def test_download_is_bounded_by_timeout(self):
        bucket = MagicMock()
        bucket.blob.return_value.download_as_bytes.return_value = b"{}"
        fetcher = GcsRecordFetcher(bucket=bucket, timeout_seconds=2.5)
        await fetcher.fetch("chat/abc/people.json", "abc")
        bucket.blob.return_value.download_as_bytes.assert_called_once_with(timeout=2.5)

    def test_timeout_defaults_to_rpc_timeout(self):
        settings = Settings(_env_file=None, RPC_TIMEOUT_MS=1500)
        fetcher = GcsRecordFetcher(bucket=MagicMock(), settings=settings)
        assert fetcher.timeout_seconds == 1.5


class TestBuildRecordFetcher:
    def test_none_when_unconfigured(self):
        settings = Settings(_env_file=None, GCS_BUCKET_NAME="", RECORD_BASE_URL="")
        assert build_record_fetcher(settings) is None

    def test_http_store(self):
        settings = Settings(_env_file=None, GCS_BUCKET_NAME="", RECORD_BASE_URL="https://r.test")
        assert isinstance(build_record_fetcher(settings), HttpRecordFetcher)

    def test_gcs_wins(self):
        settings = Settings(
            _env_file=None, GCS_BUCKET_NAME="records", RECORD_BASE_URL="https://r.test"
        )
        with patch("mosaic_match.utils.storage.gcs_storage") as mock_gcs:
            fetcher = build_record_fetcher(settings)
        assert isinstance(fetcher, GcsRecordFetcher)
        mock_gcs.Client.return_value.bucket.assert_called_once_with("records")
