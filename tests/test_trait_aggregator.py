"""Unit tests for TraitAggregator — batched, retrying trait extraction."""
import asyncio

import httpx
import pytest
from google.api_core import exceptions as google_exceptions

from mosaic_match.schemas.traits import TraitRecord
from mosaic_match.services.errors import MatchServiceError, NoTraitsExtracted
from mosaic_match.services.trait_aggregator import (
    TraitAggregator,
    clean_traits,
    extract_by_user_pair,
    extract_by_username,
    extract_by_x_z,
    find_me_index,
    merge_traits,
)

ME_FIRST = [{"username": "me", "isMe": True}, {"username": "alex"}]
ME_SECOND = [{"username": "sam"}, {"username": "jo", "isMe": True}]


def _aggregator(fetcher, sleep, **kwargs):
    return TraitAggregator(fetcher, sleep=sleep, **kwargs)


class TestExtractors:
    """Each known personality payload shape."""

    def test_by_username(self):
        payload = {"jo": {"essence_profile": ["calm", "witty"]}, "sam": {"essence_profile": ["loud"]}}
        assert extract_by_username(payload, ME_SECOND, 1) == ["calm", "witty"]

    def test_by_x_z_second_position(self):
        payload = {"X": {"essence_profile": ["a"]}, "Z": {"essence_profile": ["b", "c"]}}
        assert extract_by_x_z(payload, ME_SECOND, 1) == ["b", "c"]

    def test_by_user_pair_first_position(self):
        payload = {"user1": {"essence_profile": ["kind"]}, "user2": {"essence_profile": ["shy"]}}
        assert extract_by_user_pair(payload, ME_FIRST, 0) == ["kind"]

    def test_binary_shape_requires_both_keys(self):
        payload = {"X": {"essence_profile": ["a"]}}
        assert extract_by_x_z(payload, ME_FIRST, 0) is None

    def test_unknown_shape(self):
        payload = {"someone": {"essence_profile": ["a"]}}
        assert extract_by_username(payload, ME_FIRST, 0) is None


class TestFindMeIndex:
    def test_is_me_flag(self):
        assert find_me_index(ME_SECOND) == 1

    def test_username_me(self):
        assert find_me_index([{"username": "x"}, {"username": "me"}]) == 1

    def test_no_unique_match(self):
        assert find_me_index([{"username": "x"}, {"username": "y"}]) is None
        assert find_me_index([{"isMe": True}, {"username": "me"}]) is None
        assert find_me_index({"username": "me"}) is None


class TestMerge:
    def test_merge_is_deduplicated_union(self):
        records = [
            TraitRecord(source_id="aaaaaaaa-1", traits=["kind", "funny"]),
            TraitRecord(source_id="bbbbbbbb-2", traits=["kind", "curious"]),
        ]
        merged = merge_traits(records)
        assert set(merged) == {"kind", "funny", "curious"}
        assert len(merged) == 3

    def test_clean_traits_trims_and_dedups(self):
        assert clean_traits([" kind ", "", "kind", "  ", "witty"]) == ["kind", "witty"]


class TestAggregate:
    """End-to-end aggregation over the fake record store."""

    @pytest.mark.asyncio
    async def test_two_sources_merge(self, fetcher, recording_sleep):
        fetcher.add_source("conv-0001", ME_FIRST, {"me": {"essence_profile": ["kind", "funny"]}})
        fetcher.add_source(
            "conv-0002",
            ME_SECOND,
            {"user1": {"essence_profile": ["loud"]}, "user2": {"essence_profile": ["kind", "curious"]}},
        )
        records = await _aggregator(fetcher, recording_sleep).aggregate(["conv-0001", "conv-0002"])
        assert [r.source_id for r in records] == ["conv-0001", "conv-0002"]
        assert set(merge_traits(records)) == {"kind", "funny", "curious"}
        assert recording_sleep.calls == []

    @pytest.mark.asyncio
    async def test_retry_bound_and_backoff(self, fetcher, recording_sleep):
        """Three attempts on the failing path, waits of 1s then 2s."""
        fetcher.add_source("conv-0001", ME_FIRST, {"me": {"essence_profile": ["kind"]}})
        fetcher.add_source("conv-0002", ME_FIRST, {"me": {"essence_profile": ["calm"]}})
        payload_path = "chat/conv-0002/personality-insights.json"
        fetcher.fail(payload_path, *(MatchServiceError("unavailable", 503) for _ in range(5)))

        records = await _aggregator(fetcher, recording_sleep).aggregate(["conv-0001", "conv-0002"])

        assert [r.source_id for r in records] == ["conv-0001"]
        assert fetcher.calls.count(payload_path) == 3
        assert recording_sleep.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self, fetcher, recording_sleep):
        fetcher.add_source("conv-0001", ME_FIRST, {"me": {"essence_profile": ["kind"]}})
        fetcher.fail("chat/conv-0001/people.json", httpx.ConnectError("blip"))
        records = await _aggregator(fetcher, recording_sleep).aggregate(["conv-0001"])
        assert records[0].traits == ["kind"]
        assert recording_sleep.calls == [1.0]

    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(self, fetcher, recording_sleep):
        fetcher.add_source("conv-0001", ME_FIRST, {"me": {"essence_profile": ["kind"]}})
        # conv-0002 does not exist: the store answers 404
        records = await _aggregator(fetcher, recording_sleep).aggregate(["conv-0001", "conv-0002"])
        assert len(records) == 1
        assert fetcher.calls.count("chat/conv-0002/people.json") == 1
        assert recording_sleep.calls == []

    @pytest.mark.asyncio
    async def test_missing_blob_not_retried(self, fetcher, recording_sleep):
        """A Cloud Storage 404 fails the source on its first attempt."""
        for path in ("chat/conv-0001/people.json", "chat/conv-0001/personality-insights.json"):
            fetcher.fail(path, *(google_exceptions.NotFound("No such object") for _ in range(3)))

        with pytest.raises(NoTraitsExtracted):
            await _aggregator(fetcher, recording_sleep).aggregate(["conv-0001"])

        assert fetcher.calls.count("chat/conv-0001/people.json") == 1
        assert fetcher.calls.count("chat/conv-0001/personality-insights.json") == 1
        assert recording_sleep.calls == []

    @pytest.mark.asyncio
    async def test_malformed_json_is_skipped(self, fetcher, recording_sleep):
        fetcher.add_source("conv-0001", ME_FIRST, {"me": {"essence_profile": ["kind"]}})
        fetcher.records["chat/conv-0002/people.json"] = b"{not json"
        fetcher.records["chat/conv-0002/personality-insights.json"] = b"{}"
        records = await _aggregator(fetcher, recording_sleep).aggregate(["conv-0001", "conv-0002"])
        assert [r.source_id for r in records] == ["conv-0001"]

    @pytest.mark.asyncio
    async def test_unidentified_user_is_skipped(self, fetcher, recording_sleep):
        fetcher.add_source(
            "conv-0001",
            [{"username": "a"}, {"username": "b"}],
            {"a": {"essence_profile": ["x"]}},
        )
        with pytest.raises(NoTraitsExtracted):
            await _aggregator(fetcher, recording_sleep).aggregate(["conv-0001"])

    @pytest.mark.asyncio
    async def test_all_sources_failing_raises(self, fetcher, recording_sleep):
        """No usable source at all is the only aggregation-level failure."""
        with pytest.raises(NoTraitsExtracted):
            await _aggregator(fetcher, recording_sleep).aggregate(["missing-1", "missing-2"])

    @pytest.mark.asyncio
    async def test_empty_input_raises(self, fetcher, recording_sleep):
        with pytest.raises(NoTraitsExtracted):
            await _aggregator(fetcher, recording_sleep).aggregate([])

    @pytest.mark.asyncio
    async def test_batches_run_sequentially(self, recording_sleep):
        """No more than ``batch_size`` sources are in flight at once."""
        in_flight = 0
        peak = 0

        class SlowFetcher:
            async def fetch(self, path, record_id):
                nonlocal in_flight, peak
                if path.endswith("people.json"):
                    in_flight += 1
                    peak = max(peak, in_flight)
                    await asyncio.sleep(0)
                    await asyncio.sleep(0)
                    in_flight -= 1
                    return ME_FIRST
                return {"me": {"essence_profile": [record_id]}}

        aggregator = TraitAggregator(SlowFetcher(), batch_size=2, sleep=recording_sleep)
        ids = [f"conv-{i:04d}" for i in range(5)]
        records = await aggregator.aggregate(ids)
        assert [r.source_id for r in records] == ids
        assert peak == 2
