"""
MosaicMatch — TraitAggregator

Builds per-conversation trait records for the current user:

- source ids are processed in fixed-size batches; batches run strictly one
  after another, sources within a batch run concurrently;
- for each source the participant roster and the personality payload are
  fetched concurrently, each wrapped in exponential-backoff retry
  (1s initial wait, 2x multiplier, 3 attempts);
- the current user is located in the roster and their traits are pulled
  from the payload through an ordered chain of extractors, one per known
  payload shape;
- any single-source failure is logged and skipped.  Only a run in which no
  source yields traits raises :class:`NoTraitsExtracted`.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Optional

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from mosaic_match.config import Settings
from mosaic_match.schemas.traits import TraitRecord
from mosaic_match.services.errors import (
    MalformedPayloadError,
    NoTraitsExtracted,
    is_retryable_error,
)
from mosaic_match.utils.storage import RecordFetcher, people_path, personality_path

logger = structlog.get_logger("mosaic_match.trait_aggregator")

BATCH_SIZE = 5
MAX_ATTEMPTS = 3
BASE_DELAY_SECONDS = 1.0

# (payload, roster, me_index) -> traits or None
TraitExtractor = Callable[[dict, list[dict], int], Optional[list[str]]]


# ──────────────────────────────────────────────────────────────────────────────
# Payload-shape extractors
# ──────────────────────────────────────────────────────────────────────────────

def _essence_profile(entry: Any) -> Optional[list[str]]:
    if not isinstance(entry, dict):
        return None
    profile = entry.get("essence_profile")
    if isinstance(profile, str):
        return [profile] if profile.strip() else None
    if isinstance(profile, list) and profile:
        return [str(trait) for trait in profile if isinstance(trait, (str, int, float))]
    return None


def extract_by_username(payload: dict, roster: list[dict], me_index: int) -> Optional[list[str]]:
    """``{"<username>": {"essence_profile": [...]}}``"""
    username = roster[me_index].get("username")
    if not isinstance(username, str) or not username:
        return None
    return _essence_profile(payload.get(username))


def _extract_binary(first: str, second: str) -> TraitExtractor:
    def extract(payload: dict, roster: list[dict], me_index: int) -> Optional[list[str]]:
        if _essence_profile(payload.get(first)) is None:
            return None
        if _essence_profile(payload.get(second)) is None:
            return None
        return _essence_profile(payload[first if me_index == 0 else second])

    extract.__name__ = f"extract_by_{first.lower()}_{second.lower()}"
    extract.__doc__ = (
        f'``{{"{first}": {{...}}, "{second}": {{...}}}}`` keyed by roster position.'
    )
    return extract


extract_by_x_z = _extract_binary("X", "Z")
extract_by_user_pair = _extract_binary("user1", "user2")

TRAIT_EXTRACTORS: tuple[tuple[str, TraitExtractor], ...] = (
    ("username", extract_by_username),
    ("x_z", extract_by_x_z),
    ("user_pair", extract_by_user_pair),
)


def find_me_index(roster: Any) -> Optional[int]:
    """Index of the single roster entry that is the current user, else None."""
    if not isinstance(roster, list):
        return None
    matches = [
        index
        for index, user in enumerate(roster)
        if isinstance(user, dict)
        and (user.get("isMe") is True or user.get("username") == "me")
    ]
    if len(matches) != 1:
        return None
    return matches[0]


def clean_traits(traits: list[str]) -> list[str]:
    """Trim, drop empties, and de-duplicate while keeping first-seen order."""
    return list(dict.fromkeys(t.strip() for t in traits if t and t.strip()))


def merge_traits(records: list[TraitRecord]) -> list[str]:
    """Union of every record's traits, de-duplicated, first-seen order."""
    merged: dict[str, None] = {}
    for record in records:
        for trait in record.traits:
            merged.setdefault(trait, None)
    return list(merged)


def decode_payload(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedPayloadError("record is not UTF-8") from exc
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedPayloadError(f"record is not valid JSON: {exc}") from exc
    return raw


class TraitAggregator:
    """Concurrent, batched, retrying trait extraction across conversations."""

    def __init__(
        self,
        fetcher: RecordFetcher,
        *,
        batch_size: int = BATCH_SIZE,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay_seconds: float = BASE_DELAY_SECONDS,
        extractors: tuple[tuple[str, TraitExtractor], ...] = TRAIT_EXTRACTORS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._fetcher = fetcher
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self._extractors = extractors
        self._sleep = sleep
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        fetcher: RecordFetcher,
        settings: Settings,
        **kwargs,
    ) -> "TraitAggregator":
        return cls(
            fetcher,
            batch_size=settings.AGGREGATION_BATCH_SIZE,
            max_attempts=settings.AGGREGATION_MAX_ATTEMPTS,
            base_delay_seconds=settings.AGGREGATION_BASE_DELAY_MS / 1000.0,
            **kwargs,
        )

    # ── Public API ────────────────────────────────────────────────────────

    async def aggregate(self, source_ids: list[str]) -> list[TraitRecord]:
        """Extract one :class:`TraitRecord` per usable source.

        Runs are serialised: a second call waits for the first to finish.

        Raises
        ------
        NoTraitsExtracted
            If ``source_ids`` is empty or no source yielded traits.
        """
        async with self._lock:
            return await self._aggregate(source_ids)

    # ── Internals ─────────────────────────────────────────────────────────

    async def _aggregate(self, source_ids: list[str]) -> list[TraitRecord]:
        if not source_ids:
            raise NoTraitsExtracted("No conversations found. Upload chat data first.")

        start_time = time.monotonic()
        records: list[TraitRecord] = []
        skipped: list[str] = []

        for offset in range(0, len(source_ids), self.batch_size):
            batch = source_ids[offset:offset + self.batch_size]
            logger.debug(
                "aggregation_batch_start",
                batch_number=offset // self.batch_size + 1,
                batch_size=len(batch),
            )
            results = await asyncio.gather(
                *(self._process_source(source_id) for source_id in batch)
            )
            for source_id, record in zip(batch, results):
                if record is None:
                    skipped.append(source_id)
                else:
                    records.append(record)

        elapsed_ms = round((time.monotonic() - start_time) * 1000, 2)

        if not records:
            logger.error(
                "aggregation_no_traits",
                source_count=len(source_ids),
                elapsed_ms=elapsed_ms,
            )
            raise NoTraitsExtracted(
                "Could not extract any traits from the available conversations"
            )

        logger.info(
            "aggregation_complete",
            source_count=len(source_ids),
            record_count=len(records),
            skipped_count=len(skipped),
            unique_traits=len(merge_traits(records)),
            elapsed_ms=elapsed_ms,
        )
        return records

    async def _process_source(self, source_id: str) -> Optional[TraitRecord]:
        log = logger.bind(source=source_id[:8])
        try:
            roster_raw, payload_raw = await asyncio.gather(
                self._fetch_with_retry(people_path(source_id), source_id),
                self._fetch_with_retry(personality_path(source_id), source_id),
            )
            roster = decode_payload(roster_raw)
            payload = decode_payload(payload_raw)
        except Exception as exc:
            log.warning("source_skipped", reason="fetch_failed", error=str(exc))
            return None

        me_index = find_me_index(roster)
        if me_index is None:
            log.warning("source_skipped", reason="current_user_not_identified")
            return None

        if not isinstance(payload, dict) or not payload:
            log.warning("source_skipped", reason="no_personality_data")
            return None

        for shape, extractor in self._extractors:
            found = extractor(payload, roster, me_index)
            if found:
                traits = clean_traits(found)
                if not traits:
                    break
                log.debug("source_traits_extracted", shape=shape, trait_count=len(traits))
                return TraitRecord(source_id=source_id, traits=traits)

        log.warning("source_skipped", reason="no_matching_trait_shape")
        return None

    async def _fetch_with_retry(self, path: str, record_id: str) -> Any:
        """Fetch one record with exponential backoff on retryable errors."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay_seconds, exp_base=2),
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    logger.debug(
                        "record_fetch_retry",
                        path=path,
                        attempt_number=attempt_number,
                        max_attempts=self.max_attempts,
                    )
                return await self._fetcher.fetch(path, record_id)
