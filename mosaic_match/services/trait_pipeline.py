"""
MosaicMatch — Trait aggregation & submission pipeline

Runs the two steps that make a user eligible for matching:

  Step 1, "Fetching user traits": aggregate per-conversation trait records
          and merge them into one de-duplicated set.
  Step 2, "Processing embeddings": submit the merged set for embedding.

The pipeline never lets an exception cross its boundary: the outcome is a
:class:`PipelineResult` naming the failed step and a sanitized message.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from mosaic_match.schemas.traits import PipelineData, PipelineResult, SimilarUser, TraitRecord
from mosaic_match.services.embedding_submitter import EmbeddingSubmitter
from mosaic_match.services.errors import (
    EmbeddingSubmissionError,
    IdentityUnavailableError,
    NoTraitsExtracted,
    PipelineStepError,
    classify_error,
)
from mosaic_match.services.identity import IdentityProvider, resolve_session
from mosaic_match.services.trait_aggregator import TraitAggregator, merge_traits

logger = structlog.get_logger("mosaic_match.trait_pipeline")

STEP_FETCH_TRAITS = "Fetching user traits"
STEP_EMBEDDINGS = "Processing embeddings"


@dataclass
class PipelineCallbacks:
    on_step_change: Optional[Callable[[str], None]] = None
    on_traits_extracted: Optional[Callable[[list[TraitRecord], list[str]], None]] = None
    on_embedding_submitted: Optional[Callable[[int], None]] = None
    on_error: Optional[Callable[[str, str], None]] = None


def _notify(callback: Optional[Callable], *args) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("pipeline_callback_failed", callback=getattr(callback, "__name__", "?"))


class TraitPipeline:
    def __init__(
        self,
        aggregator: TraitAggregator,
        submitter: EmbeddingSubmitter,
        identity: IdentityProvider,
    ) -> None:
        self._aggregator = aggregator
        self._submitter = submitter
        self._identity = identity
        self._lock = asyncio.Lock()

    async def run(
        self,
        source_ids: list[str],
        callbacks: Optional[PipelineCallbacks] = None,
    ) -> PipelineResult:
        """Aggregate, merge and submit; runs are queued one at a time."""
        callbacks = callbacks or PipelineCallbacks()
        async with self._lock:
            try:
                return await self._run(source_ids, callbacks)
            except PipelineStepError as exc:
                _notify(callbacks.on_error, exc.step, str(exc))
                return PipelineResult(success=False, step=exc.step, error=str(exc))

    async def _run(
        self,
        source_ids: list[str],
        callbacks: PipelineCallbacks,
    ) -> PipelineResult:
        log = logger.bind(source_count=len(source_ids))
        log.info("pipeline_start")

        # ── Step 1: aggregate + merge ─────────────────────────────────────
        _notify(callbacks.on_step_change, STEP_FETCH_TRAITS)
        session = resolve_session(self._identity)
        if session is None:
            raise PipelineStepError(
                STEP_FETCH_TRAITS,
                classify_error(IdentityUnavailableError()).user_message,
            )

        try:
            records = await self._aggregator.aggregate(source_ids)
        except NoTraitsExtracted as exc:
            log.warning("pipeline_no_traits", error=str(exc))
            raise PipelineStepError(STEP_FETCH_TRAITS, str(exc)) from exc
        except Exception as exc:
            log.error("pipeline_aggregation_failed", error=str(exc))
            raise PipelineStepError(
                STEP_FETCH_TRAITS, classify_error(exc).user_message
            ) from exc

        combined = merge_traits(records)
        if not combined:
            raise PipelineStepError(
                STEP_FETCH_TRAITS, "No traits extracted. Cannot continue the process."
            )
        _notify(callbacks.on_traits_extracted, records, combined)

        # ── Step 2: submit for embedding ──────────────────────────────────
        _notify(callbacks.on_step_change, STEP_EMBEDDINGS)
        try:
            result = await self._submitter.submit(session.user_id, combined)
        except EmbeddingSubmissionError as exc:
            raise PipelineStepError(STEP_EMBEDDINGS, str(exc)) from exc
        _notify(callbacks.on_embedding_submitted, result.embedding_dimension)

        log.info(
            "pipeline_complete",
            record_count=len(records),
            combined_count=len(combined),
            embedding_dimension=result.embedding_dimension,
        )
        return PipelineResult(
            success=True,
            data=PipelineData(
                all_traits=records,
                combined_traits=combined,
                embedding_dimension=result.embedding_dimension,
            ),
        )

    async def find_similar_users(
        self,
        top_k: int = 5,
        include_vectors: bool = False,
    ) -> list[SimilarUser]:
        session = resolve_session(self._identity)
        if session is None:
            raise IdentityUnavailableError("User ID not available")
        return await self._submitter.find_similar(session.user_id, top_k, include_vectors)
