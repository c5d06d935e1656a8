"""
MosaicMatch — EmbeddingSubmitter

Sends the merged trait set to the embedding API in a single call and returns
an :class:`EmbeddingResult` (dimension + acknowledgement).  The raw vector is
never exposed.

Submission is not retried here: without backend de-duplication a blind
retry could store the same trait set twice, so retrying is the caller's
decision.  Every failure surfaces as :class:`EmbeddingSubmissionError`.
"""

from __future__ import annotations

import time

import structlog

from mosaic_match.schemas.traits import EmbeddingResult, SimilarUser, SimilarUsersResponse
from mosaic_match.services.backend_client import MatchBackendClient
from mosaic_match.services.errors import (
    EmbeddingSubmissionError,
    MalformedPayloadError,
    classify_error,
)

logger = structlog.get_logger("mosaic_match.embedding_submitter")


class EmbeddingSubmitter:
    def __init__(self, client: MatchBackendClient) -> None:
        self._client = client

    async def submit(self, user_id: str, traits: list[str]) -> EmbeddingResult:
        if not user_id:
            raise EmbeddingSubmissionError("User ID not available")
        if not traits:
            raise EmbeddingSubmissionError("No traits to submit")

        start_time = time.monotonic()
        try:
            data = await self._client.generate_match_embeddings(user_id, traits)
        except Exception as exc:
            classification = classify_error(exc)
            logger.error(
                "embedding_submission_failed",
                user_id=user_id,
                traits_count=len(traits),
                status_code=classification.status_code,
                error=str(exc),
            )
            raise EmbeddingSubmissionError(
                f"Failed to process embeddings: {classification.user_message}"
            ) from exc

        if data.get("success") is False:
            logger.error(
                "embedding_submission_rejected",
                user_id=user_id,
                error=data.get("error"),
            )
            raise EmbeddingSubmissionError("Failed to process embeddings")

        dimension = data.get("embeddingDimension")
        if not isinstance(dimension, int) or isinstance(dimension, bool) or dimension <= 0:
            raise EmbeddingSubmissionError(
                "Embedding service did not confirm the stored embedding"
            )

        logger.info(
            "embedding_submitted",
            user_id=user_id,
            traits_count=len(traits),
            embedding_dimension=dimension,
            elapsed_ms=round((time.monotonic() - start_time) * 1000, 2),
        )
        return EmbeddingResult(
            embedding_dimension=dimension,
            acknowledged=True,
            traits_count=data.get("traitsCount") or len(traits),
        )

    async def find_similar(
        self,
        user_id: str,
        top_k: int = 5,
        include_vectors: bool = False,
    ) -> list[SimilarUser]:
        """Return the ``top_k`` users closest to ``user_id``'s embedding."""
        data = await self._client.find_similar_users(user_id, top_k, include_vectors)
        if not isinstance(data.get("similarUsers"), list):
            raise MalformedPayloadError("Invalid response format from similar users API")

        response = SimilarUsersResponse.model_validate(
            {
                "similarUsers": data["similarUsers"],
                "count": data.get("count", len(data["similarUsers"])),
            }
        )
        logger.info("similar_users_found", user_id=user_id, count=response.count)
        return response.similar_users
