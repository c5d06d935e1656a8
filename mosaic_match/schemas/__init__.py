from mosaic_match.schemas.matching import (
    MatchActionResponse,
    MatchingStatus,
    MatchingStatusResponse,
    MatchPair,
    MatchServiceData,
    MatchServiceResponse,
    SimulatorStateRequest,
    UIMatchingStatus,
    UserAggregatedTraits,
)
from mosaic_match.schemas.traits import (
    EmbeddingResult,
    PipelineData,
    PipelineResult,
    SimilarUser,
    SimilarUsersResponse,
    TraitProcessRequest,
    TraitRecord,
)

__all__ = [
    "EmbeddingResult",
    "MatchActionResponse",
    "MatchingStatus",
    "MatchingStatusResponse",
    "MatchPair",
    "MatchServiceData",
    "MatchServiceResponse",
    "PipelineData",
    "PipelineResult",
    "SimilarUser",
    "SimilarUsersResponse",
    "SimulatorStateRequest",
    "TraitProcessRequest",
    "TraitRecord",
    "UIMatchingStatus",
    "UserAggregatedTraits",
]
