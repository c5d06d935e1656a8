from typing import Any, Optional

from pydantic import Field

from mosaic_match.schemas.matching import CamelModel


class TraitRecord(CamelModel):
    source_id: str
    traits: list[str]

    @property
    def source(self) -> str:
        """Short display label for the source conversation."""
        return self.source_id[:8]


class EmbeddingResult(CamelModel):
    embedding_dimension: int = Field(ge=0)
    acknowledged: bool = True
    traits_count: int = 0


class SimilarUser(CamelModel):
    user_id: str
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)
    vector: Optional[list[float]] = None


class SimilarUsersResponse(CamelModel):
    similar_users: list[SimilarUser]
    count: int


class TraitProcessRequest(CamelModel):
    source_ids: list[str] = Field(min_length=1)


class PipelineData(CamelModel):
    all_traits: list[TraitRecord] = Field(default_factory=list)
    combined_traits: list[str] = Field(default_factory=list)
    embedding_dimension: Optional[int] = None


class PipelineResult(CamelModel):
    success: bool
    step: Optional[str] = None
    error: Optional[str] = None
    data: Optional[PipelineData] = None
