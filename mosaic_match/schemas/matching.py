from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Wire objects use camelCase keys; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _as_utc(v: Optional[datetime]) -> Optional[datetime]:
    # Timestamps without an offset are UTC on the wire.
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


class UIMatchingStatus(str, Enum):
    LOADING = "loading"
    NOT_ELIGIBLE = "not-eligible"
    ELIGIBLE = "eligible"
    PROCESSING = "processing"
    WAITING = "waiting"
    MATCHED = "matched"


class MatchingStatus(CamelModel):
    is_seeking_match: bool = False
    opt_in_timestamp: Optional[datetime] = None
    has_never_opted_in: Optional[bool] = None
    last_matched_cycle_id: Optional[str] = None
    current_match_partner_id: Optional[str] = None
    missed_cycles_count: int = 0
    last_opt_out_timestamp: Optional[datetime] = None

    @field_validator("opt_in_timestamp", "last_opt_out_timestamp")
    @classmethod
    def _assume_utc(cls, v):
        return _as_utc(v)


class MatchPair(CamelModel):
    user1_id: str = Field(alias="user1Id")
    user2_id: str = Field(alias="user2Id")
    score: float = Field(ge=0.0, le=1.0)
    cycle_id: str
    channel_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("channelId", "nakamaChannelId", "channel_id"),
        serialization_alias="channelId",
    )
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, v):
        return _as_utc(v)

    def partner_of(self, user_id: str) -> str:
        return self.user2_id if self.user1_id == user_id else self.user1_id


class UserAggregatedTraits(CamelModel):
    global_user_id: str
    traits: str
    last_updated: datetime
    source: Optional[str] = None

    @field_validator("traits", mode="before")
    @classmethod
    def _join_trait_list(cls, v):
        # Older backends send the merged traits as a list.
        if isinstance(v, (list, tuple)):
            return ", ".join(str(t).strip() for t in v if str(t).strip())
        return v

    @field_validator("last_updated")
    @classmethod
    def _assume_utc(cls, v):
        return _as_utc(v)


class MatchServiceData(CamelModel):
    matching_status: Optional[MatchingStatus] = None


class MatchServiceResponse(CamelModel):
    success: bool
    status: Literal["pending", "processing", "completed", "error"] = "pending"
    message: str = ""
    error_code: Optional[str] = None
    data: Optional[MatchServiceData] = None


class SimulatorStateRequest(CamelModel):
    state: Literal["new", "waiting", "matched"]
    time_in_state: Optional[float] = Field(default=None, ge=0)
    match_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class MatchingStatusResponse(CamelModel):
    status: UIMatchingStatus
    is_loading: bool
    is_eligible: bool
    is_processing: bool
    is_waiting: bool
    is_matched: bool
    wait_time_minutes: int
    wait_time_text: str
    match_score: Optional[float] = None
    matching_status: Optional[MatchingStatus] = None
    current_match: Optional[MatchPair] = None
    user_traits: Optional[UserAggregatedTraits] = None
    last_refresh_time: Optional[datetime] = None
    last_error: Optional[str] = None


class MatchActionResponse(CamelModel):
    success: bool
    status: UIMatchingStatus
    message: Optional[str] = None
