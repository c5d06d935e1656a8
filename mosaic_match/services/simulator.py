"""
MosaicMatch — JourneySimulator

Deterministic, time-aware stand-in for the matching backend.  It implements
every :class:`RemoteStatusGateway` operation and adds test/dev controls:

- artificial latency sampled uniformly from ``[min_delay_ms, max_delay_ms]``;
- random error injection (network / client / server categories) with an
  overall probability, plus a one-shot ``inject_error_on_next`` hook;
- ``force_state`` which back-dates the journey timestamps so any point of the
  lifecycle can be exercised without waiting in real time;
- journey simulation: a ``waiting`` journey reports a fresh opt-in timestamp
  for the first ``processing_duration_s`` seconds, then flips to ``matched``
  once the configured waiting duration has elapsed, computed when status is
  read.

All journey state is owned by the simulator instance; ``reset()`` restores
the initial values between test cases.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx
import structlog

from mosaic_match.config import Settings
from mosaic_match.schemas.matching import (
    MatchingStatus,
    MatchPair,
    MatchServiceData,
    MatchServiceResponse,
    UserAggregatedTraits,
)
from mosaic_match.services.errors import MatchServiceError
from mosaic_match.services.gateway import RemoteStatusGateway
from mosaic_match.services.identity import IdentityProvider, resolve_session, utcnow

logger = structlog.get_logger("mosaic_match.simulator")

DEFAULT_USER_ID = "current-user-id"
PARTNER_USER_ID = "sim-partner-user-id"
SIM_CYCLE_ID = "sim-cycle-0001"
SIM_CHANNEL_ID = "sim-channel-123"
DEFAULT_MATCH_SCORE = 0.89
SIM_TRAITS = (
    "Empathetic, detail-oriented, logical, open-minded, cautious, enjoys deep "
    "conversations, shows interest in others' perspectives, shares personal "
    "experiences, prefers clarity in communication, responds promptly."
)


class MockUserState(str, Enum):
    NEW = "new"
    WAITING = "waiting"
    MATCHED = "matched"


@dataclass
class JourneyState:
    current_state: MockUserState
    entered_state_at: datetime
    processing_started_at: Optional[datetime] = None
    waiting_started_at: Optional[datetime] = None
    matched_at: Optional[datetime] = None


@dataclass
class SimulatorConfig:
    simulate_network_delay: bool = True
    min_delay_ms: int = 200
    max_delay_ms: int = 800
    inject_random_errors: bool = False
    error_probability: float = 0.1
    simulate_network_errors: bool = True
    simulate_client_errors: bool = True
    simulate_server_errors: bool = True
    simulate_user_journey: bool = False
    processing_duration_s: float = 10.0
    waiting_duration_s: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SimulatorConfig":
        return cls(
            simulate_network_delay=settings.SIMULATOR_SIMULATE_NETWORK_DELAY,
            min_delay_ms=settings.SIMULATOR_MIN_DELAY_MS,
            max_delay_ms=settings.SIMULATOR_MAX_DELAY_MS,
            inject_random_errors=settings.SIMULATOR_INJECT_RANDOM_ERRORS,
            error_probability=settings.SIMULATOR_ERROR_PROBABILITY,
            simulate_network_errors=settings.SIMULATOR_NETWORK_ERRORS,
            simulate_client_errors=settings.SIMULATOR_CLIENT_ERRORS,
            simulate_server_errors=settings.SIMULATOR_SERVER_ERRORS,
            simulate_user_journey=settings.SIMULATOR_SIMULATE_USER_JOURNEY,
            processing_duration_s=settings.SIMULATOR_PROCESSING_DURATION_S,
            waiting_duration_s=settings.SIMULATOR_WAITING_DURATION_S,
        )


class JourneySimulator(RemoteStatusGateway):
    """Fake matching backend driven by an in-memory journey."""

    def __init__(
        self,
        config: Optional[SimulatorConfig] = None,
        *,
        identity: Optional[IdentityProvider] = None,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or SimulatorConfig()
        self._identity = identity
        self._clock = clock
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._eligible = True
        self._match_score = DEFAULT_MATCH_SCORE
        self._next_error: Optional[BaseException] = None
        self._journey = JourneyState(
            current_state=MockUserState.NEW, entered_state_at=clock()
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        identity: Optional[IdentityProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "JourneySimulator":
        return cls(
            SimulatorConfig.from_settings(settings), identity=identity, clock=clock
        )

    # ── Test / dev controls ───────────────────────────────────────────────

    @property
    def journey(self) -> JourneyState:
        return replace(self._journey)

    def configure(self, **overrides) -> None:
        self.config = replace(self.config, **overrides)
        logger.info("simulator_configured", **overrides)

    def reset(self) -> None:
        """Restore the initial journey and clear injected errors."""
        self._journey = JourneyState(
            current_state=MockUserState.NEW, entered_state_at=self._clock()
        )
        self._match_score = DEFAULT_MATCH_SCORE
        self._next_error = None
        self._eligible = True

    def set_eligible(self, eligible: bool) -> None:
        self._eligible = eligible

    def set_user_state(self, state: MockUserState | str) -> None:
        """Jump to ``state`` as if it had just been entered."""
        self.force_state(state)

    def inject_error_on_next(self, error: BaseException) -> None:
        self._next_error = error

    def force_state(
        self,
        state: MockUserState | str,
        *,
        time_in_state: Optional[float] = None,
        match_score: Optional[float] = None,
    ) -> None:
        """Force the journey into ``state``, back-dated by ``time_in_state``
        seconds.  ``match_score`` sets the score reported once matched."""
        state = MockUserState(state)
        entered = self._clock() - timedelta(seconds=time_in_state or 0)
        journey = JourneyState(current_state=state, entered_state_at=entered)

        if state is MockUserState.WAITING:
            journey.processing_started_at = entered - timedelta(seconds=5)
            journey.waiting_started_at = entered
        elif state is MockUserState.MATCHED:
            journey.processing_started_at = entered - timedelta(seconds=60)
            journey.waiting_started_at = entered - timedelta(seconds=55)
            journey.matched_at = entered

        if match_score is not None:
            self._match_score = match_score
        self._journey = journey
        logger.debug("simulator_state_forced", state=state.value, entered_at=entered)

    # ── Internals ─────────────────────────────────────────────────────────

    def _user_id(self) -> Optional[str]:
        if self._identity is None:
            return DEFAULT_USER_ID
        session = resolve_session(self._identity, self._clock())
        return session.user_id if session else None

    async def _simulate_delay(self) -> None:
        if not self.config.simulate_network_delay:
            return
        low = min(self.config.min_delay_ms, self.config.max_delay_ms)
        high = max(self.config.min_delay_ms, self.config.max_delay_ms)
        await self._sleep(self._rng.uniform(low, high) / 1000.0)

    def _maybe_inject_error(self) -> None:
        if self._next_error is not None:
            error, self._next_error = self._next_error, None
            raise error

        if not self.config.inject_random_errors:
            return
        if self._rng.random() >= self.config.error_probability:
            return

        categories = []
        if self.config.simulate_network_errors:
            categories.append("network")
        if self.config.simulate_client_errors:
            categories.append("client")
        if self.config.simulate_server_errors:
            categories.append("server")
        if not categories:
            return

        category = self._rng.choice(categories)
        logger.debug("simulator_error_injected", category=category)
        if category == "network":
            raise httpx.ConnectError("Network error: Failed to fetch")
        if category == "client":
            raise MatchServiceError("Client error: Bad request", 400)
        raise MatchServiceError("Server error: Internal server error", 500)

    async def _before_call(self) -> None:
        await self._simulate_delay()
        self._maybe_inject_error()

    async def _read_journey(self) -> tuple[JourneyState, datetime]:
        """Advance and copy the journey as of call time, then pay latency.

        Reads issued together observe the same journey even when the clock
        moves while their simulated delays are in flight.
        """
        now = self._clock()
        self._advance_journey(now)
        journey = replace(self._journey)
        await self._before_call()
        return journey, now

    def _advance_journey(self, now: datetime) -> None:
        if not self.config.simulate_user_journey:
            return
        journey = self._journey
        if journey.current_state is not MockUserState.WAITING:
            return
        if journey.waiting_started_at is None:
            return
        waited = (now - journey.waiting_started_at).total_seconds()
        if waited >= self.config.waiting_duration_s:
            journey.current_state = MockUserState.MATCHED
            journey.entered_state_at = now
            journey.matched_at = now
            logger.info("simulator_journey_matched", waited_s=round(waited, 1))

    def _status_for_state(self, journey: JourneyState, now: datetime) -> MatchingStatus:
        if journey.current_state is MockUserState.WAITING:
            if self._still_processing(journey, now):
                # Re-stamped on every read while the profile is being processed.
                return MatchingStatus(
                    is_seeking_match=True,
                    opt_in_timestamp=now,
                    missed_cycles_count=0,
                )
            return MatchingStatus(
                is_seeking_match=True,
                opt_in_timestamp=journey.processing_started_at
                or now - timedelta(hours=1),
                missed_cycles_count=0,
            )
        if journey.current_state is MockUserState.MATCHED:
            return MatchingStatus(
                is_seeking_match=False,
                opt_in_timestamp=journey.processing_started_at
                or now - timedelta(days=1),
                last_matched_cycle_id=SIM_CYCLE_ID,
                current_match_partner_id=PARTNER_USER_ID,
                missed_cycles_count=0,
            )
        return MatchingStatus(
            is_seeking_match=False,
            has_never_opted_in=True,
            missed_cycles_count=0,
        )

    def _still_processing(self, journey: JourneyState, now: datetime) -> bool:
        if not self.config.simulate_user_journey:
            return False
        if journey.processing_started_at is None:
            return False
        elapsed = (now - journey.processing_started_at).total_seconds()
        return elapsed < self.config.processing_duration_s

    # ── RemoteStatusGateway ───────────────────────────────────────────────

    async def can_participate(self) -> bool:
        if self._user_id() is None:
            logger.warning("eligibility_no_identity")
            return False
        return self._eligible

    async def get_status(self) -> Optional[MatchingStatus]:
        if self._user_id() is None:
            return None
        journey, now = await self._read_journey()
        return self._status_for_state(journey, now)

    async def opt_in(self) -> Optional[MatchServiceResponse]:
        if self._user_id() is None:
            return None
        await self._before_call()

        now = self._clock()
        self._journey = JourneyState(
            current_state=MockUserState.WAITING,
            entered_state_at=now,
            processing_started_at=now,
            waiting_started_at=now,
        )
        return MatchServiceResponse(
            success=True,
            status="pending",
            message=(
                "Successfully opted in to matching. "
                "Your profile is being processed."
            ),
            data=MatchServiceData(
                matching_status=MatchingStatus(
                    is_seeking_match=True,
                    opt_in_timestamp=now,
                    missed_cycles_count=0,
                )
            ),
        )

    async def opt_out(self) -> bool:
        if self._user_id() is None:
            return False
        await self._before_call()
        self._journey = JourneyState(
            current_state=MockUserState.NEW, entered_state_at=self._clock()
        )
        return True

    async def get_current_match(self) -> Optional[MatchPair]:
        user_id = self._user_id()
        if user_id is None:
            return None
        journey, now = await self._read_journey()
        if journey.current_state is not MockUserState.MATCHED:
            return None
        return MatchPair(
            user1_id=user_id,
            user2_id=PARTNER_USER_ID,
            score=self._match_score,
            cycle_id=SIM_CYCLE_ID,
            channel_id=SIM_CHANNEL_ID,
            created_at=journey.matched_at or now - timedelta(hours=1),
        )

    async def get_user_traits(self) -> Optional[UserAggregatedTraits]:
        user_id = self._user_id()
        if user_id is None:
            return None
        await self._before_call()
        return UserAggregatedTraits(
            global_user_id=user_id,
            traits=SIM_TRAITS,
            last_updated=self._clock() - timedelta(days=3),
        )
