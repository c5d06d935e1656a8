"""
MosaicMatch — StatusSynchronizer

Owns the UI-facing matching state machine for one user session:

    loading → {not-eligible | eligible} → processing → waiting → matched
            → eligible (after opt-out) | not-eligible

Each ``refresh()`` pass checks eligibility, then fetches status, current
match and aggregated traits concurrently and derives the discrete status:

  1. not eligible                         → not-eligible
  2. a current match exists               → matched
  3. seeking, opted in < 60s ago          → processing
  4. seeking otherwise                    → waiting
  5. anything else                        → eligible

The pass publishes one immutable :class:`SyncSnapshot`, so observers never
see a new match next to a stale status.  A failed pass publishes nothing.

A poll loop re-reads the *current* snapshot on every tick and refreshes
when the interval for the current state has elapsed (30s while waiting,
120s otherwise).  ``aclose()`` cancels the loop; a pass still in flight
after close is discarded.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from mosaic_match.config import Settings, get_settings
from mosaic_match.schemas.matching import (
    MatchingStatus,
    MatchPair,
    UIMatchingStatus,
    UserAggregatedTraits,
)
from mosaic_match.services.errors import ERROR_MESSAGES, classify_error
from mosaic_match.services.gateway import RemoteStatusGateway
from mosaic_match.services.identity import utcnow

logger = structlog.get_logger("mosaic_match.synchronizer")

PROCESSING_WINDOW = timedelta(seconds=60)
WAITING_REFRESH_INTERVAL = timedelta(seconds=30)
DEFAULT_REFRESH_INTERVAL = timedelta(seconds=120)
POLL_TICK_SECONDS = 10.0

SnapshotListener = Callable[["SyncSnapshot"], None]


# ──────────────────────────────────────────────────────────────────────────────
# Pure derivations
# ──────────────────────────────────────────────────────────────────────────────

def derive_ui_status(
    can_participate: bool,
    matching_status: Optional[MatchingStatus],
    current_match: Optional[MatchPair],
    now: datetime,
    processing_window: timedelta = PROCESSING_WINDOW,
) -> UIMatchingStatus:
    if not can_participate:
        return UIMatchingStatus.NOT_ELIGIBLE
    if current_match is not None:
        return UIMatchingStatus.MATCHED
    if matching_status is not None and matching_status.is_seeking_match:
        opted_in = matching_status.opt_in_timestamp
        if opted_in is not None and now - opted_in < processing_window:
            return UIMatchingStatus.PROCESSING
        return UIMatchingStatus.WAITING
    return UIMatchingStatus.ELIGIBLE


def compute_wait_time_minutes(
    matching_status: Optional[MatchingStatus],
    now: datetime,
) -> int:
    """Whole minutes since opt-in, 0 without a timestamp, never negative."""
    if matching_status is None or matching_status.opt_in_timestamp is None:
        return 0
    elapsed = now - matching_status.opt_in_timestamp
    return max(0, int(elapsed.total_seconds() // 60))


def format_wait_time(minutes: int) -> str:
    """Human-readable wait time: ``"1 hour 5 minutes"``, ``"2 hours"``."""
    if minutes < 1:
        return "Less than a minute"
    if minutes < 60:
        return f"{minutes} minute{'' if minutes == 1 else 's'}"
    hours, rest = divmod(minutes, 60)
    text = f"{hours} hour{'' if hours == 1 else 's'}"
    if rest:
        text += f" {rest} minute{'' if rest == 1 else 's'}"
    return text


# ──────────────────────────────────────────────────────────────────────────────
# Snapshot
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SyncSnapshot:
    status: UIMatchingStatus = UIMatchingStatus.LOADING
    matching_status: Optional[MatchingStatus] = None
    current_match: Optional[MatchPair] = None
    user_traits: Optional[UserAggregatedTraits] = None
    wait_time_minutes: int = 0
    last_refresh_time: Optional[datetime] = None

    @property
    def is_loading(self) -> bool:
        return self.status is UIMatchingStatus.LOADING

    @property
    def is_eligible(self) -> bool:
        return self.status is UIMatchingStatus.ELIGIBLE

    @property
    def is_processing(self) -> bool:
        return self.status is UIMatchingStatus.PROCESSING

    @property
    def is_waiting(self) -> bool:
        return self.status is UIMatchingStatus.WAITING

    @property
    def is_matched(self) -> bool:
        return self.status is UIMatchingStatus.MATCHED

    @property
    def match_score(self) -> Optional[float]:
        return self.current_match.score if self.current_match else None

    @property
    def wait_time_text(self) -> str:
        return format_wait_time(self.wait_time_minutes)


# ──────────────────────────────────────────────────────────────────────────────
# Synchronizer
# ──────────────────────────────────────────────────────────────────────────────

class StatusSynchronizer:
    """Single owner of one session's matching state.

    Parameters
    ----------
    gateway:
        The backend gateway (live-with-fallback or simulator).
    clock:
        Returns the current aware UTC time.  Injected so tests can advance
        time without sleeping.
    """

    def __init__(
        self,
        gateway: RemoteStatusGateway,
        *,
        waiting_interval: timedelta = WAITING_REFRESH_INTERVAL,
        default_interval: timedelta = DEFAULT_REFRESH_INTERVAL,
        poll_tick_seconds: float = POLL_TICK_SECONDS,
        processing_window: timedelta = PROCESSING_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._gateway = gateway
        self.waiting_interval = waiting_interval
        self.default_interval = default_interval
        self.poll_tick_seconds = poll_tick_seconds
        self.processing_window = processing_window
        self._clock = clock

        self._snapshot = SyncSnapshot()
        self._listeners: list[SnapshotListener] = []
        self._refresh_lock = asyncio.Lock()
        self._action_lock = asyncio.Lock()
        self._generation = 0
        self._poll_task: Optional[asyncio.Task] = None
        self._closed = False
        self.last_error: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        gateway: RemoteStatusGateway,
        settings: Optional[Settings] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> "StatusSynchronizer":
        settings = settings or get_settings()
        return cls(
            gateway,
            waiting_interval=timedelta(milliseconds=settings.REFRESH_INTERVAL_WAITING_MS),
            default_interval=timedelta(milliseconds=settings.REFRESH_INTERVAL_DEFAULT_MS),
            poll_tick_seconds=settings.POLL_TICK_MS / 1000.0,
            processing_window=timedelta(seconds=settings.PROCESSING_WINDOW_SECONDS),
            clock=clock,
        )

    # ── Observation ───────────────────────────────────────────────────────

    def current_state(self) -> SyncSnapshot:
        return self._snapshot

    @property
    def status(self) -> UIMatchingStatus:
        return self._snapshot.status

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Call ``listener`` with every newly published snapshot.

        Returns a function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, snapshot: SyncSnapshot) -> None:
        previous = self._snapshot
        self._snapshot = snapshot
        if previous.status is not snapshot.status:
            logger.info(
                "status_transition",
                from_status=previous.status.value,
                to_status=snapshot.status.value,
            )
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("snapshot_listener_failed")

    # ── Refresh ───────────────────────────────────────────────────────────

    async def refresh(self) -> bool:
        """Run one synchronization pass.

        Passes are queued behind one another.  Returns True when the pass
        succeeded and its snapshot was published.
        """
        if self._closed:
            return False
        async with self._refresh_lock:
            return await self._refresh_pass()

    async def _refresh_pass(self) -> bool:
        generation = self._generation
        try:
            can_participate = await self._gateway.can_participate()
            if can_participate:
                matching_status, current_match, user_traits = await asyncio.gather(
                    self._gateway.get_status(),
                    self._gateway.get_current_match(),
                    self._gateway.get_user_traits(),
                )
            else:
                matching_status, current_match, user_traits = None, None, None
        except Exception as exc:
            classification = classify_error(exc)
            self.last_error = classification.user_message
            logger.warning(
                "refresh_failed",
                status=self._snapshot.status.value,
                retryable=classification.retryable,
                status_code=classification.status_code,
                error=str(exc),
            )
            return False

        if self._closed:
            logger.debug("refresh_discarded", reason="closed")
            return False
        if generation != self._generation:
            logger.debug("refresh_discarded", reason="superseded_by_action")
            return False

        now = self._clock()
        try:
            snapshot = SyncSnapshot(
                status=derive_ui_status(
                    can_participate,
                    matching_status,
                    current_match,
                    now,
                    self.processing_window,
                ),
                matching_status=matching_status,
                current_match=current_match,
                user_traits=user_traits,
                wait_time_minutes=compute_wait_time_minutes(matching_status, now),
                last_refresh_time=now,
            )
        except Exception as exc:
            self.last_error = classify_error(exc).user_message
            logger.error("refresh_derivation_failed", error=str(exc))
            return False
        self.last_error = None
        self._publish(snapshot)
        return True

    # ── Actions ───────────────────────────────────────────────────────────

    async def opt_in(self) -> bool:
        """Opt the user into matching.

        Only allowed from ``eligible``; any other state is rejected without
        touching the backend.  On success the state moves to ``processing``
        immediately and a full refresh follows.
        """
        async with self._action_lock:
            current = self._snapshot
            if current.status is not UIMatchingStatus.ELIGIBLE:
                logger.info("opt_in_rejected", status=current.status.value)
                return False

            try:
                response = await self._gateway.opt_in()
            except Exception as exc:
                classification = classify_error(exc)
                self.last_error = classification.user_message
                logger.error("opt_in_failed", error=str(exc))
                return False

            if response is None or not response.success:
                self.last_error = (
                    response.message if response and response.message
                    else ERROR_MESSAGES["DEFAULT"]
                )
                logger.warning(
                    "opt_in_unsuccessful",
                    message=response.message if response else None,
                )
                return False

            if self._closed:
                return True

            matching_status = current.matching_status
            if response.data is not None and response.data.matching_status is not None:
                matching_status = response.data.matching_status

            self._generation += 1
            self._publish(
                replace(
                    current,
                    status=UIMatchingStatus.PROCESSING,
                    matching_status=matching_status,
                    current_match=None,
                    wait_time_minutes=compute_wait_time_minutes(
                        matching_status, self._clock()
                    ),
                )
            )
            logger.info("opt_in_succeeded")

        await self.refresh()
        return True

    async def opt_out(self) -> bool:
        """Opt the user out of matching and resynchronize on success."""
        async with self._action_lock:
            try:
                success = await self._gateway.opt_out()
            except Exception as exc:
                classification = classify_error(exc)
                self.last_error = classification.user_message
                logger.error("opt_out_failed", error=str(exc))
                return False

            if not success:
                logger.warning("opt_out_unsuccessful")
                return False

            self._generation += 1
            logger.info("opt_out_succeeded")

        await self.refresh()
        return True

    # ── Polling ───────────────────────────────────────────────────────────

    def refresh_interval_for(self, status: UIMatchingStatus) -> timedelta:
        if status is UIMatchingStatus.WAITING:
            return self.waiting_interval
        return self.default_interval

    def is_refresh_due(self, now: Optional[datetime] = None) -> bool:
        snapshot = self._snapshot
        if snapshot.last_refresh_time is None:
            return True
        now = now or self._clock()
        elapsed = now - snapshot.last_refresh_time
        return elapsed >= self.refresh_interval_for(snapshot.status)

    async def poll_once(self) -> bool:
        """One scheduler tick: refresh if due and nothing is in flight."""
        if self._closed or self._refresh_lock.locked():
            return False
        if not self.is_refresh_due():
            return False
        return await self.refresh()

    def start(self) -> None:
        """Start the poll loop (initial refresh, then one check per tick)."""
        if self._closed:
            raise RuntimeError("synchronizer is closed")
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        await self.refresh()
        while not self._closed:
            await asyncio.sleep(self.poll_tick_seconds)
            try:
                await self.poll_once()
            except Exception:
                # polling outlives a failed tick
                logger.exception("poll_tick_failed")

    async def aclose(self) -> None:
        """Stop polling; in-flight passes are discarded when they land."""
        self._closed = True
        self._listeners.clear()
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.debug("synchronizer_closed")
