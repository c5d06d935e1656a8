"""Per-user wiring of gateway, synchronizer and trait pipeline.

Contexts are kept in least-recently-used order.  A context that has not been
touched for ``idle_ttl_seconds`` is closed and dropped, and once
``max_contexts`` users are live the least recently used one makes room for a
new user.  Evicted synchronizers are closed outside the registry lock.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from mosaic_match.config import Settings
from mosaic_match.services.backend_client import MatchBackendClient
from mosaic_match.services.embedding_submitter import EmbeddingSubmitter
from mosaic_match.services.gateway import RemoteStatusGateway, build_status_gateway
from mosaic_match.services.identity import StaticIdentityProvider, UserSession
from mosaic_match.services.simulator import JourneySimulator
from mosaic_match.services.synchronizer import StatusSynchronizer
from mosaic_match.services.trait_aggregator import TraitAggregator
from mosaic_match.services.trait_pipeline import TraitPipeline
from mosaic_match.utils.storage import RecordFetcher

logger = structlog.get_logger("mosaic_match.session_registry")


@dataclass
class UserContext:
    identity: StaticIdentityProvider
    gateway: RemoteStatusGateway
    simulator: JourneySimulator
    synchronizer: StatusSynchronizer
    pipeline: Optional[TraitPipeline]
    last_seen: float = field(default=0.0)


class SessionRegistry:
    """Owns one :class:`UserContext` per signed-in user."""

    def __init__(
        self,
        settings: Settings,
        client: Optional[MatchBackendClient] = None,
        fetcher: Optional[RecordFetcher] = None,
        *,
        autostart: bool = True,
        idle_ttl_seconds: Optional[float] = None,
        max_contexts: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.client = client
        self.fetcher = fetcher
        self.autostart = autostart
        self.idle_ttl_seconds = (
            idle_ttl_seconds
            if idle_ttl_seconds is not None
            else float(settings.SESSION_IDLE_TTL_S)
        )
        self.max_contexts = (
            max_contexts if max_contexts is not None else settings.SESSION_MAX_CONTEXTS
        )
        self._clock = clock
        self._contexts: OrderedDict[str, UserContext] = OrderedDict()
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._contexts)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._contexts

    async def get_or_create(self, session: UserSession) -> UserContext:
        async with self._lock:
            now = self._clock()
            evicted = self._pop_idle(now)

            context = self._contexts.get(session.user_id)
            if context is not None:
                context.identity.update(session)
                context.last_seen = now
                self._contexts.move_to_end(session.user_id)
            else:
                while len(self._contexts) >= self.max_contexts:
                    user_id, oldest = self._contexts.popitem(last=False)
                    logger.info("user_context_evicted", user_id=user_id, reason="capacity")
                    evicted.append(oldest)

                context = self._build(session)
                context.last_seen = now
                self._contexts[session.user_id] = context
                logger.info("user_context_created", user_id=session.user_id)
                if self.autostart:
                    context.synchronizer.start()

        if self.autostart:
            self._ensure_sweeper()
        await self._close(evicted)
        return context

    async def evict_idle(self) -> int:
        """Close and drop every context idle for longer than the TTL."""
        async with self._lock:
            evicted = self._pop_idle(self._clock())
        await self._close(evicted)
        return len(evicted)

    def _pop_idle(self, now: float) -> list[UserContext]:
        evicted = []
        for user_id, context in list(self._contexts.items()):
            if now - context.last_seen <= self.idle_ttl_seconds:
                # OrderedDict is oldest first; the rest are fresher.
                break
            del self._contexts[user_id]
            logger.info("user_context_evicted", user_id=user_id, reason="idle")
            evicted.append(context)
        return evicted

    @staticmethod
    async def _close(contexts: list[UserContext]) -> None:
        if contexts:
            await asyncio.gather(*(c.synchronizer.aclose() for c in contexts))

    def _ensure_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        interval = max(1.0, self.idle_ttl_seconds / 2)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.evict_idle()
            except Exception:
                logger.exception("user_context_sweep_failed")

    def _build(self, session: UserSession) -> UserContext:
        identity = StaticIdentityProvider(session)
        simulator = JourneySimulator.from_settings(self.settings, identity=identity)
        gateway = build_status_gateway(
            self.settings, identity, client=self.client, simulator=simulator
        )
        synchronizer = StatusSynchronizer.from_settings(gateway, self.settings)

        pipeline = None
        if self.fetcher is not None and self.client is not None:
            pipeline = TraitPipeline(
                TraitAggregator.from_settings(self.fetcher, self.settings),
                EmbeddingSubmitter(self.client),
                identity,
            )
        return UserContext(
            identity=identity,
            gateway=gateway,
            simulator=simulator,
            synchronizer=synchronizer,
            pipeline=pipeline,
        )

    async def close_all(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None and not sweeper.done():
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        async with self._lock:
            contexts, self._contexts = list(self._contexts.values()), OrderedDict()
        await self._close(contexts)
        logger.info("user_contexts_closed", count=len(contexts))
