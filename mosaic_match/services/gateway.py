"""
MosaicMatch — RemoteStatusGateway

One interface over the matching backend with two implementations selected
once at construction time:

- :class:`LiveStatusGateway` talks to the real backend through
  :class:`MatchBackendClient`;
- :class:`~mosaic_match.services.simulator.JourneySimulator` fakes it.

:class:`FallbackStatusGateway` decorates the live gateway: retryable
failures are answered by the simulator so that the status state machine
stays alive, fatal failures are surfaced as failed results (or re-raised
for reads) with a sanitized message.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from mosaic_match.config import Settings
from mosaic_match.schemas.matching import (
    MatchingStatus,
    MatchPair,
    MatchServiceResponse,
    UserAggregatedTraits,
)
from mosaic_match.services.backend_client import MatchBackendClient
from mosaic_match.services.errors import ErrorClassification, classify_error
from mosaic_match.services.identity import IdentityProvider, resolve_session

logger = structlog.get_logger("mosaic_match.gateway")

T = TypeVar("T")


class RemoteStatusGateway(ABC):
    """Client-side contract of the matching backend."""

    @abstractmethod
    async def can_participate(self) -> bool:
        ...

    @abstractmethod
    async def get_status(self) -> Optional[MatchingStatus]:
        ...

    @abstractmethod
    async def opt_in(self) -> Optional[MatchServiceResponse]:
        ...

    @abstractmethod
    async def opt_out(self) -> bool:
        ...

    @abstractmethod
    async def get_current_match(self) -> Optional[MatchPair]:
        ...

    @abstractmethod
    async def get_user_traits(self) -> Optional[UserAggregatedTraits]:
        ...


class LiveStatusGateway(RemoteStatusGateway):
    """Gateway backed by the real RPC endpoint.

    Backend errors propagate unchanged; decorate with
    :class:`FallbackStatusGateway` to get fallback behaviour.
    """

    def __init__(
        self,
        client: MatchBackendClient,
        identity: IdentityProvider,
        *,
        configured: bool = True,
    ) -> None:
        self._client = client
        self._identity = identity
        self._configured = configured

    def _session(self):
        if not self._configured:
            return None
        return resolve_session(self._identity)

    async def can_participate(self) -> bool:
        if not self._configured:
            logger.warning("matching_not_configured")
            return False
        if self._session() is None:
            logger.warning("eligibility_no_identity")
            return False
        # TODO: ask the backend whether enough conversations have been
        # analysed once it exposes an eligibility RPC.
        return True

    async def get_status(self) -> Optional[MatchingStatus]:
        session = self._session()
        if session is None:
            return None
        payload = await self._client.get_user_match_status(session)
        if not payload or not payload.get("matchingStatus"):
            return None
        return MatchingStatus.model_validate(payload["matchingStatus"])

    async def opt_in(self) -> Optional[MatchServiceResponse]:
        session = self._session()
        if session is None:
            return None
        payload = await self._client.opt_in_match(session)
        if not payload:
            return MatchServiceResponse(
                success=False, status="error", message="Failed to opt in"
            )
        return MatchServiceResponse.model_validate(payload)

    async def opt_out(self) -> bool:
        session = self._session()
        if session is None:
            return False
        payload = await self._client.opt_out_match(session)
        return bool(payload and payload.get("success"))

    async def get_current_match(self) -> Optional[MatchPair]:
        session = self._session()
        if session is None:
            return None
        payload = await self._client.get_current_match(session)
        if not payload or not payload.get("match"):
            return None
        return MatchPair.model_validate(payload["match"])

    async def get_user_traits(self) -> Optional[UserAggregatedTraits]:
        session = self._session()
        if session is None:
            return None
        payload = await self._client.get_user_traits(session)
        if not payload:
            return None
        return UserAggregatedTraits.model_validate(payload)


class FallbackStatusGateway(RemoteStatusGateway):
    """Wrap a live gateway, answering retryable failures from a fallback."""

    def __init__(
        self,
        primary: RemoteStatusGateway,
        fallback: RemoteStatusGateway,
    ) -> None:
        self.primary = primary
        self.fallback = fallback

    async def _call(
        self,
        operation: str,
        primary_call: Callable[[], Awaitable[T]],
        fallback_call: Callable[[], Awaitable[T]],
        on_fatal: Callable[[Exception, ErrorClassification], T],
    ) -> T:
        try:
            return await primary_call()
        except Exception as exc:
            classification = classify_error(exc)
            if classification.retryable:
                logger.warning(
                    "live_call_failed_using_fallback",
                    operation=operation,
                    status_code=classification.status_code,
                    error=str(exc),
                )
                return await fallback_call()
            logger.error(
                "live_call_failed_fatal",
                operation=operation,
                status_code=classification.status_code,
                error_code=classification.error_code,
                error=str(exc),
            )
            return on_fatal(exc, classification)

    @staticmethod
    def _reraise(exc: Exception, _classification: ErrorClassification):
        raise exc

    async def can_participate(self) -> bool:
        # Identity / configuration checks live in the primary; it never
        # fails for transport reasons, so no fallback is consulted.
        try:
            return await self.primary.can_participate()
        except Exception as exc:
            logger.error("eligibility_check_failed", error=str(exc))
            return False

    async def get_status(self) -> Optional[MatchingStatus]:
        return await self._call(
            "get_status",
            self.primary.get_status,
            self.fallback.get_status,
            self._reraise,
        )

    async def opt_in(self) -> Optional[MatchServiceResponse]:
        def _failed(
            _exc: Exception, classification: ErrorClassification
        ) -> MatchServiceResponse:
            return MatchServiceResponse(
                success=False,
                status="error",
                message=classification.user_message,
                error_code=classification.error_code,
            )

        return await self._call(
            "opt_in", self.primary.opt_in, self.fallback.opt_in, _failed
        )

    async def opt_out(self) -> bool:
        return await self._call(
            "opt_out",
            self.primary.opt_out,
            self.fallback.opt_out,
            lambda _exc, _classification: False,
        )

    async def get_current_match(self) -> Optional[MatchPair]:
        return await self._call(
            "get_current_match",
            self.primary.get_current_match,
            self.fallback.get_current_match,
            self._reraise,
        )

    async def get_user_traits(self) -> Optional[UserAggregatedTraits]:
        return await self._call(
            "get_user_traits",
            self.primary.get_user_traits,
            self.fallback.get_user_traits,
            self._reraise,
        )


def build_status_gateway(
    settings: Settings,
    identity: IdentityProvider,
    client: Optional[MatchBackendClient] = None,
    simulator: Optional[RemoteStatusGateway] = None,
) -> RemoteStatusGateway:
    """Select the gateway implementation once, from configuration."""
    from mosaic_match.services.simulator import JourneySimulator

    if simulator is None:
        simulator = JourneySimulator.from_settings(settings, identity=identity)

    if settings.use_simulator:
        logger.info("gateway_selected", implementation="simulator")
        return simulator

    if client is None:
        client = MatchBackendClient.from_settings(settings)

    logger.info("gateway_selected", implementation="live_with_fallback")
    live = LiveStatusGateway(client, identity, configured=settings.is_configured)
    return FallbackStatusGateway(live, simulator)
