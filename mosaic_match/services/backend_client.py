"""
MosaicMatch — Matching backend transport

Thin async client over the two remote surfaces the core talks to:

- the realtime game-server RPC endpoint (``POST /v2/rpc/{id}``) that fronts
  opt-in / opt-out / status / current-match / traits;
- the trait-embedding HTTP API (``/generate_match_embeddings`` and
  ``/pinecone/user/{id}/similar``).

Non-2xx responses are converted to :class:`MatchServiceError`; transport
failures (including timeouts) propagate as ``httpx`` exceptions and are
classified by :mod:`mosaic_match.services.errors`.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import httpx
import structlog

from mosaic_match.config import Settings
from mosaic_match.services.errors import MalformedPayloadError, error_from_response
from mosaic_match.services.identity import UserSession

logger = structlog.get_logger("mosaic_match.backend_client")

RPC_OPT_IN = "rpc_opt_in_match"
RPC_OPT_OUT = "rpc_opt_out_match"
RPC_GET_STATUS = "rpc_get_user_match_status"
RPC_GET_CURRENT_MATCH = "rpc_get_current_match"
RPC_GET_USER_TRAITS = "rpc_get_user_traits"


class MatchBackendClient:
    """Async transport for the matching backend.

    A single ``httpx.AsyncClient`` is shared by every call; pass one in to
    reuse an existing pool (or an ``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        base_url: str,
        *,
        embedding_base_url: Optional[str] = None,
        server_key: str = "defaultkey",
        timeout_seconds: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.embedding_base_url = (embedding_base_url or base_url).rstrip("/")
        self.server_key = server_key
        self.timeout_seconds = timeout_seconds
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "MatchBackendClient":
        return cls(
            settings.BACKEND_BASE_URL,
            embedding_base_url=settings.embedding_api_url,
            server_key=settings.BACKEND_SERVER_KEY,
            timeout_seconds=settings.rpc_timeout_seconds,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # ── RPC surface ───────────────────────────────────────────────────────

    async def rpc(
        self,
        rpc_id: str,
        session: UserSession,
        payload: Optional[dict] = None,
    ) -> Optional[dict]:
        """Invoke a named RPC and return its decoded payload (or None)."""
        headers = {"X-Server-Key": self.server_key}
        if session.token:
            headers["Authorization"] = f"Bearer {session.token}"

        # The RPC endpoint expects the payload itself as a JSON string.
        body = json.dumps(payload or {})

        logger.debug("rpc_call", rpc_id=rpc_id, user_id=session.user_id)
        response = await self._http.post(
            f"{self.base_url}/v2/rpc/{rpc_id}",
            json=body,
            headers=headers,
            timeout=self.timeout_seconds,
        )
        if response.is_error:
            raise error_from_response(response)

        return _decode_rpc_payload(rpc_id, response)

    async def opt_in_match(self, session: UserSession) -> Optional[dict]:
        return await self.rpc(RPC_OPT_IN, session)

    async def opt_out_match(self, session: UserSession) -> Optional[dict]:
        return await self.rpc(RPC_OPT_OUT, session)

    async def get_user_match_status(self, session: UserSession) -> Optional[dict]:
        return await self.rpc(RPC_GET_STATUS, session)

    async def get_current_match(self, session: UserSession) -> Optional[dict]:
        return await self.rpc(RPC_GET_CURRENT_MATCH, session)

    async def get_user_traits(self, session: UserSession) -> Optional[dict]:
        return await self.rpc(RPC_GET_USER_TRAITS, session)

    # ── Embedding API ─────────────────────────────────────────────────────

    async def generate_match_embeddings(
        self,
        user_id: str,
        traits: list[str],
    ) -> dict:
        response = await self._http.post(
            f"{self.embedding_base_url}/generate_match_embeddings",
            json={"userId": user_id, "traits": traits},
            timeout=self.timeout_seconds,
        )
        if response.is_error:
            raise error_from_response(response)
        return _decode_json_object(response, "generate_match_embeddings")

    async def find_similar_users(
        self,
        user_id: str,
        top_k: int = 5,
        include_vectors: bool = False,
    ) -> dict:
        response = await self._http.get(
            f"{self.embedding_base_url}/pinecone/user/{user_id}/similar",
            params={
                "topK": top_k,
                "includeVectors": "true" if include_vectors else "false",
            },
            timeout=self.timeout_seconds,
        )
        if response.is_error:
            raise error_from_response(response)
        return _decode_json_object(response, "find_similar_users")


def _decode_json_object(response: httpx.Response, operation: str) -> dict:
    try:
        data = response.json()
    except ValueError as exc:
        raise MalformedPayloadError(f"{operation} returned non-JSON body") from exc
    if not isinstance(data, dict):
        raise MalformedPayloadError(f"{operation} returned {type(data).__name__}")
    return data


def _decode_rpc_payload(rpc_id: str, response: httpx.Response) -> Optional[dict]:
    envelope = _decode_json_object(response, rpc_id)
    payload: Any = envelope.get("payload")
    if payload in (None, ""):
        return None
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise MalformedPayloadError(f"{rpc_id} payload is not JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedPayloadError(f"{rpc_id} payload is {type(payload).__name__}")
    return payload
