from typing import Optional

from fastapi import Depends, Header, Request

from mosaic_match.services.identity import UserSession
from mosaic_match.services.session_registry import SessionRegistry, UserContext


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_user_session(
    x_user_id: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
) -> Optional[UserSession]:
    """Identity from request headers; absence means "not eligible", not 401."""
    if not x_user_id or not x_user_id.strip():
        return None
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip() or None
    return UserSession(user_id=x_user_id.strip(), token=token)


async def get_user_context(
    session: Optional[UserSession] = Depends(get_user_session),
    registry: SessionRegistry = Depends(get_registry),
) -> Optional[UserContext]:
    if session is None:
        return None
    return await registry.get_or_create(session)
