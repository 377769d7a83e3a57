from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException, WebSocket, status

from app.core.db.schemas.auth import User
from app.modules.auth.users import get_user_manager, get_jwt_strategy
from app.modules.quiz.authz import Identity


def identity_of(user: User) -> Identity:
    return Identity(id=str(user.id), is_admin=bool(user.is_superuser))


async def _read_user(token: Optional[str], user_manager) -> Optional[User]:
    if not token:
        return None
    strategy = get_jwt_strategy()
    user = await strategy.read_token(token, user_manager)
    if user is None or not user.is_active:
        return None
    return user


async def get_identity(
    access_token: Optional[str] = None,
    authorization: Optional[str] = Header(default=None),
    user_manager=Depends(get_user_manager),
) -> Identity:
    """Resolve caller from Authorization header or `access_token` query param."""
    token: Optional[str] = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
    elif access_token:
        token = access_token

    user = await _read_user(token, user_manager)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return identity_of(user)


async def ws_identity(
    websocket: WebSocket,
    user_manager=Depends(get_user_manager),
) -> Optional[Identity]:
    """WebSocket variant; browsers cannot set headers, so the token rides in the query.

    Returns None instead of raising so the endpoint can close with 4401.
    """
    user = await _read_user(websocket.query_params.get("access_token"), user_manager)
    return identity_of(user) if user else None
