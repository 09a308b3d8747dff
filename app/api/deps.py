"""FastAPI dependencies for authentication, sessions and the service graph."""

import uuid
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import async_session_factory, get_session
from app.core.security import decode_jwt
from app.models.user import User
from app.services.container import Services, build_services

bearer_scheme = HTTPBearer()


class AuthContext:
    """Resolved identity carried through a request."""

    __slots__ = ("user_id", "tier")

    def __init__(self, user_id: uuid.UUID, tier: str) -> None:
        self.user_id = user_id
        self.tier = tier


async def get_auth_context(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> AuthContext:
    """Decode the bearer JWT and load the owning user."""
    try:
        payload = decode_jwt(credentials.credentials)
        user_id = uuid.UUID(payload["sub"])
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired JWT",
        ) from exc
    except (KeyError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Malformed JWT payload",
        ) from exc

    user = await session.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is disabled",
        )
    return AuthContext(user_id=user.id, tier=user.tier)


def get_services(request: Request) -> Services:
    """Service graph built once per app and kept on ``app.state``."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services(get_settings(), async_session_factory)
        request.app.state.services = services
    return services


# Typed shorthand for use in route signatures
Auth = Annotated[AuthContext, Depends(get_auth_context)]
Session = Annotated[AsyncSession, Depends(get_session)]
Svc = Annotated[Services, Depends(get_services)]
