from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.database import get_db
from app.users.models import User


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


@dataclass
class ActorUser:
    user_id: uuid.UUID
    email: str | None = None
    name: str | None = None
    is_admin: bool = False
    is_account_admin: bool = False
    user_status: str = "ACTIVE"
    roles: set[str] | None = None
    correlation_id: str | None = None


def decode_bearer_token(request: Request) -> AuthUser | None:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        return None

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    subject = payload.get("sub")
    if subject is None:
        return None
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=str(subject), roles=[str(role) for role in roles])


async def get_auth_user(request: Request) -> AuthUser:
    auth_user = decode_bearer_token(request)
    if auth_user is None:
        return AuthUser(sub="anonymous", roles=["guest"])
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = auth_user.sub
    return auth_user


def get_current_user(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    db: Session = Depends(get_db),
) -> ActorUser:
    if auth_user.sub == "anonymous":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    try:
        user_id = uuid.UUID(auth_user.sub)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized") from None

    user = db.scalar(select(User).where(User.id == user_id))
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User ID not found in session")
    if user.user_status == "INACTIVE":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")

    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=user.id,
        email=user.email,
        name=user.name,
        is_admin=user.is_admin,
        is_account_admin=user.is_account_admin,
        user_status=user.user_status,
        roles=set(auth_user.roles),
        correlation_id=correlation_id,
    )
