from __future__ import annotations

import asyncio
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from html import escape

import resend
import structlog
from fastapi import Cookie, Depends, HTTPException, Response, status
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewise.src.api.database import get_db
from pricewise.src.config import settings
from pricewise.src.contracts.models import MagicLinkToken, User
from pricewise.src.users.repository import UserRepository

logger = structlog.get_logger(__name__)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"


def render_magic_link_email(verify_url: str) -> str:
    url = escape(verify_url, quote=True)
    return (
        "<p>Click the link below to sign in to Pricewise and manage your price alerts:</p>"
        f'<p><a href="{url}">Sign in to Pricewise</a></p>'
        f"<p>This link expires in {settings.magic_link_expiry_minutes} minutes.</p>"
    )


async def create_magic_link(email: str, session: AsyncSession) -> str:
    token = secrets.token_urlsafe(48)
    session.add(
        MagicLinkToken(
            id=uuid.uuid4(),
            email=email,
            token=token,
            expires_at=datetime.now(timezone.utc)
            + timedelta(minutes=settings.magic_link_expiry_minutes),
            used=False,
        )
    )
    await session.flush()

    resend.api_key = settings.resend_api_key
    await asyncio.to_thread(
        resend.Emails.send,
        {
            "from": settings.resend_from_email,
            "to": [email],
            "subject": "Your Pricewise sign-in link",
            "html": render_magic_link_email(
                f"{settings.frontend_url}/auth/verify?token={token}"
            ),
        },
    )
    logger.info("magic_link_sent")
    return token


async def verify_magic_link(token: str, session: AsyncSession) -> User:
    """Consume a sign-in token and return its user, creating the user on first sign-in."""
    stmt = select(MagicLinkToken).where(
        MagicLinkToken.token == token,
        MagicLinkToken.used.is_(False),
    )
    result = await session.execute(stmt)
    magic_link = result.scalar_one_or_none()

    if magic_link is None or magic_link.expires_at.replace(tzinfo=timezone.utc) < datetime.now(
        timezone.utc
    ):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired token",
        )

    magic_link.used = True
    await session.flush()

    user_repo = UserRepository(session)
    user = await user_repo.get_by_email(magic_link.email)
    if user is None:
        user = await user_repo.create(magic_link.email)
        logger.info("user_created", user_id=str(user.id))
    return user


def _encode_token(user_id: uuid.UUID, token_type: str, lifetime: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + lifetime,
        "type": token_type,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_jwt(user_id: uuid.UUID) -> str:
    return _encode_token(
        user_id, ACCESS_TOKEN, timedelta(minutes=settings.jwt_expiry_minutes)
    )


def create_refresh_token(user_id: uuid.UUID) -> str:
    return _encode_token(
        user_id, REFRESH_TOKEN, timedelta(days=settings.refresh_token_expiry_days)
    )


def decode_token(token: str, expected_type: str) -> uuid.UUID:
    """Return the user id in ``token`` or raise 401."""
    invalid = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid token",
    )
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise invalid from exc

    subject = payload.get("sub")
    if subject is None or payload.get("type") != expected_type:
        raise invalid
    try:
        return uuid.UUID(subject)
    except ValueError as exc:
        raise invalid from exc


def set_access_cookie(response: Response, user_id: uuid.UUID) -> None:
    response.set_cookie(
        key="access_token",
        value=create_jwt(user_id),
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=settings.jwt_expiry_minutes * 60,
        path="/",
    )


def set_refresh_cookie(response: Response, user_id: uuid.UUID) -> None:
    response.set_cookie(
        key="refresh_token",
        value=create_refresh_token(user_id),
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=settings.refresh_token_expiry_days * 86400,
        path="/auth/refresh",
    )


async def load_user(session: AsyncSession, user_id: uuid.UUID) -> User:
    user = await UserRepository(session).get_by_id(user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return user


async def get_current_user(
    session: AsyncSession = Depends(get_db),
    access_token: str | None = Cookie(default=None),
) -> User:
    """The signed-in user; routes pass this identity on to every ownership check."""
    if access_token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return await load_user(session, decode_token(access_token, ACCESS_TOKEN))
