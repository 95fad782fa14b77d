import asyncio
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import timezone
from typing import Optional, Set, Tuple

from fastapi import Depends, Header
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shorty.common.base_models import utcnow
from shorty.database import get_db, get_session_factory
from shorty.scim.errors import ScimUnauthorizedError
from shorty.scim.models import ScimToken

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
TOKEN_PREFIX_LENGTH = 8

_background_tasks: Set[asyncio.Task] = set()


@dataclass(frozen=True)
class ScimContext:
    """Tenant resolved from the bearer token. Every SCIM query is scoped by it."""

    organization_id: int
    token_id: int


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_token() -> Tuple[str, str, str]:
    """Return ``(clear_token, token_hash, token_prefix)``.

    The clear token is 64 hex characters and is only ever shown to the caller.
    """
    token = secrets.token_hex(TOKEN_BYTES)
    return token, hash_token(token), token[:TOKEN_PREFIX_LENGTH]


async def _touch_last_used(session_factory: async_sessionmaker[AsyncSession], token_id: int) -> None:
    try:
        async with session_factory() as db:
            await db.execute(update(ScimToken).where(ScimToken.id == token_id).values(last_used_at=utcnow()))
            await db.commit()
    except Exception:
        logger.exception("Failed to record last use of SCIM token %s", token_id)


def schedule_last_used_update(session_factory: async_sessionmaker[AsyncSession], token_id: int) -> None:
    """Record token use in the background; the request never waits on it."""
    task = asyncio.create_task(_touch_last_used(session_factory, token_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def drain_background_tasks() -> None:
    if _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


async def authenticate(db: AsyncSession, authorization: Optional[str]) -> ScimToken:
    if not authorization:
        raise ScimUnauthorizedError("Authorization header required")

    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise ScimUnauthorizedError("Invalid authorization header format")

    result = await db.execute(select(ScimToken).where(ScimToken.token_hash == hash_token(parts[1].strip())))
    token_record = result.scalar_one_or_none()
    if token_record is None:
        raise ScimUnauthorizedError("Invalid token")

    if token_record.expires_at is not None:
        expires = token_record.expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        if utcnow() > expires:
            raise ScimUnauthorizedError("SCIM bearer token has expired")

    return token_record


async def get_scim_context(
    authorization: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> ScimContext:
    token_record = await authenticate(db, authorization)
    schedule_last_used_update(session_factory, token_record.id)
    return ScimContext(organization_id=token_record.organization_id, token_id=token_record.id)
