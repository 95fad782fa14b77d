import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shorty.auth.models import APIKey, User
from shorty.common.base_models import utcnow
from shorty.config import settings
from shorty.groups.models import Group, GroupMembership, GroupRole
from shorty.links.models import Link
from shorty.organizations.models import OrganizationMembership
from shorty.scim import members as membership
from shorty.scim.auth import ScimContext, generate_token
from shorty.scim.errors import ScimConflictError, ScimInternalError, ScimNotFoundError, ScimValidationError
from shorty.scim.filters import parse_filter
from shorty.scim.mapper import (
    derive_display_name,
    group_to_resource,
    load_group_members,
    user_from_request,
    user_to_resource,
)
from shorty.scim.models import ScimToken
from shorty.scim.patch import apply_group_patch, apply_user_patch, count_patch_members
from shorty.scim.schemas import SCIM_LIST_RESPONSE_SCHEMA, ScimGroupRequest, ScimPatchRequest, ScimUserRequest
from shorty.sso.models import OIDCIdentity

logger = logging.getLogger(__name__)

USER_FILTER_ATTRIBUTES = {
    "username": User.email,
    "externalid": User.external_id,
}

GROUP_FILTER_ATTRIBUTES = {
    "displayname": Group.name,
    "externalid": Group.external_id,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_int(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        return default


def normalize_paging(start_index: Optional[str], count: Optional[str]) -> Tuple[int, int]:
    """Clamp SCIM paging parameters: startIndex >= 1, 1 <= count <= max."""
    start = max(1, _parse_int(start_index, 1))
    size = _parse_int(count, settings.scim_default_count)
    size = max(1, min(size, settings.scim_max_results))
    return start, size


def _parse_id(resource_id: str) -> Optional[int]:
    try:
        return int(resource_id)
    except (TypeError, ValueError):
        return None


def _apply_filter(query, filter_str: Optional[str], attributes: dict):
    clause = parse_filter(filter_str)
    if clause is None or clause.parent is not None:
        return query
    column = attributes.get(clause.attribute.lower())
    if column is None:
        return query
    return query.where(column == clause.value)


def _list_response(resources: List[dict], total: int, start_index: int) -> dict:
    return {
        "schemas": [SCIM_LIST_RESPONSE_SCHEMA],
        "totalResults": total,
        "startIndex": start_index,
        "itemsPerPage": len(resources),
        "Resources": resources,
    }


async def _flush(db: AsyncSession, failure: str, conflict: Optional[str] = None) -> None:
    try:
        await db.flush()
    except IntegrityError as exc:
        if conflict is not None:
            raise ScimConflictError(conflict) from exc
        raise ScimInternalError(failure) from exc
    except SQLAlchemyError as exc:
        raise ScimInternalError(failure) from exc


async def _email_taken(db: AsyncSession, email: str, exclude_user_id: Optional[int] = None) -> bool:
    query = select(User.id).where(User.email == email)
    if exclude_user_id is not None:
        query = query.where(User.id != exclude_user_id)
    with db.no_autoflush:
        result = await db.execute(query.limit(1))
    return result.scalar_one_or_none() is not None


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def _users_in(ctx: ScimContext):
    return (
        select(User)
        .join(OrganizationMembership, OrganizationMembership.user_id == User.id)
        .where(OrganizationMembership.organization_id == ctx.organization_id)
    )


async def _get_user(db: AsyncSession, ctx: ScimContext, user_id: str) -> User:
    uid = _parse_id(user_id)
    if uid is None:
        raise ScimNotFoundError(f"User {user_id} not found")
    result = await db.execute(_users_in(ctx).where(User.id == uid))
    user = result.scalar_one_or_none()
    if user is None:
        raise ScimNotFoundError(f"User {user_id} not found")
    return user


async def list_users(
    db: AsyncSession,
    ctx: ScimContext,
    filter_str: Optional[str],
    start_index: int,
    count: int,
    base_url: str,
) -> dict:
    query = _apply_filter(_users_in(ctx), filter_str, USER_FILTER_ATTRIBUTES)

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
    result = await db.execute(query.order_by(User.id.asc()).offset(start_index - 1).limit(count))
    resources = [user_to_resource(u, base_url) for u in result.scalars().all()]
    return _list_response(resources, total, start_index)


async def get_user(db: AsyncSession, ctx: ScimContext, user_id: str, base_url: str) -> dict:
    return user_to_resource(await _get_user(db, ctx, user_id), base_url)


async def create_user(db: AsyncSession, ctx: ScimContext, data: ScimUserRequest, base_url: str) -> dict:
    email = data.primary_email()
    if not email:
        raise ScimValidationError("userName or email is required")
    if await _email_taken(db, email):
        raise ScimConflictError("User with this email already exists")

    user = user_from_request(data, email)
    db.add(user)
    await _flush(db, "Failed to create user", conflict="User with this email already exists")

    db.add(OrganizationMembership(organization_id=ctx.organization_id, user_id=user.id))

    # Every user owns a personal group; it is created with the user or not at all.
    personal_group = Group(
        organization_id=ctx.organization_id,
        name=f"{user.name}'s Links",
        description=f"Personal links for {user.name}",
    )
    db.add(personal_group)
    await _flush(db, "Failed to create user")
    db.add(GroupMembership(user_id=user.id, group_id=personal_group.id, role=GroupRole.admin))
    await _flush(db, "Failed to create user")

    logger.info("SCIM created user %s in organization %s", user.id, ctx.organization_id)
    return user_to_resource(user, base_url)


async def replace_user(
    db: AsyncSession, ctx: ScimContext, user_id: str, data: ScimUserRequest, base_url: str
) -> dict:
    user = await _get_user(db, ctx, user_id)

    email = data.primary_email()
    if not email:
        raise ScimValidationError("userName or email is required")
    if email != user.email and await _email_taken(db, email, exclude_user_id=user.id):
        raise ScimConflictError("User with this email already exists")

    name = data.name
    user.email = email
    display_name = derive_display_name(
        data.display_name,
        name.formatted if name else None,
        name.given_name if name else None,
        name.family_name if name else None,
    )
    if display_name:
        user.name = display_name
    user.given_name = name.given_name if name else None
    user.family_name = name.family_name if name else None
    if data.external_id is not None:
        user.external_id = data.external_id or None
    if data.active is not None:
        user.active = data.active
    user.updated_at = utcnow()

    await _flush(db, "Failed to update user", conflict="User with this email already exists")
    logger.info("SCIM replaced user %s", user.id)
    return user_to_resource(user, base_url)


async def patch_user(
    db: AsyncSession, ctx: ScimContext, user_id: str, patch: ScimPatchRequest, base_url: str
) -> dict:
    user = await _get_user(db, ctx, user_id)
    email_before = user.email

    apply_user_patch(user, patch.operations)

    # A rename must not collide with another identity's email.
    if user.email != email_before and await _email_taken(db, user.email, exclude_user_id=user.id):
        raise ScimConflictError("User with this email already exists")

    await _flush(db, "Failed to update user", conflict="User with this email already exists")
    return user_to_resource(user, base_url)


async def delete_user(db: AsyncSession, ctx: ScimContext, user_id: str) -> None:
    user = await _get_user(db, ctx, user_id)
    uid = user.id
    try:
        await db.execute(delete(APIKey).where(APIKey.user_id == uid))
        await db.execute(delete(GroupMembership).where(GroupMembership.user_id == uid))
        await db.execute(delete(OIDCIdentity).where(OIDCIdentity.user_id == uid))
        await db.execute(delete(Link).where(Link.created_by_id == uid))
        await db.execute(delete(OrganizationMembership).where(OrganizationMembership.user_id == uid))
        await db.delete(user)
        await db.flush()
    except SQLAlchemyError as exc:
        raise ScimInternalError("Failed to delete user") from exc
    logger.info("SCIM deleted user %s from organization %s", uid, ctx.organization_id)


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


def _groups_in(ctx: ScimContext):
    return select(Group).where(Group.organization_id == ctx.organization_id)


async def _get_group(db: AsyncSession, ctx: ScimContext, group_id: str) -> Group:
    gid = _parse_id(group_id)
    if gid is None:
        raise ScimNotFoundError(f"Group {group_id} not found")
    result = await db.execute(_groups_in(ctx).where(Group.id == gid))
    group = result.scalar_one_or_none()
    if group is None:
        raise ScimNotFoundError(f"Group {group_id} not found")
    return group


async def _group_detail(db: AsyncSession, group: Group, base_url: str) -> dict:
    return group_to_resource(group, base_url, members=await load_group_members(db, group, base_url))


async def list_groups(
    db: AsyncSession,
    ctx: ScimContext,
    filter_str: Optional[str],
    start_index: int,
    count: int,
    base_url: str,
) -> dict:
    query = _apply_filter(_groups_in(ctx), filter_str, GROUP_FILTER_ATTRIBUTES)

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
    result = await db.execute(query.order_by(Group.id.asc()).offset(start_index - 1).limit(count))
    resources = [group_to_resource(g, base_url) for g in result.scalars().all()]
    return _list_response(resources, total, start_index)


async def get_group(db: AsyncSession, ctx: ScimContext, group_id: str, base_url: str) -> dict:
    return await _group_detail(db, await _get_group(db, ctx, group_id), base_url)


async def create_group(db: AsyncSession, ctx: ScimContext, data: ScimGroupRequest, base_url: str) -> dict:
    if not data.display_name:
        raise ScimValidationError("displayName is required")
    membership.check_member_limit(len(data.members))
    user_ids = await membership.resolve_member_ids(db, ctx.organization_id, [m.value for m in data.members])

    group = Group(
        organization_id=ctx.organization_id,
        external_id=data.external_id or None,
        name=data.display_name,
        description="SCIM-provisioned group",
    )
    db.add(group)
    await _flush(db, "Failed to create group")
    for uid in user_ids:
        await membership.ensure_member(db, group.id, uid)

    logger.info("SCIM created group %s with %d members", group.id, len(user_ids))
    return await _group_detail(db, group, base_url)


async def replace_group(
    db: AsyncSession, ctx: ScimContext, group_id: str, data: ScimGroupRequest, base_url: str
) -> dict:
    group = await _get_group(db, ctx, group_id)
    if not data.display_name:
        raise ScimValidationError("displayName is required")
    membership.check_member_limit(len(data.members))
    user_ids = await membership.resolve_member_ids(db, ctx.organization_id, [m.value for m in data.members])

    group.name = data.display_name
    if data.external_id is not None:
        group.external_id = data.external_id or None
    try:
        await membership.replace_members(db, group.id, user_ids)
    except SQLAlchemyError as exc:
        raise ScimInternalError("Failed to update group") from exc
    group.updated_at = utcnow()

    await _flush(db, "Failed to update group")
    logger.info("SCIM replaced group %s with %d members", group.id, len(user_ids))
    return await _group_detail(db, group, base_url)


async def patch_group(
    db: AsyncSession, ctx: ScimContext, group_id: str, patch: ScimPatchRequest, base_url: str
) -> dict:
    group = await _get_group(db, ctx, group_id)
    membership.check_member_limit(count_patch_members(patch.operations))

    try:
        await apply_group_patch(db, group, patch.operations, ctx.organization_id)
    except SQLAlchemyError as exc:
        raise ScimInternalError("Failed to update group") from exc

    await _flush(db, "Failed to update group")
    return await _group_detail(db, group, base_url)


async def delete_group(db: AsyncSession, ctx: ScimContext, group_id: str) -> None:
    group = await _get_group(db, ctx, group_id)
    gid = group.id
    try:
        await db.execute(delete(GroupMembership).where(GroupMembership.group_id == gid))
        await db.execute(delete(Link).where(Link.group_id == gid))
        await db.delete(group)
        await db.flush()
    except SQLAlchemyError as exc:
        raise ScimInternalError("Failed to delete group") from exc
    logger.info("SCIM deleted group %s from organization %s", gid, ctx.organization_id)


# ---------------------------------------------------------------------------
# Bearer tokens
# ---------------------------------------------------------------------------


async def create_scim_token(
    db: AsyncSession,
    organization_id: int,
    description: str,
    expires_in_days: Optional[int] = None,
) -> Tuple[ScimToken, str]:
    plaintext_token, token_hash, token_prefix = generate_token()

    expires_at = None
    if expires_in_days is not None:
        expires_at = utcnow() + timedelta(days=expires_in_days)

    token_record = ScimToken(
        organization_id=organization_id,
        token_hash=token_hash,
        token_prefix=token_prefix,
        description=description,
        expires_at=expires_at,
    )
    db.add(token_record)
    await db.flush()

    logger.info("Issued SCIM token %s... for organization %s", token_prefix, organization_id)
    return token_record, plaintext_token


async def list_scim_tokens(db: AsyncSession, organization_id: Optional[int] = None) -> List[ScimToken]:
    query = select(ScimToken)
    if organization_id is not None:
        query = query.where(ScimToken.organization_id == organization_id)
    result = await db.execute(query.order_by(ScimToken.created_at.desc(), ScimToken.id.desc()))
    return list(result.scalars().all())


async def delete_scim_token(db: AsyncSession, token_id: int) -> bool:
    result = await db.execute(select(ScimToken).where(ScimToken.id == token_id))
    token_record = result.scalar_one_or_none()
    if token_record is None:
        return False

    await db.delete(token_record)
    await db.flush()
    return True
