"""Group membership reconciliation.

All helpers run inside the caller's transaction and only flush; commit and
rollback belong to the request.
"""

import logging
from typing import Iterable, List

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from shorty.config import settings
from shorty.groups.models import GroupMembership, GroupRole
from shorty.organizations.models import OrganizationMembership
from shorty.scim.errors import ScimValidationError

logger = logging.getLogger(__name__)


def check_member_limit(count: int) -> None:
    if count > settings.scim_max_members:
        raise ScimValidationError(
            f"Too many members in one request ({count}); the limit is {settings.scim_max_members}"
        )


async def resolve_member_ids(db: AsyncSession, organization_id: int, values: Iterable[str]) -> List[int]:
    """Map SCIM member values to ids of users in the organization.

    Unparseable ids, duplicates and users outside the organization are dropped.
    Order of first appearance is kept.
    """
    requested: List[int] = []
    for value in values:
        try:
            user_id = int(str(value).strip())
        except ValueError:
            logger.debug("Skipping unparseable member id %r", value)
            continue
        if user_id not in requested:
            requested.append(user_id)

    if not requested:
        return []

    check_member_limit(len(requested))

    result = await db.execute(
        select(OrganizationMembership.user_id).where(
            OrganizationMembership.organization_id == organization_id,
            OrganizationMembership.user_id.in_(requested),
        )
    )
    known = set(result.scalars().all())
    skipped = [user_id for user_id in requested if user_id not in known]
    if skipped:
        logger.debug("Skipping member ids outside organization %s: %s", organization_id, skipped)
    return [user_id for user_id in requested if user_id in known]


async def ensure_member(
    db: AsyncSession, group_id: int, user_id: int, role: GroupRole = GroupRole.member
) -> GroupMembership:
    result = await db.execute(
        select(GroupMembership).where(GroupMembership.group_id == group_id, GroupMembership.user_id == user_id)
    )
    membership = result.scalar_one_or_none()
    if membership is not None:
        return membership

    membership = GroupMembership(group_id=group_id, user_id=user_id, role=role)
    db.add(membership)
    await db.flush()
    return membership


async def remove_member(db: AsyncSession, group_id: int, user_id: int) -> None:
    await db.execute(
        delete(GroupMembership).where(GroupMembership.group_id == group_id, GroupMembership.user_id == user_id)
    )


async def remove_all_members(db: AsyncSession, group_id: int) -> None:
    await db.execute(delete(GroupMembership).where(GroupMembership.group_id == group_id))


async def replace_members(db: AsyncSession, group_id: int, user_ids: Iterable[int]) -> None:
    # Delete and re-insert in the same transaction; readers see either the old
    # or the new set once the request commits.
    await remove_all_members(db, group_id)
    for user_id in dict.fromkeys(user_ids):
        db.add(GroupMembership(group_id=group_id, user_id=user_id, role=GroupRole.member))
    await db.flush()
