"""Translation between the relational model and SCIM resource shapes."""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shorty.auth.models import User
from shorty.groups.models import Group, GroupMembership
from shorty.scim.schemas import SCIM_GROUP_SCHEMA, SCIM_USER_SCHEMA, ScimUserRequest

USERS_PATH = "/scim/v2/Users"
GROUPS_PATH = "/scim/v2/Groups"


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _meta(resource_type: str, created, modified, location: str) -> dict:
    meta = {"resourceType": resource_type, "location": location}
    if created is not None:
        meta["created"] = _isoformat(created)
    if modified is not None:
        meta["lastModified"] = _isoformat(modified)
    return meta


def user_location(base_url: str, user_id) -> str:
    return f"{base_url}{USERS_PATH}/{user_id}"


def group_location(base_url: str, group_id) -> str:
    return f"{base_url}{GROUPS_PATH}/{group_id}"


def derive_display_name(
    display_name: Optional[str],
    formatted: Optional[str],
    given_name: Optional[str],
    family_name: Optional[str],
) -> Optional[str]:
    if display_name:
        return display_name
    if formatted:
        return formatted
    if given_name or family_name:
        return f"{given_name or ''} {family_name or ''}".strip()
    return None


def user_to_resource(user: User, base_url: str) -> dict:
    name = {}
    if user.given_name:
        name["givenName"] = user.given_name
    if user.family_name:
        name["familyName"] = user.family_name

    resource = {
        "schemas": [SCIM_USER_SCHEMA],
        "id": str(user.id),
        "userName": user.email,
        "displayName": user.name or user.email,
        "name": name,
        "emails": [{"value": user.email, "type": "work", "primary": True}] if user.email else [],
        "active": bool(user.active),
        "meta": _meta("User", user.created_at, user.updated_at, user_location(base_url, user.id)),
    }
    if user.external_id:
        resource["externalId"] = user.external_id
    return resource


def user_from_request(data: ScimUserRequest, email: Optional[str] = None) -> User:
    """Build an unsaved User from a create request.

    ``email`` overrides the address resolved from ``userName`` / ``emails``;
    callers validate that one of them is present.
    """
    email = email or data.primary_email() or ""
    name = data.name
    display_name = derive_display_name(
        data.display_name,
        name.formatted if name else None,
        name.given_name if name else None,
        name.family_name if name else None,
    )
    return User(
        email=email,
        name=display_name or email.split("@")[0],
        given_name=name.given_name if name else None,
        family_name=name.family_name if name else None,
        external_id=data.external_id or None,
        active=True if data.active is None else data.active,
    )


def group_to_resource(group: Group, base_url: str, members: Optional[List[dict]] = None) -> dict:
    """Render a Group. ``members`` is only passed for detail views."""
    resource = {
        "schemas": [SCIM_GROUP_SCHEMA],
        "id": str(group.id),
        "displayName": group.name,
        "meta": _meta("Group", group.created_at, group.updated_at, group_location(base_url, group.id)),
    }
    if group.external_id:
        resource["externalId"] = group.external_id
    if members is not None:
        resource["members"] = members
    return resource


async def load_group_members(db: AsyncSession, group: Group, base_url: str) -> List[dict]:
    result = await db.execute(
        select(GroupMembership.user_id, User.name, User.email)
        .join(User, User.id == GroupMembership.user_id)
        .where(GroupMembership.group_id == group.id)
    )
    return [
        {
            "value": str(user_id),
            "$ref": user_location(base_url, user_id),
            "display": name or email,
        }
        for user_id, name, email in result.all()
    ]
