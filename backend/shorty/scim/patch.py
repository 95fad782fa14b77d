"""SCIM PATCH engine (RFC 7644 §3.5.2).

Operations are applied in order to an ORM object that belongs to the request
session, so everything an operation list does commits or rolls back together.

Paths are matched case-insensitively against a fixed allow-list per resource
type. A path outside the list, or a value of the wrong JSON shape for its
path, is skipped rather than rejected: identity providers routinely PATCH
attributes this application does not store.

The operation name is the exception: an `op` other than add, replace or
remove is not skipped like an unknown path. It fails validation of the
whole request (400) before anything is applied.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy.ext.asyncio import AsyncSession

from shorty.auth.models import User
from shorty.common.base_models import utcnow
from shorty.groups.models import Group
from shorty.scim import members as membership
from shorty.scim.filters import member_value_from_path
from shorty.scim.schemas import ScimPatchOperation

logger = logging.getLogger(__name__)

PatchValue = Union[None, bool, int, float, str, Dict[str, "PatchValue"], List["PatchValue"]]


# ---------------------------------------------------------------------------
# Value narrowing
# ---------------------------------------------------------------------------


def _as_str(value: PatchValue) -> Optional[str]:
    return value if isinstance(value, str) else None


def _as_bool(value: PatchValue) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    # Azure AD sends booleans as "True"/"False".
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def _as_object(value: PatchValue) -> Optional[Dict[str, PatchValue]]:
    return value if isinstance(value, dict) else None


def _as_list(value: PatchValue) -> List[PatchValue]:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return [value]
    return []


def _member_values(value: PatchValue) -> List[str]:
    values = []
    for item in _as_list(value):
        if isinstance(item, dict) and item.get("value") is not None:
            values.append(str(item["value"]))
    return values


def _normalize(path: Optional[str]) -> str:
    return (path or "").strip().lower()


def _is_email_value_path(path: str) -> bool:
    # emails[type eq "work"].value (Azure AD) / emails[primary eq true].value (Okta)
    return path.startswith("emails[") and path.endswith("].value")


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------


def _set_active(user: User, value: PatchValue) -> None:
    active = _as_bool(value)
    if active is not None:
        user.active = active


def _set_user_name(user: User, value: PatchValue) -> None:
    email = _as_str(value)
    if email and email.strip():
        user.email = email.strip()


def _set_display_name(user: User, value: PatchValue) -> None:
    name = _as_str(value)
    if name:
        user.name = name


def _set_external_id(user: User, value: PatchValue) -> None:
    external_id = _as_str(value)
    if external_id is not None:
        user.external_id = external_id or None


def _set_given_name(user: User, value: PatchValue) -> None:
    given_name = _as_str(value)
    if given_name is not None:
        user.given_name = given_name


def _set_family_name(user: User, value: PatchValue) -> None:
    family_name = _as_str(value)
    if family_name is not None:
        user.family_name = family_name


def _set_name(user: User, value: PatchValue) -> None:
    name = _as_object(value)
    if name is None:
        return
    for key, sub_value in name.items():
        setter = _USER_SETTERS.get(f"name.{key.lower()}")
        if setter is not None:
            setter(user, sub_value)


def _set_emails(user: User, value: PatchValue) -> None:
    emails = [e for e in _as_list(value) if isinstance(e, dict) and isinstance(e.get("value"), str)]
    if not emails:
        return
    primary = next((e for e in emails if _as_bool(e.get("primary")) is True), emails[0])
    _set_user_name(user, primary["value"])


_USER_SETTERS: Dict[str, Callable[[User, PatchValue], None]] = {
    "active": _set_active,
    "username": _set_user_name,
    "displayname": _set_display_name,
    "externalid": _set_external_id,
    "name": _set_name,
    "name.givenname": _set_given_name,
    "name.familyname": _set_family_name,
    "name.formatted": _set_display_name,
    "emails": _set_emails,
}

_USER_REMOVABLE = {
    "externalid": "external_id",
    "name.givenname": "given_name",
    "name.familyname": "family_name",
}


def _set_user_attribute(user: User, path: Optional[str], value: PatchValue) -> None:
    key = _normalize(path)

    if not key:
        attributes = _as_object(value)
        if attributes is None:
            logger.debug("Ignoring path-less user patch with non-object value")
            return
        for attribute, attribute_value in attributes.items():
            if _normalize(attribute):
                _set_user_attribute(user, attribute, attribute_value)
        return

    if _is_email_value_path(key):
        _set_user_name(user, value)
        return

    setter = _USER_SETTERS.get(key)
    if setter is None:
        logger.debug("Ignoring unsupported user patch path %r", path)
        return
    setter(user, value)


def _remove_user_attribute(user: User, path: Optional[str]) -> None:
    column = _USER_REMOVABLE.get(_normalize(path))
    if column is None:
        logger.debug("Ignoring remove on user path %r", path)
        return
    setattr(user, column, None)


def apply_user_patch(user: User, operations: Sequence[ScimPatchOperation]) -> User:
    """Apply PATCH operations to ``user`` in place.

    ``add`` and ``replace`` behave identically: no User attribute this service
    stores is multi-valued. ``remove`` only clears externalId, givenName and
    familyName. ``updated_at`` is bumped once at the end.
    """
    for operation in operations:
        if operation.op == "remove":
            _remove_user_attribute(user, operation.path)
        else:
            _set_user_attribute(user, operation.path, operation.value)

    user.updated_at = utcnow()
    return user


# ---------------------------------------------------------------------------
# Group
# ---------------------------------------------------------------------------


class _GroupPatcher:
    def __init__(self, db: AsyncSession, group: Group, organization_id: int):
        self.db = db
        self.group = group
        self.organization_id = organization_id

    async def _resolve(self, value: PatchValue) -> List[int]:
        return await membership.resolve_member_ids(self.db, self.organization_id, _member_values(value))

    def _set_scalar(self, key: str, value: PatchValue) -> bool:
        text = _as_str(value)
        if key == "displayname":
            if text:
                self.group.name = text
            return True
        if key == "externalid":
            if text is not None:
                self.group.external_id = text or None
            return True
        return False

    async def _set_attributes(self, value: PatchValue, members_op: str) -> None:
        attributes = _as_object(value)
        if attributes is None:
            logger.debug("Ignoring path-less group patch with non-object value")
            return
        for attribute, attribute_value in attributes.items():
            key = _normalize(attribute)
            if key == "members":
                if members_op == "replace":
                    await self.replace(key, attribute_value)
                else:
                    await self.add(key, attribute_value)
            elif not self._set_scalar(key, attribute_value):
                logger.debug("Ignoring unsupported group attribute %r", attribute)

    async def replace(self, key: str, value: PatchValue) -> None:
        if not key:
            await self._set_attributes(value, "replace")
        elif key == "members":
            user_ids = await self._resolve(value)
            await membership.replace_members(self.db, self.group.id, user_ids)
        elif not self._set_scalar(key, value):
            logger.debug("Ignoring unsupported group patch path %r", key)

    async def add(self, key: str, value: PatchValue) -> None:
        if not key:
            await self._set_attributes(value, "add")
        elif key == "members":
            for user_id in await self._resolve(value):
                await membership.ensure_member(self.db, self.group.id, user_id)
        elif not self._set_scalar(key, value):
            logger.debug("Ignoring unsupported group patch path %r", key)

    async def remove(self, path: Optional[str], value: PatchValue) -> None:
        key = _normalize(path)
        if key == "members":
            listed = _member_values(value)
            if not listed:
                await membership.remove_all_members(self.db, self.group.id)
                return
            # Azure AD removes individual members as path "members" plus a value list.
            for member_value in listed:
                await self._remove_one(member_value)
            return

        member_value = member_value_from_path(path)
        if member_value is not None:
            await self._remove_one(member_value)
        elif key == "externalid":
            self.group.external_id = None
        else:
            logger.debug("Ignoring remove on group path %r", path)

    async def _remove_one(self, member_value: str) -> None:
        try:
            user_id = int(member_value.strip())
        except ValueError:
            logger.debug("Ignoring remove of unparseable member id %r", member_value)
            return
        await membership.remove_member(self.db, self.group.id, user_id)


async def apply_group_patch(
    db: AsyncSession,
    group: Group,
    operations: Sequence[ScimPatchOperation],
    organization_id: int,
) -> Group:
    """Apply PATCH operations to ``group`` and its memberships.

    Membership changes are flushed as they happen; scalar changes and the
    ``updated_at`` bump are left for the caller's single flush.
    """
    patcher = _GroupPatcher(db, group, organization_id)
    for operation in operations:
        if operation.op == "replace":
            await patcher.replace(_normalize(operation.path), operation.value)
        elif operation.op == "add":
            await patcher.add(_normalize(operation.path), operation.value)
        else:
            await patcher.remove(operation.path, operation.value)

    group.updated_at = utcnow()
    return group


def count_patch_members(operations: Sequence[ScimPatchOperation]) -> int:
    """Number of member references carried by a PATCH body."""
    total = 0
    for operation in operations:
        value: Any = operation.value
        if _normalize(operation.path) == "members":
            total += len(_member_values(value))
        elif isinstance(value, dict):
            for key, sub_value in value.items():
                if _normalize(key) == "members":
                    total += len(_member_values(sub_value))
    return total
