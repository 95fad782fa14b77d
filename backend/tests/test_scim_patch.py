"""
Tests for applying SCIM PATCH operations to a user, without a database.

Group patches touch memberships and are covered through the API in
test_scim_groups.py.
"""

import pytest
from pydantic import ValidationError

from shorty.auth.models import User
from shorty.scim.patch import apply_user_patch, count_patch_members
from shorty.scim.schemas import ScimPatchOperation, ScimPatchRequest


def _user() -> User:
    return User(
        id=1,
        email="jane@example.com",
        name="Jane Doe",
        given_name="Jane",
        family_name="Doe",
        external_id="ext-1",
        active=True,
    )


def _ops(*operations: dict) -> list[ScimPatchOperation]:
    return ScimPatchRequest.model_validate({"Operations": list(operations)}).operations


class TestPatchRequestParsing:
    def test_op_is_lowercased(self):
        assert _ops({"op": "Replace", "path": "active", "value": False})[0].op == "replace"

    def test_unknown_op_rejected(self):
        with pytest.raises(ValidationError):
            _ops({"op": "move", "path": "active", "value": False})

    def test_operations_required(self):
        with pytest.raises(ValidationError):
            ScimPatchRequest.model_validate({"schemas": []})


class TestUserPatch:
    def test_replace_active(self):
        user = apply_user_patch(_user(), _ops({"op": "replace", "path": "active", "value": False}))
        assert user.active is False

    @pytest.mark.parametrize("value, expected", [("False", False), ("True", True), ("false", False)])
    def test_active_accepts_string_booleans(self, value, expected):
        user = _user()
        user.active = not expected
        apply_user_patch(user, _ops({"op": "replace", "path": "active", "value": value}))
        assert user.active is expected

    def test_active_ignores_non_boolean(self):
        user = apply_user_patch(_user(), _ops({"op": "replace", "path": "active", "value": "maybe"}))
        assert user.active is True

    def test_paths_are_case_insensitive(self):
        user = apply_user_patch(_user(), _ops({"op": "replace", "path": "NAME.GIVENNAME", "value": "Janet"}))
        assert user.given_name == "Janet"

    def test_add_behaves_like_replace(self):
        user = apply_user_patch(_user(), _ops({"op": "add", "path": "displayName", "value": "JD"}))
        assert user.name == "JD"

    def test_user_name(self):
        user = apply_user_patch(_user(), _ops({"op": "replace", "path": "userName", "value": "new@example.com"}))
        assert user.email == "new@example.com"

    def test_blank_user_name_ignored(self):
        user = apply_user_patch(_user(), _ops({"op": "replace", "path": "userName", "value": "  "}))
        assert user.email == "jane@example.com"

    def test_name_object(self):
        user = apply_user_patch(
            _user(),
            _ops({"op": "replace", "path": "name", "value": {"givenName": "Janet", "familyName": "Roe"}}),
        )
        assert user.given_name == "Janet"
        assert user.family_name == "Roe"

    def test_formatted_name_sets_display_name(self):
        user = apply_user_patch(_user(), _ops({"op": "replace", "path": "name.formatted", "value": "Janet Roe"}))
        assert user.name == "Janet Roe"

    def test_email_value_path(self):
        user = apply_user_patch(
            _user(),
            _ops({"op": "replace", "path": 'emails[type eq "work"].value', "value": "work@example.com"}),
        )
        assert user.email == "work@example.com"

    def test_emails_list_uses_primary(self):
        user = apply_user_patch(
            _user(),
            _ops(
                {
                    "op": "replace",
                    "path": "emails",
                    "value": [{"value": "a@example.com"}, {"value": "b@example.com", "primary": True}],
                }
            ),
        )
        assert user.email == "b@example.com"

    def test_pathless_map(self):
        user = apply_user_patch(
            _user(),
            _ops(
                {
                    "op": "replace",
                    "value": {"active": False, "externalId": "ext-9", "name": {"familyName": "Roe"}},
                }
            ),
        )
        assert user.active is False
        assert user.external_id == "ext-9"
        assert user.family_name == "Roe"
        assert user.given_name == "Jane"

    def test_pathless_non_object_ignored(self):
        user = apply_user_patch(_user(), _ops({"op": "replace", "value": "nonsense"}))
        assert user.email == "jane@example.com"

    def test_unknown_path_ignored(self):
        user = apply_user_patch(_user(), _ops({"op": "replace", "path": "title", "value": "CEO"}))
        assert user.name == "Jane Doe"

    def test_wrong_value_type_ignored(self):
        user = apply_user_patch(_user(), _ops({"op": "replace", "path": "displayName", "value": 42}))
        assert user.name == "Jane Doe"

    def test_remove_clears_optional_attributes(self):
        user = apply_user_patch(
            _user(),
            _ops(
                {"op": "remove", "path": "externalId"},
                {"op": "remove", "path": "name.givenName"},
                {"op": "remove", "path": "name.familyName"},
            ),
        )
        assert user.external_id is None
        assert user.given_name is None
        assert user.family_name is None

    def test_remove_required_attribute_ignored(self):
        user = apply_user_patch(_user(), _ops({"op": "remove", "path": "userName"}))
        assert user.email == "jane@example.com"

    def test_operations_apply_in_order(self):
        user = apply_user_patch(
            _user(),
            _ops(
                {"op": "replace", "path": "active", "value": False},
                {"op": "replace", "path": "active", "value": True},
            ),
        )
        assert user.active is True

    def test_updated_at_bumped(self):
        user = apply_user_patch(_user(), _ops({"op": "replace", "path": "title", "value": "ignored"}))
        assert user.updated_at is not None


class TestCountPatchMembers:
    def test_counts_path_and_pathless_members(self):
        operations = _ops(
            {"op": "add", "path": "members", "value": [{"value": "1"}, {"value": "2"}]},
            {"op": "replace", "value": {"members": [{"value": "3"}]}},
            {"op": "remove", "path": 'members[value eq "4"]'},
        )
        assert count_patch_members(operations) == 3

    def test_single_object_value(self):
        assert count_patch_members(_ops({"op": "add", "path": "members", "value": {"value": "1"}})) == 1
