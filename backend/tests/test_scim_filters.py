"""
Tests for the SCIM filter parser.
"""

import pytest

from shorty.scim.filters import FilterClause, member_value_from_path, parse_filter


class TestParseFilter:
    def test_simple_equality(self):
        assert parse_filter('userName eq "jane@example.com"') == FilterClause("userName", "jane@example.com")

    def test_operator_is_case_insensitive(self):
        clause = parse_filter('externalId EQ "abc-123"')
        assert clause.attribute == "externalId"
        assert clause.value == "abc-123"

    def test_value_may_contain_spaces(self):
        assert parse_filter('displayName eq "Sales Team"').value == "Sales Team"

    def test_empty_value(self):
        assert parse_filter('externalId eq ""').value == ""

    def test_surrounding_whitespace(self):
        assert parse_filter('   userName eq "a@b.c"  ').attribute == "userName"

    def test_tabs_around_operator(self):
        assert parse_filter('userName\teq\t"jane@example.com"') == FilterClause("userName", "jane@example.com")

    def test_repeated_spaces_around_operator(self):
        assert parse_filter('externalId   eq   "abc"').value == "abc"

    @pytest.mark.parametrize(
        "filter_string",
        [
            None,
            "",
            "   ",
            'userName co "jane"',
            'userName sw "j"',
            "userName eq jane",
            'userName eq "unterminated',
            'eq "value"',
        ],
    )
    def test_unsupported_filters_parse_to_none(self, filter_string):
        assert parse_filter(filter_string) is None

    def test_compound_filter_uses_first_equality(self):
        clause = parse_filter('userName eq "a@b.c" and active eq "true"')
        assert clause.attribute == "userName"
        assert clause.value == "a@b.c"


class TestValuePath:
    def test_bracketed_member_filter(self):
        clause = parse_filter('members[value eq "42"]')
        assert clause.parent == "members"
        assert clause.attribute == "value"
        assert clause.value == "42"

    def test_member_value_from_path(self):
        assert member_value_from_path('members[value eq "7"]') == "7"

    def test_member_value_from_path_is_case_insensitive(self):
        assert member_value_from_path('Members[Value eq "7"]') == "7"

    @pytest.mark.parametrize(
        "path",
        [None, "members", 'emails[type eq "work"]', 'members[display eq "Jane"]', "members[value eq 7]"],
    )
    def test_member_value_from_other_paths(self, path):
        assert member_value_from_path(path) is None
