"""Tests for role-based ability resolution."""

import pytest

from grantportal.service.abilities import AbilityResolver, Rule, ROLE_RULES
from grantportal.storage.models import Role


@pytest.fixture
def resolver():
    return AbilityResolver()


class TestApplicant:
    def test_owns_own_organization(self, resolver):
        ability = resolver.resolve(["APPLICANT"], user_id="u1", organization_id="org-1")
        assert ability.can("update", "Organization", {"createdBy": "u1"})
        assert not ability.can("update", "Organization", {"createdBy": "u2"})

    def test_applications_scoped_to_organization(self, resolver):
        ability = resolver.resolve([Role.APPLICANT], user_id="u1", organization_id="org-1")
        assert ability.can("create", "GrantApplication", {"applicantOrganization": "org-1"})
        assert not ability.can("read", "GrantApplication", {"applicantOrganization": "org-2"})
        assert not ability.can("delete", "GrantApplication", {"applicantOrganization": "org-1"})

    def test_missing_identity_never_matches(self, resolver):
        """A principal without an organization cannot match records with no organization."""
        ability = resolver.resolve(["APPLICANT"], user_id="u1")
        assert not ability.can("read", "GrantApplication", {"applicantOrganization": None})

    def test_type_level_question_is_permissive_for_conditional_grants(self, resolver):
        ability = resolver.resolve(["APPLICANT"], user_id="u1", organization_id="org-1")
        assert ability.can("read", "GrantApplication")
        assert not ability.can("read", "Ministry")

    def test_can_edit_own_user_only(self, resolver):
        ability = resolver.resolve(["APPLICANT"], user_id="u1")
        assert ability.can("update", "User", {"id": "u1"})
        assert ability.cannot("update", "User", {"id": "u2"})


class TestInternal:
    def test_same_ministry_read_and_approve(self, resolver):
        ability = resolver.resolve(["INTERNAL"], user_id="u1", ministry_id="m-1")
        assert ability.can("read", "GrantAward", {"ministryId": "m-1"})
        assert ability.can("approve", "GrantPayment", {"ministryId": "m-1"})
        assert not ability.can("approve", "GrantPayment", {"ministryId": "m-2"})
        assert ability.can("create", "GrantProgram")
        assert not ability.can("create", "Ministry")


class TestCombinedRoles:
    def test_permissions_are_additive(self, resolver):
        ability = resolver.resolve(["APPLICANT", "ADVANCED"], user_id="u1")
        assert ability.can("create", "FiscalYear")
        assert ability.can("update", "User", {"id": "u1"})

    def test_role_names_are_case_insensitive(self, resolver):
        ability = resolver.resolve(["advanced"], user_id="u1")
        assert ability.can("delete", "Branch")

    def test_unknown_role_rejected(self, resolver):
        with pytest.raises(ValueError):
            resolver.resolve(["JANITOR"], user_id="u1")

    def test_empty_role_set_rejected(self, resolver):
        with pytest.raises(ValueError):
            resolver.resolve([], user_id="u1")


class TestSuperAdmin:
    def test_manage_all(self, resolver):
        ability = resolver.resolve(["SUPER_ADMIN"], user_id="root")
        assert ability.can("delete", "GrantProgram")
        assert ability.can("approve", "GrantApplication", {"ministryId": "anything"})
        assert ability.can("frobnicate", "Whatever")

    def test_cannot_delete_a_super_admin(self, resolver):
        """The global restriction overrides even manage-all."""
        ability = resolver.resolve(["SUPER_ADMIN"], user_id="root")
        assert not ability.can("delete", "User", {"roles": ["SUPER_ADMIN"]})
        assert not ability.can("delete", "User", {"roles": ["super_admin", "INTERNAL"]})
        assert ability.can("delete", "User", {"roles": ["APPLICANT"]})

    def test_conditional_restriction_ignored_for_type_check(self, resolver):
        ability = resolver.resolve(["ADMINISTRATOR"], user_id="a1")
        assert ability.can("delete", "User")
        assert not ability.can("delete", "User", {"roles": [Role.SUPER_ADMIN]})


class TestResolverTable:
    def test_anonymous_reads_reference_data_only(self, resolver):
        ability = resolver.anonymous()
        assert ability.can("read", "FiscalYear")
        assert ability.can("read", "Ministry")
        assert not ability.can("update", "FiscalYear")
        assert not ability.can("read", "GrantApplication")

    def test_rule_table_is_read_only(self):
        with pytest.raises(TypeError):
            ROLE_RULES[Role.APPLICANT] = ()  # type: ignore[index]

    def test_compiled_rules_shared_per_role_set(self, resolver):
        first = resolver.resolve(["INTERNAL", "ADVANCED"], user_id="a")
        second = resolver.resolve(["ADVANCED", "INTERNAL"], user_id="b")
        assert first.rules is second.rules
        assert first.identity["id"] == "a"
        assert second.identity["id"] == "b"

    def test_custom_table(self):
        resolver = AbilityResolver(
            role_rules={Role.APPLICANT: (Rule(frozenset({"read"}), frozenset({"Thing"})),)},
            global_rules=(),
        )
        ability = resolver.resolve(["APPLICANT"])
        assert ability.can("read", "Thing")
        assert not ability.can("read", "Organization")
