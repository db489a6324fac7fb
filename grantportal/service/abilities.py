from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Tuple

from grantportal.storage.models import Role

MANAGE = "manage"
ALL = "all"


@dataclass(frozen=True)
class OwnedBy:
    """Resource attribute must equal an attribute of the requesting principal."""

    field: str
    principal_attr: str

    def matches(self, attributes: Mapping[str, Any], identity: Mapping[str, Optional[str]]) -> bool:
        expected = identity.get(self.principal_attr)
        return expected is not None and attributes.get(self.field) == expected


@dataclass(frozen=True)
class HasMember:
    """Resource attribute is a collection containing ``value`` (case-insensitive)."""

    field: str
    value: str

    def matches(self, attributes: Mapping[str, Any], identity: Mapping[str, Optional[str]]) -> bool:
        members = attributes.get(self.field) or ()
        if isinstance(members, str):
            members = (members,)
        normalized = {str(getattr(m, "value", m)).upper() for m in members}
        return self.value.upper() in normalized


@dataclass(frozen=True)
class Rule:
    actions: frozenset
    subjects: frozenset
    conditions: Tuple[Any, ...] = ()
    inverted: bool = False

    def applies_to(self, action: str, subject: str) -> bool:
        return (action in self.actions or MANAGE in self.actions) and (
            subject in self.subjects or ALL in self.subjects
        )


def _can(actions, subjects, *conditions) -> Rule:
    return Rule(_as_set(actions), _as_set(subjects), tuple(conditions))


def _cannot(actions, subjects, *conditions) -> Rule:
    return Rule(_as_set(actions), _as_set(subjects), tuple(conditions), inverted=True)


def _as_set(value: str | Iterable[str]) -> frozenset:
    return frozenset([value]) if isinstance(value, str) else frozenset(value)


_CRUD = ("create", "read", "update", "delete")
_CRU = ("create", "read", "update")
_MINISTRY_RECORDS = (
    "Organization",
    "Contact",
    "GrantProgram",
    "GrantApplication",
    "GrantAward",
    "GrantPayment",
    "GrantReport",
    "ApplicationReview",
    "ReviewCommittee",
    "PublicDisclosure",
)
_REFERENCE_DATA = ("Metadata", "FiscalYear", "Department", "Branch")
_SAME_MINISTRY = OwnedBy("ministryId", "ministry_id")
_OWN_ORGANIZATION = OwnedBy("organization", "organization_id")

PUBLIC_RULES: Tuple[Rule, ...] = (
    _can("read", ("Metadata", "FiscalYear", "Ministry", "Department", "Branch")),
)

ROLE_RULES: Mapping[Role, Tuple[Rule, ...]] = MappingProxyType(
    {
        Role.APPLICANT: (
            _can(_CRUD, "Organization", OwnedBy("createdBy", "id")),
            _can(_CRUD, "Contact", _OWN_ORGANIZATION),
            _can(_CRUD, "Role", OwnedBy("createdBy", "id")),
            _can(_CRU, "GrantApplication", OwnedBy("applicantOrganization", "organization_id")),
            _can(_CRU, "GrantReport", OwnedBy("submittedBy", "organization_id")),
            _can("update", "User", OwnedBy("id", "id")),
        ),
        Role.INTERNAL: (
            _can("read", (*_MINISTRY_RECORDS, "Role", "AuditTrail", "User"), _SAME_MINISTRY),
            _can(("update", "delete"), _MINISTRY_RECORDS, _SAME_MINISTRY),
            _can(
                "create",
                (
                    "GrantProgram",
                    "GrantAward",
                    "GrantPayment",
                    "ApplicationReview",
                    "ReviewCommittee",
                    "PublicDisclosure",
                ),
            ),
            _can("approve", ("GrantApplication", "GrantPayment"), _SAME_MINISTRY),
        ),
        Role.ADVANCED: (
            _can(("create", "update", "delete"), _REFERENCE_DATA),
        ),
        Role.ADMINISTRATOR: (
            _can(_CRUD, ("Ministry", "User", "Role")),
        ),
        Role.SUPER_ADMIN: (
            _can(MANAGE, ALL),
        ),
    }
)

# Applied after every role rule, so they always win
GLOBAL_RULES: Tuple[Rule, ...] = (
    _cannot("delete", "User", HasMember("roles", Role.SUPER_ADMIN.value)),
)


@dataclass(frozen=True)
class Ability:
    """Permission predicate for one principal."""

    rules: Tuple[Rule, ...]
    identity: Mapping[str, Optional[str]] = field(default_factory=dict)

    def can(
        self, action: str, subject: str, attributes: Optional[Mapping[str, Any]] = None
    ) -> bool:
        # Later rules override earlier ones
        for rule in reversed(self.rules):
            if not rule.applies_to(action, subject):
                continue
            if attributes is None:
                # Type-level question: conditions cannot be evaluated, so a
                # conditional ``cannot`` does not deny and a conditional
                # ``can`` grants "for some instances"
                if rule.inverted and rule.conditions:
                    continue
                return not rule.inverted
            if all(cond.matches(attributes, self.identity) for cond in rule.conditions):
                return not rule.inverted
        return False

    def cannot(
        self, action: str, subject: str, attributes: Optional[Mapping[str, Any]] = None
    ) -> bool:
        return not self.can(action, subject, attributes)


class AbilityResolver:
    """Maps a role set to an ``Ability`` using a table built once at import."""

    def __init__(
        self,
        role_rules: Mapping[Role, Tuple[Rule, ...]] = ROLE_RULES,
        global_rules: Tuple[Rule, ...] = GLOBAL_RULES,
        public_rules: Tuple[Rule, ...] = PUBLIC_RULES,
    ) -> None:
        self._role_rules = role_rules
        self._global_rules = global_rules
        self._public_rules = public_rules
        self._rules_for = lru_cache(maxsize=64)(self._compile)

    def _compile(self, roles: frozenset) -> Tuple[Rule, ...]:
        compiled: list[Rule] = []
        # Enum order keeps the rule sequence deterministic for a given role set
        for role in Role:
            if role in roles:
                compiled.extend(self._role_rules.get(role, ()))
        compiled.extend(self._global_rules)
        return tuple(compiled)

    def resolve(
        self,
        roles: Iterable[Role | str],
        *,
        user_id: Optional[str] = None,
        ministry_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> Ability:
        role_set = Role.parse_set(roles)
        identity = MappingProxyType(
            {"id": user_id, "ministry_id": ministry_id, "organization_id": organization_id}
        )
        return Ability(rules=self._rules_for(role_set), identity=identity)

    def anonymous(self) -> Ability:
        return Ability(rules=self._public_rules)
