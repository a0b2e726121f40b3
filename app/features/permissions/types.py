"""
Value types for the authorization engine.

Subjects, domains, role names, resources and actions travel and are stored as
plain strings. The classes below are ``str`` subclasses that validate on
construction, so a typo in a role name or a domain fails at the API boundary
instead of silently producing a rule that never matches.

Domains come in three families plus the policy wildcard:
    system          the whole installation
    group:<id>      one group
    project:<id>    one project
    *               any domain (policies and role links only)
"""
import re
from enum import Enum
from typing import NamedTuple

from app.features.permissions.errors import InvalidValueError


WILDCARD = "*"
SYSTEM_DOMAIN = "system"
USER_PREFIX = "user:"
MAX_ENTITY_ID_DIGITS = 20

_USER_SUBJECT_RE = re.compile(r"^user:[A-Za-z0-9_\-]{1,64}$")
_ROLE_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_\-]{0,49}$")
_DOMAIN_RE = re.compile(rf"^(system|(group|project):[0-9]{{1,{MAX_ENTITY_ID_DIGITS}}})$")
_TOKEN_RE = re.compile(r"^[^\s*]{1,100}$")


class _ValidatedStr(str):
    kind = "value"

    def __new__(cls, value):
        if isinstance(value, cls):
            return value
        if not isinstance(value, str) or not cls._is_valid(value):
            raise InvalidValueError(f"Invalid {cls.kind}: {value!r}")
        return super().__new__(cls, value)

    @classmethod
    def _is_valid(cls, value: str) -> bool:
        raise NotImplementedError


class RoleName(_ValidatedStr):
    """Role name such as ``GROUP_ADMIN`` or ``viewer``."""
    kind = "role name"

    @classmethod
    def _is_valid(cls, value: str) -> bool:
        return bool(_ROLE_NAME_RE.match(value))


class Subject(_ValidatedStr):
    """Policy subject: ``user:<id>`` or a role name."""
    kind = "subject"

    @classmethod
    def _is_valid(cls, value: str) -> bool:
        return bool(_USER_SUBJECT_RE.match(value) or _ROLE_NAME_RE.match(value))

    @property
    def is_user(self) -> bool:
        return self.startswith(USER_PREFIX)


class Domain(_ValidatedStr):
    """Authorization scope. ``*`` is accepted; use ``is_concrete`` to refuse it."""
    kind = "domain"

    @classmethod
    def _is_valid(cls, value: str) -> bool:
        return value == WILDCARD or bool(_DOMAIN_RE.match(value))

    @classmethod
    def system(cls) -> "Domain":
        return cls(SYSTEM_DOMAIN)

    @classmethod
    def group(cls, group_id: int) -> "Domain":
        return cls(f"group:{group_id}")

    @classmethod
    def project(cls, project_id: int) -> "Domain":
        return cls(f"project:{project_id}")

    @property
    def is_concrete(self) -> bool:
        return self != WILDCARD


class ResourceKind(_ValidatedStr):
    """Resource type such as ``files`` or ``projects``; ``*`` means any."""
    kind = "resource"

    @classmethod
    def _is_valid(cls, value: str) -> bool:
        return value == WILDCARD or bool(_TOKEN_RE.match(value))


class ActionVerb(_ValidatedStr):
    """Action such as ``read`` or ``upload``; ``*`` means any."""
    kind = "action"

    @classmethod
    def _is_valid(cls, value: str) -> bool:
        return value == WILDCARD or bool(_TOKEN_RE.match(value))


def user_subject(user_id) -> Subject:
    """Build the ``user:<id>`` subject for a user id."""
    return Subject(f"{USER_PREFIX}{user_id}")


def concrete_domain(value: str) -> Domain:
    domain = Domain(value)
    if not domain.is_concrete:
        raise InvalidValueError(f"Invalid domain: {value!r} (a concrete domain is required)")
    return domain


def field_matches(stored: str, requested: str) -> bool:
    """A stored ``*`` matches anything; otherwise exact string equality."""
    return stored == WILDCARD or stored == requested


# ============================================================================
# Levels
# ============================================================================

class Level(str, Enum):
    """Scope family a route is checked at."""
    SYSTEM = "system"
    GROUP = "group"
    PROJECT = "project"

    @property
    def query_param(self) -> str | None:
        if self is Level.SYSTEM:
            return None
        return f"{self.value}_id"

    def domain_for(self, entity_id: int) -> Domain:
        if self is Level.SYSTEM:
            return Domain.system()
        return Domain(f"{self.value}:{entity_id}")


class MissingDomain(str, Enum):
    """What a group/project route does when no id can be resolved."""
    SKIP = "skip"
    DENY = "deny"


# ============================================================================
# Rule tuples
# ============================================================================

class PolicyRule(NamedTuple):
    """Grant of ``action`` on ``resource`` to ``subject`` within ``domain``."""
    subject: str
    domain: str
    resource: str
    action: str

    @classmethod
    def of(cls, subject: str, domain: str, resource: str, action: str) -> "PolicyRule":
        return cls(
            str(Subject(subject)),
            str(Domain(domain)),
            str(ResourceKind(resource)),
            str(ActionVerb(action)),
        )

    def applies_in(self, domain: str) -> bool:
        return field_matches(self.domain, domain)


class RoleAssignment(NamedTuple):
    """``user`` holds ``role`` inside one concrete ``domain``."""
    user: str
    role: str
    domain: str

    @classmethod
    def of(cls, user: str, role: str, domain: str) -> "RoleAssignment":
        subject = Subject(user)
        if not subject.is_user:
            raise InvalidValueError(f"Invalid user subject: {user!r}")
        return cls(str(subject), str(RoleName(role)), str(concrete_domain(domain)))


class RoleLink(NamedTuple):
    """``role`` implies ``parent`` inside ``domain`` (``*`` for every domain)."""
    role: str
    parent: str
    domain: str

    @classmethod
    def of(cls, role: str, parent: str, domain: str) -> "RoleLink":
        role_name = RoleName(role)
        parent_name = RoleName(parent)
        if role_name == parent_name:
            raise InvalidValueError(f"Role {role!r} cannot inherit from itself")
        return cls(str(role_name), str(parent_name), str(Domain(domain)))
