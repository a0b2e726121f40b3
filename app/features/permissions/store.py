"""
Policy and role assignment stores.

The engine talks to two narrow interfaces, ``PolicyStore`` and ``RoleStore``.
``CasbinRuleStore`` implements both on one ``casbin.AsyncEnforcer`` loaded with
``RBAC_MODEL``:

- ``p`` rows are grants ``(subject, domain, resource, action)``; the matcher
  compares subjects exactly and lets a stored ``*`` match any domain, resource
  or action;
- ``g`` rows are role assignments ``(user:<id>, role, domain)`` and role links
  ``(role, parent, domain)``. The role manager resolves both, and links stored
  under ``*`` apply in every domain through its domain matching function.

Checks read the in-memory model and never wait. Writes are serialized with an
``asyncio.Lock`` and reach the model before they return, so a mutation is
visible to every check that starts after it.

Without an adapter rules only live in memory. ``sql_store.SQLRuleStore``
persists them through the Casbin SQLAlchemy adapter.
"""
import asyncio
from collections import deque
from typing import Iterable, NamedTuple, Optional, Protocol

import casbin
from casbin.model import Model

from app.features.permissions.errors import PolicyStoreError
from app.features.permissions.types import (
    USER_PREFIX,
    WILDCARD,
    PolicyRule,
    RoleAssignment,
    RoleLink,
)
from app.utils import get_logger


log = get_logger(__name__)


RBAC_MODEL = """
[request_definition]
r = sub, dom, obj, act

[policy_definition]
p = sub, dom, obj, act

[role_definition]
g = _, _, _

[policy_effect]
e = some(where (p.eft == allow))

[matchers]
m = r.sub == p.sub && (p.dom == "*" || p.dom == r.dom) && (p.obj == "*" || p.obj == r.obj) && (p.act == "*" || p.act == r.act)
"""

GROUPING = "g"


def new_model() -> Model:
    model = Model()
    model.load_model_from_text(RBAC_MODEL)
    return model


def domain_matches(requested: str, stored: str) -> bool:
    """Role links stored under ``*`` hold in every domain."""
    return stored == WILDCARD or requested == stored


def _row(rule: tuple) -> list[str]:
    return [str(value) for value in rule]


class RuleSet(NamedTuple):
    policies: frozenset
    assignments: frozenset
    links: frozenset

    @property
    def size(self) -> int:
        return len(self.policies) + len(self.assignments) + len(self.links)


# ============================================================================
# Interfaces
# ============================================================================

class PolicyStore(Protocol):
    async def add_policy(self, rule: PolicyRule) -> bool: ...

    async def add_policies(self, rules: Iterable[PolicyRule]) -> int: ...

    async def remove_policy(self, rule: PolicyRule) -> bool: ...

    async def remove_policies(self, rules: Iterable[PolicyRule]) -> int: ...

    async def match_policies(self, subject: str, domain: str, resource: str, action: str) -> bool: ...

    async def policies_for_subject(self, subject: str, domain: Optional[str] = None) -> list[PolicyRule]: ...

    async def policies_in_domain(self, domain: str) -> list[PolicyRule]: ...

    async def remove_subject(self, subject: str) -> int: ...


class RoleStore(Protocol):
    async def assign_role(self, assignment: RoleAssignment) -> bool: ...

    async def unassign_role(self, assignment: RoleAssignment) -> bool: ...

    async def roles_for_subject(self, user: str, domain: str) -> list[str]: ...

    async def users_for_role(self, role: str, domain: str) -> list[str]: ...

    async def add_role_link(self, link: RoleLink) -> bool: ...

    async def remove_role_link(self, link: RoleLink) -> bool: ...

    async def remove_role(self, role: str) -> int: ...


# ============================================================================
# Casbin implementation
# ============================================================================

class CasbinRuleStore:
    """
    PolicyStore and RoleStore over a Casbin enforcer.

    Usage:
        store = CasbinRuleStore()
        enforcer = Enforcer(policies=store, roles=store)
    """

    # Adapter exceptions that mean the backing storage failed
    storage_errors: tuple = ()

    def __init__(self, adapter=None):
        self._casbin = casbin.AsyncEnforcer(new_model(), adapter)
        self._casbin.add_named_domain_matching_func(GROUPING, domain_matches)
        self._lock = asyncio.Lock()

    def rules(self) -> RuleSet:
        """Every rule currently loaded, split by kind."""
        assignments, links = [], []
        for row in self._casbin.get_grouping_policy():
            if row[0].startswith(USER_PREFIX):
                assignments.append(RoleAssignment(*row[:3]))
            else:
                links.append(RoleLink(*row[:3]))
        policies = [PolicyRule(*row[:4]) for row in self._casbin.get_policy()]
        return RuleSet(frozenset(policies), frozenset(assignments), frozenset(links))

    async def _write(self, change):
        try:
            return await change
        except self.storage_errors as e:
            log.error(f"Failed to store authorization rules: {e}")
            raise PolicyStoreError("Failed to store authorization rules") from e

    # Policy side ------------------------------------------------------------

    async def add_policy(self, rule: PolicyRule) -> bool:
        return await self.add_policies([rule]) == 1

    async def add_policies(self, rules: Iterable[PolicyRule]) -> int:
        async with self._lock:
            new = [_row(r) for r in dict.fromkeys(rules) if not self._casbin.has_policy(*_row(r))]
            if new:
                await self._write(self._casbin.add_policies(new))
        return len(new)

    async def remove_policy(self, rule: PolicyRule) -> bool:
        return await self.remove_policies([rule]) == 1

    async def remove_policies(self, rules: Iterable[PolicyRule]) -> int:
        async with self._lock:
            present = [_row(r) for r in dict.fromkeys(rules) if self._casbin.has_policy(*_row(r))]
            if present:
                await self._write(self._casbin.remove_policies(present))
        return len(present)

    async def match_policies(self, subject: str, domain: str, resource: str, action: str) -> bool:
        return self._casbin.enforce(subject, domain, resource, action)

    async def policies_for_subject(self, subject: str, domain: Optional[str] = None) -> list[PolicyRule]:
        rules = sorted(PolicyRule(*row[:4]) for row in self._casbin.get_filtered_policy(0, subject))
        if domain is None:
            return rules
        return [r for r in rules if r.applies_in(domain)]

    async def policies_in_domain(self, domain: str) -> list[PolicyRule]:
        return sorted(PolicyRule(*row[:4]) for row in self._casbin.get_filtered_policy(1, domain))

    async def remove_subject(self, subject: str) -> int:
        """Drop every policy naming ``subject``."""
        async with self._lock:
            rows = [list(row) for row in self._casbin.get_filtered_policy(0, subject)]
            if rows:
                await self._write(self._casbin.remove_policies(rows))
        return len(rows)

    # Role side --------------------------------------------------------------

    async def _add_grouping(self, rule: tuple) -> bool:
        async with self._lock:
            if self._casbin.has_grouping_policy(*_row(rule)):
                return False
            return await self._write(self._casbin.add_grouping_policy(*_row(rule)))

    async def _remove_grouping(self, rule: tuple) -> bool:
        async with self._lock:
            if not self._casbin.has_grouping_policy(*_row(rule)):
                return False
            return await self._write(self._casbin.remove_grouping_policy(*_row(rule)))

    async def assign_role(self, assignment: RoleAssignment) -> bool:
        return await self._add_grouping(assignment)

    async def unassign_role(self, assignment: RoleAssignment) -> bool:
        return await self._remove_grouping(assignment)

    async def add_role_link(self, link: RoleLink) -> bool:
        return await self._add_grouping(link)

    async def remove_role_link(self, link: RoleLink) -> bool:
        return await self._remove_grouping(link)

    async def roles_for_subject(self, user: str, domain: str) -> list[str]:
        """Direct roles first, then implied roles breadth first. Cycles stop."""
        role_manager = self._casbin.get_role_manager()
        ordered: list[str] = []
        seen: set[str] = set()
        queue = deque(sorted(role_manager.get_roles(user, domain)))
        while queue:
            role = queue.popleft()
            if role in seen:
                continue
            seen.add(role)
            ordered.append(role)
            queue.extend(sorted(role_manager.get_roles(role, domain)))
        return ordered

    async def users_for_role(self, role: str, domain: str) -> list[str]:
        rows = self._casbin.get_filtered_grouping_policy(1, role, domain)
        return sorted(row[0] for row in rows if row[0].startswith(USER_PREFIX))

    async def remove_role(self, role: str) -> int:
        """Drop every assignment of ``role`` and every link naming it."""
        async with self._lock:
            rows = [list(row) for row in self._casbin.get_grouping_policy() if role in (row[0], row[1])]
            if rows:
                await self._write(self._casbin.remove_grouping_policies(rows))
        return len(rows)
