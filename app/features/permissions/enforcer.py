"""
The decision procedure and the administrative API over the rule stores.

A request is allowed when either:
1. a policy names the user subject directly, or
2. a policy names one of the roles the user holds in the requested domain
   (including roles implied through role links).

Both paths carry equal weight and there is no explicit deny: no match means
deny. Store failures never turn into an allow; ``enforce`` raises
``PolicyStoreError`` and ``check`` returns False.
"""
from dataclasses import dataclass
from typing import Iterable, Optional

from app.features.permissions.errors import PolicyStoreError
from app.features.permissions.store import PolicyStore, RoleStore
from app.features.permissions.types import (
    PolicyRule,
    RoleAssignment,
    RoleLink,
    RoleName,
    Subject,
    concrete_domain,
)
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class PermissionGrant:
    """A policy that applies to a subject, and the role it came through (None if direct)."""
    rule: PolicyRule
    via_role: Optional[str] = None


class Enforcer:
    """
    Allow/deny decisions plus grant/revoke/assign operations.

    One instance is shared by every request. It holds no mutable state of its
    own; consistency comes from the stores.

    Usage:
        store = CasbinRuleStore()
        enforcer = Enforcer(policies=store, roles=store)
        await enforcer.grant("GROUP_ADMIN", "group:5", "file", "upload")
        await enforcer.assign_role("user:10", "GROUP_ADMIN", "group:5")
        await enforcer.check("user:10", "group:5", "file", "upload")  # True
    """

    def __init__(self, policies: PolicyStore, roles: RoleStore):
        self._policies = policies
        self._roles = roles

    # ========================================================================
    # Decisions
    # ========================================================================

    async def enforce(self, subject: str, domain: str, resource: str, action: str) -> bool:
        """
        Decide whether ``subject`` may perform ``action`` on ``resource`` in ``domain``.

        Raises:
            PolicyStoreError: if either store fails. Never returns True in that case.
        """
        try:
            if await self._policies.match_policies(subject, domain, resource, action):
                log.debug(f"Allow {subject} {action} on {resource} in {domain} (direct)")
                return True

            for role in await self._roles.roles_for_subject(subject, domain):
                if await self._policies.match_policies(role, domain, resource, action):
                    log.debug(f"Allow {subject} {action} on {resource} in {domain} via role {role}")
                    return True
        except PolicyStoreError:
            raise
        except Exception as e:
            raise PolicyStoreError(f"Authorization store failed: {e}") from e

        log.debug(f"Deny {subject} {action} on {resource} in {domain}")
        return False

    async def check(self, subject: str, domain: str, resource: str, action: str) -> bool:
        """Fail-closed form of ``enforce``: a store failure is logged and denied."""
        try:
            return await self.enforce(subject, domain, resource, action)
        except PolicyStoreError as e:
            log.error(f"Authorization check failed closed for {subject} {action} on {resource} in {domain}: {e}")
            return False

    # ========================================================================
    # Policy administration
    # ========================================================================

    async def grant(self, subject: str, domain: str, resource: str, action: str) -> bool:
        """Add a policy. Returns False if it already existed."""
        rule = PolicyRule.of(subject, domain, resource, action)
        inserted = await self._policies.add_policy(rule)
        if inserted:
            log.info(f"Granted {rule.action} on {rule.resource} in {rule.domain} to {rule.subject}")
        return inserted

    async def batch_grant(self, rules: Iterable[tuple[str, str, str, str]]) -> int:
        """Add several policies at once. Returns how many were new."""
        validated = [PolicyRule.of(*rule) for rule in rules]
        inserted = await self._policies.add_policies(validated)
        log.info(f"Batch grant stored {inserted} of {len(validated)} policies")
        return inserted

    async def revoke(self, subject: str, domain: str, resource: str, action: str) -> bool:
        """Remove a policy. Returns False if it did not exist."""
        rule = PolicyRule.of(subject, domain, resource, action)
        removed = await self._policies.remove_policy(rule)
        if removed:
            log.info(f"Revoked {rule.action} on {rule.resource} in {rule.domain} from {rule.subject}")
        return removed

    async def batch_revoke(self, rules: Iterable[tuple[str, str, str, str]]) -> int:
        """Remove several policies at once. Returns how many existed."""
        validated = [PolicyRule.of(*rule) for rule in rules]
        removed = await self._policies.remove_policies(validated)
        log.info(f"Batch revoke removed {removed} of {len(validated)} policies")
        return removed

    async def delete_role(self, role: str) -> int:
        """Drop every policy, assignment and link naming ``role``."""
        role_name = RoleName(role)
        removed = await self._policies.remove_subject(str(role_name))
        removed += await self._roles.remove_role(str(role_name))
        log.info(f"Deleted role {role_name} ({removed} rules removed)")
        return removed

    async def policies_in_domain(self, domain: str) -> list[PolicyRule]:
        return await self._policies.policies_in_domain(domain)

    # ========================================================================
    # Role administration
    # ========================================================================

    async def assign_role(self, user: str, role: str, domain: str) -> bool:
        assignment = RoleAssignment.of(user, role, domain)
        assigned = await self._roles.assign_role(assignment)
        if assigned:
            log.info(f"Assigned role {assignment.role} to {assignment.user} in {assignment.domain}")
        return assigned

    async def unassign_role(self, user: str, role: str, domain: str) -> bool:
        assignment = RoleAssignment.of(user, role, domain)
        unassigned = await self._roles.unassign_role(assignment)
        if unassigned:
            log.info(f"Removed role {assignment.role} from {assignment.user} in {assignment.domain}")
        return unassigned

    async def add_role_inheritance(self, role: str, parent: str, domain: str) -> bool:
        """Make ``role`` imply ``parent`` in ``domain`` ("*" for every domain)."""
        link = RoleLink.of(role, parent, domain)
        added = await self._roles.add_role_link(link)
        if added:
            log.info(f"Role {link.role} now implies {link.parent} in {link.domain}")
        return added

    async def remove_role_inheritance(self, role: str, parent: str, domain: str) -> bool:
        link = RoleLink.of(role, parent, domain)
        removed = await self._roles.remove_role_link(link)
        if removed:
            log.info(f"Role {link.role} no longer implies {link.parent} in {link.domain}")
        return removed

    async def roles_for_user(self, user: str, domain: str) -> list[str]:
        return await self._roles.roles_for_subject(str(Subject(user)), str(concrete_domain(domain)))

    async def users_for_role(self, role: str, domain: str) -> list[str]:
        return await self._roles.users_for_role(str(RoleName(role)), str(concrete_domain(domain)))

    # ========================================================================
    # Introspection
    # ========================================================================

    async def list_permissions(self, subject: str, domain: Optional[str] = None) -> list[PermissionGrant]:
        """
        Policies that apply to ``subject``.

        With a domain: direct policies applying there plus the policies of
        every role the subject holds there. Without one: direct policies only,
        since role assignments are always domain scoped.
        """
        subject = str(Subject(subject))
        if domain is not None:
            domain = str(concrete_domain(domain))

        grants = [PermissionGrant(rule) for rule in await self._policies.policies_for_subject(subject, domain)]
        if domain is None:
            return grants

        for role in await self._roles.roles_for_subject(subject, domain):
            for rule in await self._policies.policies_for_subject(role, domain):
                grants.append(PermissionGrant(rule, via_role=role))
        return grants

    async def reload(self) -> None:
        """Re-read rules from storage for stores that persist them."""
        stores = [self._policies] if self._policies is self._roles else [self._policies, self._roles]
        for store in stores:
            reload = getattr(store, "reload", None)
            if reload is not None:
                await reload()
