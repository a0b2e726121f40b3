"""
Default roles and their policies.

Role policies use the wildcard domain: the role assignment decides where a
role is held, so GROUP_ADMIN assigned in group:5 is an admin of group:5 only.

Resources are the path segments file routes use (``/api/oss/group/file/...``).
Uploads and downloads are checked with the explicit ``upload``/``download``
actions rather than the method-derived ones.
"""
from typing import Optional

from app.features.permissions.enforcer import Enforcer
from app.features.permissions.types import SYSTEM_DOMAIN, WILDCARD, user_subject
from app.utils import get_logger


log = get_logger(__name__)


SUPER_ADMIN = "SUPER_ADMIN"
GROUP_ADMIN = "GROUP_ADMIN"
PROJECT_ADMIN = "PROJECT_ADMIN"
MEMBER = "MEMBER"
EDITOR = "EDITOR"
VIEWER = "VIEWER"


DEFAULT_POLICIES = [
    # Super admins can do everything in the system domain, including policy administration
    (SUPER_ADMIN, SYSTEM_DOMAIN, WILDCARD, WILDCARD),

    # Group roles
    (GROUP_ADMIN, WILDCARD, WILDCARD, WILDCARD),
    (MEMBER, WILDCARD, "file", "read"),
    (MEMBER, WILDCARD, "file", "upload"),
    (MEMBER, WILDCARD, "file", "download"),

    # Project roles
    (PROJECT_ADMIN, WILDCARD, WILDCARD, WILDCARD),
    (EDITOR, WILDCARD, "file", WILDCARD),
    (EDITOR, WILDCARD, "member", "read"),
    (VIEWER, WILDCARD, "file", "read"),
    (VIEWER, WILDCARD, "file", "download"),
]


# (role, implied role, domain)
DEFAULT_ROLE_LINKS = [
    (GROUP_ADMIN, MEMBER, WILDCARD),
    (PROJECT_ADMIN, EDITOR, WILDCARD),
    (EDITOR, VIEWER, WILDCARD),
]


async def seed_default_policies(enforcer: Enforcer, bootstrap_admin_id: Optional[str] = None) -> int:
    """
    Insert the default policies and role links. Safe to run repeatedly.

    Args:
        enforcer: Enforcer to write through
        bootstrap_admin_id: user id that receives SUPER_ADMIN in the system domain

    Returns:
        Number of rules that were new
    """
    created = await enforcer.batch_grant(DEFAULT_POLICIES)
    for role, parent, domain in DEFAULT_ROLE_LINKS:
        if await enforcer.add_role_inheritance(role, parent, domain):
            created += 1

    if bootstrap_admin_id:
        if await enforcer.assign_role(user_subject(bootstrap_admin_id), SUPER_ADMIN, SYSTEM_DOMAIN):
            log.info(f"Bootstrap admin user:{bootstrap_admin_id} assigned {SUPER_ADMIN}")
            created += 1

    log.info(f"Default policies seeded ({created} new rules)")
    return created
