"""
Authorization administration API routes.

Grant/revoke policies, assign/revoke roles, manage role inheritance, check
decisions and list permissions. Every route is itself authorized by the
enforcer: changes to a concrete domain are checked in that domain, changes to
the "*" domain in "system".
"""
from typing import Awaitable, Optional, TypeVar
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.permissions.dependencies import (
    STORE_FAILURE_DETAIL,
    AccessContext,
    admin_domain,
    authorize,
    create_audit_log,
    get_enforcer,
    require_access,
)
from app.features.permissions.enforcer import Enforcer
from app.features.permissions.errors import PolicyStoreError
from app.features.permissions.mapper import ACTION_CREATE, ACTION_DELETE, ACTION_READ, ACTION_UPDATE
from app.features.permissions.models import AuditLog
from app.features.permissions.schemas import (
    AuditLogListResponse,
    AuditLogResponse,
    BatchChangeResponse,
    BatchRevokeResponse,
    ChangeResponse,
    DomainPoliciesResponse,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionResponse,
    PolicyBatchCreate,
    PolicyCreate,
    PolicyResponse,
    RoleAssignmentCreate,
    RoleDeleteResponse,
    RoleLinkCreate,
    UserPermissionsResponse,
    UserRolesResponse,
    normalize_user,
)
from app.features.permissions.types import SYSTEM_DOMAIN, Level, MissingDomain, RoleName, concrete_domain
from app.features.users.auth import Principal
from app.features.users.dependencies import get_current_principal
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

RESOURCE_POLICIES = "policies"
RESOURCE_ROLES = "roles"
RESOURCE_AUDIT = "audit"

T = TypeVar("T")


async def _apply(change: Awaitable[T]) -> T:
    """Await a store operation, turning storage failures into a 500."""
    try:
        return await change
    except PolicyStoreError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=STORE_FAILURE_DETAIL,
        )


def _user_subject(user_id: str) -> str:
    try:
        return normalize_user(user_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"user_id": str(e)})


def _domain_param(domain: str) -> str:
    try:
        return str(concrete_domain(domain))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"domain": str(e)})


# ============================================================================
# Policy Routes
# ============================================================================

@router.post("/policies", response_model=ChangeResponse)
async def grant_policy(
    policy: PolicyCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Grant a policy. Granting an existing policy is a no-op."""
    await authorize(enforcer, principal, admin_domain(policy.domain), RESOURCE_POLICIES, ACTION_CREATE)

    inserted = await _apply(enforcer.grant(policy.subject, policy.domain, policy.resource, policy.action))

    await create_audit_log(
        db=db,
        actor=principal.subject,
        action="grant",
        resource_type="policy",
        domain=policy.domain,
        details={**policy.model_dump(), "changed": inserted},
        request=request,
    )

    return ChangeResponse(
        changed=inserted,
        message="Policy granted" if inserted else "Policy already exists",
    )


@router.post("/policies/batch", response_model=BatchChangeResponse)
async def batch_grant_policies(
    batch: PolicyBatchCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Grant several policies in one transaction. Caller must be allowed in every domain involved."""
    for domain in sorted({admin_domain(p.domain) for p in batch.policies}):
        await authorize(enforcer, principal, domain, RESOURCE_POLICIES, ACTION_CREATE)

    rules = [(p.subject, p.domain, p.resource, p.action) for p in batch.policies]
    inserted = await _apply(enforcer.batch_grant(rules))

    await create_audit_log(
        db=db,
        actor=principal.subject,
        action="batch_grant",
        resource_type="policy",
        details={"policies": [p.model_dump() for p in batch.policies], "inserted": inserted},
        request=request,
    )

    return BatchChangeResponse(requested=len(rules), inserted=inserted)


@router.delete("/policies", response_model=ChangeResponse)
async def revoke_policy(
    policy: PolicyCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Revoke a policy. Revoking a missing policy is a no-op."""
    await authorize(enforcer, principal, admin_domain(policy.domain), RESOURCE_POLICIES, ACTION_DELETE)

    removed = await _apply(enforcer.revoke(policy.subject, policy.domain, policy.resource, policy.action))

    await create_audit_log(
        db=db,
        actor=principal.subject,
        action="revoke",
        resource_type="policy",
        domain=policy.domain,
        details={**policy.model_dump(), "changed": removed},
        request=request,
    )

    return ChangeResponse(
        changed=removed,
        message="Policy revoked" if removed else "Policy not found",
    )


@router.delete("/policies/batch", response_model=BatchRevokeResponse)
async def batch_revoke_policies(
    batch: PolicyBatchCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Revoke several policies in one transaction. Caller must be allowed in every domain involved."""
    for domain in sorted({admin_domain(p.domain) for p in batch.policies}):
        await authorize(enforcer, principal, domain, RESOURCE_POLICIES, ACTION_DELETE)

    rules = [(p.subject, p.domain, p.resource, p.action) for p in batch.policies]
    removed = await _apply(enforcer.batch_revoke(rules))

    await create_audit_log(
        db=db,
        actor=principal.subject,
        action="batch_revoke",
        resource_type="policy",
        details={"policies": [p.model_dump() for p in batch.policies], "removed": removed},
        request=request,
    )

    return BatchRevokeResponse(requested=len(rules), removed=removed)


# ============================================================================
# Role Routes
# ============================================================================

@router.post("/assignments", response_model=ChangeResponse)
async def assign_role(
    assignment: RoleAssignmentCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Assign a role to a user within one domain."""
    await authorize(enforcer, principal, assignment.domain, RESOURCE_ROLES, ACTION_CREATE)

    assigned = await _apply(enforcer.assign_role(assignment.user, assignment.role, assignment.domain))

    await create_audit_log(
        db=db,
        actor=principal.subject,
        action="assign_role",
        resource_type="role_assignment",
        domain=assignment.domain,
        details={**assignment.model_dump(), "changed": assigned},
        request=request,
    )

    return ChangeResponse(
        changed=assigned,
        message="Role assigned" if assigned else "Role already assigned",
    )


@router.delete("/assignments", response_model=ChangeResponse)
async def revoke_role(
    assignment: RoleAssignmentCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Remove a role from a user within one domain."""
    await authorize(enforcer, principal, assignment.domain, RESOURCE_ROLES, ACTION_DELETE)

    removed = await _apply(enforcer.unassign_role(assignment.user, assignment.role, assignment.domain))

    await create_audit_log(
        db=db,
        actor=principal.subject,
        action="revoke_role",
        resource_type="role_assignment",
        domain=assignment.domain,
        details={**assignment.model_dump(), "changed": removed},
        request=request,
    )

    return ChangeResponse(
        changed=removed,
        message="Role revoked" if removed else "Role assignment not found",
    )


@router.post("/inheritance", response_model=ChangeResponse)
async def add_role_inheritance(
    link: RoleLinkCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Make one role imply another."""
    await authorize(enforcer, principal, admin_domain(link.domain), RESOURCE_ROLES, ACTION_CREATE)

    added = await _apply(enforcer.add_role_inheritance(link.role, link.parent, link.domain))

    await create_audit_log(
        db=db,
        actor=principal.subject,
        action="add_inheritance",
        resource_type="role_link",
        domain=link.domain,
        details={**link.model_dump(), "changed": added},
        request=request,
    )

    return ChangeResponse(
        changed=added,
        message=f"{link.role} now implies {link.parent}" if added else "Inheritance already exists",
    )


@router.delete("/inheritance", response_model=ChangeResponse)
async def remove_role_inheritance(
    link: RoleLinkCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Remove a role inheritance link."""
    await authorize(enforcer, principal, admin_domain(link.domain), RESOURCE_ROLES, ACTION_DELETE)

    removed = await _apply(enforcer.remove_role_inheritance(link.role, link.parent, link.domain))

    await create_audit_log(
        db=db,
        actor=principal.subject,
        action="remove_inheritance",
        resource_type="role_link",
        domain=link.domain,
        details={**link.model_dump(), "changed": removed},
        request=request,
    )

    return ChangeResponse(
        changed=removed,
        message="Inheritance removed" if removed else "Inheritance not found",
    )


@router.delete("/roles/{role}", response_model=RoleDeleteResponse)
async def delete_role(
    role: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Delete a role everywhere: its policies, assignments and inheritance links."""
    try:
        role_name = str(RoleName(role))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"role": str(e)})

    await authorize(enforcer, principal, SYSTEM_DOMAIN, RESOURCE_ROLES, ACTION_DELETE)

    removed = await _apply(enforcer.delete_role(role_name))

    await create_audit_log(
        db=db,
        actor=principal.subject,
        action="delete_role",
        resource_type="role",
        details={"role": role_name, "removed": removed},
        request=request,
    )

    return RoleDeleteResponse(role=role_name, removed=removed)


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    check_request: PermissionCheckRequest,
    principal: Principal = Depends(get_current_principal),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Check a decision for the caller, or for another user if allowed to read policies."""
    subject = check_request.user or principal.subject
    if subject != principal.subject:
        await authorize(enforcer, principal, check_request.domain, RESOURCE_POLICIES, ACTION_READ)

    allowed = await _apply(
        enforcer.enforce(subject, check_request.domain, check_request.resource, check_request.action)
    )

    return PermissionCheckResponse(
        allowed=allowed,
        subject=subject,
        domain=check_request.domain,
        resource=check_request.resource,
        action=check_request.action,
    )


@router.get("/users/{user_id}/permissions", response_model=UserPermissionsResponse)
async def get_user_permissions(
    user_id: str,
    domain: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Every policy that applies to a user, directly or through roles held in 'domain'."""
    subject = _user_subject(user_id)
    if domain is not None:
        domain = _domain_param(domain)

    # Can only view own permissions unless allowed to read policies
    if subject != principal.subject:
        await authorize(enforcer, principal, domain or SYSTEM_DOMAIN, RESOURCE_POLICIES, ACTION_READ)

    grants = await _apply(enforcer.list_permissions(subject, domain))
    roles = await _apply(enforcer.roles_for_user(subject, domain)) if domain is not None else []

    return UserPermissionsResponse(
        subject=subject,
        domain=domain,
        roles=roles,
        permissions=[PermissionResponse(**g.rule._asdict(), via_role=g.via_role) for g in grants],
    )


@router.get("/users/{user_id}/roles", response_model=UserRolesResponse)
async def get_user_roles(
    user_id: str,
    domain: str,
    principal: Principal = Depends(get_current_principal),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Roles a user holds in a domain, including implied roles."""
    subject = _user_subject(user_id)
    domain = _domain_param(domain)

    if subject != principal.subject:
        await authorize(enforcer, principal, domain, RESOURCE_ROLES, ACTION_READ)

    roles = await _apply(enforcer.roles_for_user(subject, domain))
    return UserRolesResponse(subject=subject, domain=domain, roles=roles)


# ============================================================================
# Domain Policy Listing
# ============================================================================

async def _domain_policies(access: AccessContext, enforcer: Enforcer) -> DomainPoliciesResponse:
    rules = await _apply(enforcer.policies_in_domain(access.domain))
    return DomainPoliciesResponse(
        domain=access.domain,
        policies=[PolicyResponse(**rule._asdict()) for rule in rules],
    )


@router.get("/system/policies", response_model=DomainPoliciesResponse)
async def list_system_policies(
    access: AccessContext = Depends(require_access(Level.SYSTEM, RESOURCE_POLICIES)),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Policies stored for the system domain."""
    return await _domain_policies(access, enforcer)


@router.get("/groups/{id}/policies", response_model=DomainPoliciesResponse)
async def list_group_policies(
    access: AccessContext = Depends(
        require_access(Level.GROUP, RESOURCE_POLICIES, on_missing_domain=MissingDomain.DENY)
    ),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Policies stored for one group."""
    return await _domain_policies(access, enforcer)


@router.get("/projects/{id}/policies", response_model=DomainPoliciesResponse)
async def list_project_policies(
    access: AccessContext = Depends(
        require_access(Level.PROJECT, RESOURCE_POLICIES, on_missing_domain=MissingDomain.DENY)
    ),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Policies stored for one project."""
    return await _domain_policies(access, enforcer)


# ============================================================================
# Maintenance Routes
# ============================================================================

@router.post("/reload", response_model=ChangeResponse)
async def reload_rules(
    principal: Principal = Depends(get_current_principal),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """Re-read all rules from the database (picks up changes made by other processes)."""
    await authorize(enforcer, principal, SYSTEM_DOMAIN, RESOURCE_POLICIES, ACTION_UPDATE)
    await _apply(enforcer.reload())
    log.info(f"Rules reloaded by {principal.subject}")
    return ChangeResponse(changed=True, message="Rules reloaded")


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = 0,
    limit: int = 50,
    domain: Optional[str] = None,
    actor: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    enforcer: Enforcer = Depends(get_enforcer),
):
    """List audit logs with optional filtering."""
    await authorize(enforcer, principal, SYSTEM_DOMAIN, RESOURCE_AUDIT, ACTION_READ)

    stmt = select(AuditLog)

    if domain:
        stmt = stmt.where(AuditLog.domain == domain)
    if actor:
        stmt = stmt.where(AuditLog.actor == actor)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    # Get total count
    count_stmt = select(func.count()).select_from(stmt.subquery())
    total_result = await db.execute(count_stmt)
    total = total_result.scalar() or 0

    # Get paginated results
    stmt = stmt.order_by(AuditLog.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages,
    )
