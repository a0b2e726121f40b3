"""
Authorization dependencies for route protection.

Every protected request goes through the same steps:

    Unauthenticated -> DomainResolved | DomainSkipped -> Checked -> Allowed | Denied

1. no principal: 401, the enforcer is not consulted;
2. the domain is resolved for the route's level (system, group, project);
   a group/project route without an id either skips the check or denies,
   chosen per route;
3. method and path are mapped to action and resource;
4. the enforcer decides. Denied requests get a structured 403, store
   failures a 500 that is distinct from a denial.

Implements:
- require_access(): FastAPI dependency factory for all three levels
- authorize(): the same check for explicitly supplied domain/resource/action
- Audit logging helper
"""
from dataclasses import dataclass
from typing import Annotated, Any, Dict, Optional
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.features.permissions.enforcer import Enforcer
from app.features.permissions.errors import PolicyStoreError
from app.features.permissions.mapper import extract_resource, map_method_to_action
from app.features.permissions.models import AuditLog
from app.features.permissions.resolver import resolve_domain
from app.features.permissions.types import SYSTEM_DOMAIN, Domain, Level, MissingDomain
from app.features.users.auth import Principal
from app.features.users.dependencies import get_current_principal
from app.utils import get_logger


log = get_logger(__name__)

STORE_FAILURE_DETAIL = "Authorization service unavailable"


@dataclass(frozen=True)
class AccessContext:
    """The decision context of one request. Never persisted."""
    subject: str
    domain: str
    resource: str
    action: str


def forbidden(domain: Optional[str], resource: str, action: str, message: str = "Permission denied") -> HTTPException:
    """403 carrying only what was asked for, never the policies involved."""
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "error": "forbidden",
            "message": message,
            "resource": resource,
            "action": action,
            "domain": domain,
        },
    )


def get_enforcer(request: Request) -> Enforcer:
    """The process-wide enforcer created at startup."""
    enforcer = getattr(request.app.state, "enforcer", None)
    if enforcer is None:
        log.error("Authorization enforcer is not initialized")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=STORE_FAILURE_DETAIL,
        )
    return enforcer


def admin_domain(domain: str) -> str:
    """Domain an administrative change is authorized in: its own, or system for "*"."""
    return domain if Domain(domain).is_concrete else SYSTEM_DOMAIN


# ============================================================================
# Decision
# ============================================================================

async def authorize(
    enforcer: Enforcer,
    principal: Principal,
    domain: str,
    resource: str,
    action: str,
) -> AccessContext:
    """
    Check one decision context and raise on anything but an allow.

    Raises:
        HTTPException: 403 if denied, 500 if the rule store failed
    """
    context = AccessContext(principal.subject, domain, resource, action)
    try:
        allowed = await enforcer.enforce(principal.subject, domain, resource, action)
    except PolicyStoreError as e:
        log.error(f"Authorization store failure for {principal.subject} {action} on {resource} in {domain}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=STORE_FAILURE_DETAIL,
        )

    if not allowed:
        log.info(f"Forbidden: {principal.subject} {action} on {resource} in {domain}")
        raise forbidden(domain, resource, action)
    return context


def require_access(
    level: Level,
    resource_type: Optional[str] = None,
    on_missing_domain: Optional[MissingDomain] = None,
):
    """
    FastAPI dependency protecting a route at one level.

    Usage:
        @router.post("/api/oss/group/file/{id}")
        async def upload(access: AccessContext = Depends(require_access(Level.GROUP, "file"))):
            ...

    Args:
        level: system, group or project
        resource_type: resource name; derived from the path when omitted
        on_missing_domain: skip or deny when a group/project id is absent
            (defaults to RBAC_MISSING_DOMAIN)

    Returns:
        Dependency returning the AccessContext, or None when the check was skipped
    """
    missing = MissingDomain(on_missing_domain or config.RBAC_MISSING_DOMAIN)

    async def access_dependency(
        request: Request,
        principal: Annotated[Principal, Depends(get_current_principal)],
        enforcer: Annotated[Enforcer, Depends(get_enforcer)],
    ) -> Optional[AccessContext]:
        path = request.url.path
        resource = extract_resource(path, resource_type)
        action = map_method_to_action(request.method)

        path_params = {key: str(value) for key, value in request.path_params.items()}
        domain = resolve_domain(level, path_params, request.query_params)
        if domain is None:
            if missing is MissingDomain.SKIP:
                log.warning(f"No {level.value} id in {request.method} {path}; authorization check skipped")
                return None
            log.info(f"No {level.value} id in {request.method} {path}; denied")
            raise forbidden(None, resource, action, message=f"No {level.value} scope in request")

        return await authorize(enforcer, principal, str(domain), resource, action)

    return access_dependency


# ============================================================================
# Audit Logging
# ============================================================================

async def create_audit_log(
    db: AsyncSession,
    actor: Optional[str],
    action: str,
    resource_type: str,
    domain: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> Optional[AuditLog]:
    """
    Create an audit log entry.

    Called after the change it records has been applied, so a failed insert is
    logged and rolled back without failing the request.

    Args:
        db: Database session
        actor: Subject performing the change
        action: Action performed (e.g., "grant", "revoke", "assign_role")
        resource_type: Type of thing changed ("policy", "role_assignment", ...)
        domain: Domain the change applies to
        details: Additional details
        request: Request, for client address and user agent

    Returns:
        Created AuditLog object, or None if it could not be stored
    """
    audit_log = AuditLog(
        actor=actor,
        action=action,
        resource_type=resource_type,
        domain=domain,
        details=details,
        ip_address=request.client.host if request is not None and request.client else None,
        user_agent=request.headers.get("user-agent") if request is not None else None,
    )

    db.add(audit_log)
    try:
        await db.commit()
        await db.refresh(audit_log)
    except SQLAlchemyError as e:
        await db.rollback()
        log.error(f"Failed to write audit log for {action} by {actor} in {domain}: {e}")
        return None

    log.info(f"Audit: actor={actor} action={action} resource={resource_type} domain={domain}")

    return audit_log
