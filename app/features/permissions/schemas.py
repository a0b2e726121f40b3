"""
Pydantic schemas for the authorization API.

Request models validate subjects, domains, roles, resources and actions with
the engine's value types, so malformed values are rejected with a 400 before
any rule is touched.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, ValidationInfo, field_validator

from app.features.permissions.types import (
    ActionVerb,
    Domain,
    ResourceKind,
    RoleName,
    Subject,
    concrete_domain,
    user_subject,
)


def normalize_user(value: str) -> str:
    """Accept "42" or "user:42"; always return "user:42"."""
    subject = Subject(value) if value.startswith("user:") else user_subject(value)
    if not subject.is_user:
        raise ValueError(f"Invalid user: {value!r}")
    return str(subject)


# ============================================================================
# Policy Schemas
# ============================================================================

class PolicyBase(BaseModel):
    """A (subject, domain, resource, action) grant."""
    subject: str = Field(..., description="'user:<id>' or a role name")
    domain: str = Field(..., description="'system', 'group:<id>', 'project:<id>' or '*'")
    resource: str = Field(..., description="Resource type or '*'")
    action: str = Field(..., description="Action or '*'")


class PolicyCreate(PolicyBase):
    """Schema for granting or revoking a policy."""

    @field_validator("subject")
    @classmethod
    def valid_subject(cls, v: str) -> str:
        return str(Subject(v))

    @field_validator("domain")
    @classmethod
    def valid_domain(cls, v: str) -> str:
        return str(Domain(v))

    @field_validator("resource")
    @classmethod
    def valid_resource(cls, v: str) -> str:
        return str(ResourceKind(v))

    @field_validator("action")
    @classmethod
    def valid_action(cls, v: str) -> str:
        return str(ActionVerb(v))


class PolicyBatchCreate(BaseModel):
    """Schema for granting or revoking several policies at once."""
    policies: List[PolicyCreate] = Field(..., min_length=1, max_length=500)


class PolicyResponse(PolicyBase):
    """Schema for a stored policy."""
    model_config = ConfigDict(from_attributes=True)


class PermissionResponse(PolicyResponse):
    """A policy applying to a user, and the role it came through (null if direct)."""
    via_role: Optional[str] = None


# ============================================================================
# Role Schemas
# ============================================================================

class RoleAssignmentCreate(BaseModel):
    """Schema for assigning or revoking a role within one domain."""
    user: str = Field(..., description="User id or 'user:<id>'")
    role: str = Field(..., description="Role name")
    domain: str = Field(..., description="Concrete domain ('*' is not allowed)")

    @field_validator("user")
    @classmethod
    def valid_user(cls, v: str) -> str:
        return normalize_user(v)

    @field_validator("role")
    @classmethod
    def valid_role(cls, v: str) -> str:
        return str(RoleName(v))

    @field_validator("domain")
    @classmethod
    def valid_domain(cls, v: str) -> str:
        return str(concrete_domain(v))


class RoleLinkCreate(BaseModel):
    """Schema for role inheritance: 'role' implies 'parent' in 'domain'."""
    role: str = Field(..., description="Role gaining the parent's rights")
    parent: str = Field(..., description="Role being implied")
    domain: str = Field("*", description="Domain the link applies in, '*' for all")

    @field_validator("role", "parent")
    @classmethod
    def valid_role(cls, v: str) -> str:
        return str(RoleName(v))

    @field_validator("parent")
    @classmethod
    def not_self(cls, v: str, info: ValidationInfo) -> str:
        if info.data.get("role") == v:
            raise ValueError("A role cannot inherit from itself")
        return v

    @field_validator("domain")
    @classmethod
    def valid_domain(cls, v: str) -> str:
        return str(Domain(v))


# ============================================================================
# Change Responses
# ============================================================================

class ChangeResponse(BaseModel):
    """Result of an idempotent change. 'changed' is false for a no-op."""
    changed: bool
    message: str


class BatchChangeResponse(BaseModel):
    requested: int
    inserted: int


class BatchRevokeResponse(BaseModel):
    requested: int
    removed: int


class RoleDeleteResponse(BaseModel):
    role: str
    removed: int


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """Schema for checking a decision. Checks the caller unless 'user' is given."""
    resource: str = Field(..., description="Resource type")
    action: str = Field(..., description="Action")
    domain: str = Field(..., description="Concrete domain")
    user: Optional[str] = Field(None, description="User id or 'user:<id>' (defaults to caller)")

    @field_validator("resource")
    @classmethod
    def valid_resource(cls, v: str) -> str:
        return str(ResourceKind(v))

    @field_validator("action")
    @classmethod
    def valid_action(cls, v: str) -> str:
        return str(ActionVerb(v))

    @field_validator("domain")
    @classmethod
    def valid_domain(cls, v: str) -> str:
        return str(concrete_domain(v))

    @field_validator("user")
    @classmethod
    def valid_user(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else normalize_user(v)


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    allowed: bool
    subject: str
    domain: str
    resource: str
    action: str


# ============================================================================
# Listing Schemas
# ============================================================================

class UserPermissionsResponse(BaseModel):
    """Every policy that applies to a user, optionally within one domain."""
    subject: str
    domain: Optional[str]
    roles: List[str] = []
    permissions: List[PermissionResponse] = []


class UserRolesResponse(BaseModel):
    subject: str
    domain: str
    roles: List[str] = []


class DomainPoliciesResponse(BaseModel):
    domain: str
    policies: List[PolicyResponse] = []


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    actor: Optional[str]
    action: str
    resource_type: str
    domain: Optional[str]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
