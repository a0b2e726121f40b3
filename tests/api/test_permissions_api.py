"""API tests for route protection and the /permissions administration routes.

Tests cover:
- require_access(): 401 without a principal, structured 403, 500 on store
  failure, skip vs deny when no domain can be resolved
- Administrative routes gated by the enforcer in the right domain
- Idempotent changes reported with changed=false
- Audit rows written for changes, and changes kept when the audit write fails
- Listing own vs other users' permissions

Architecture:
- A small app built per test with the permissions router mounted
- In-memory rule store for the enforcer, file backed SQLite for audit rows
- Real signed bearer tokens
"""

from typing import Optional

import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.database.engine import get_db
from app.features.permissions.defaults import DEFAULT_POLICIES, DEFAULT_ROLE_LINKS, GROUP_ADMIN, SUPER_ADMIN
from app.features.permissions.dependencies import AccessContext, require_access
from app.features.permissions.enforcer import Enforcer
from app.features.permissions.routes import router
from app.features.permissions.types import Level, MissingDomain
from app.main import validation_exception_handler
from tests.conftest import FailingStore, auth, seeded_store


SUPER_ADMIN_ID = 1
GROUP_ADMIN_ID = 2
OUTSIDER_ID = 3


# =============================================================================
# Helpers
# =============================================================================


async def default_store(*assignments):
    return await seeded_store(
        policies=DEFAULT_POLICIES,
        assignments=[
            (f"user:{SUPER_ADMIN_ID}", SUPER_ADMIN, "system"),
            (f"user:{GROUP_ADMIN_ID}", GROUP_ADMIN, "group:5"),
            *assignments,
        ],
        links=DEFAULT_ROLE_LINKS,
    )


def build_app(enforcer: Optional[Enforcer], db_url: str) -> FastAPI:
    app = FastAPI()
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.include_router(router, prefix="/permissions")
    if enforcer is not None:
        app.state.enforcer = enforcer

    engine = create_async_engine(db_url, poolclass=NullPool)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    @app.get("/api/oss/group/file")
    async def group_file_skip(
        access: Optional[AccessContext] = Depends(require_access(Level.GROUP, on_missing_domain=MissingDomain.SKIP)),
    ):
        return {"checked": access is not None}

    @app.get("/api/oss/group/file/{id}")
    async def group_file(
        access: Optional[AccessContext] = Depends(require_access(Level.GROUP, on_missing_domain=MissingDomain.DENY)),
    ):
        return {"domain": access.domain, "resource": access.resource, "action": access.action}

    @app.delete("/api/oss/project/member")
    async def project_member_deny(
        access: Optional[AccessContext] = Depends(require_access(Level.PROJECT, "member", MissingDomain.DENY)),
    ):
        return {"domain": access.domain}

    @app.get("/api/oss/system/stats")
    async def system_stats(
        access: Optional[AccessContext] = Depends(require_access(Level.SYSTEM, "stats")),
    ):
        return {"domain": access.domain}

    return app


@pytest_asyncio.fixture
async def client(db_url):
    store = await default_store((f"user:{OUTSIDER_ID}", "MEMBER", "group:9"))
    return TestClient(build_app(Enforcer(policies=store, roles=store), db_url))


@pytest_asyncio.fixture
async def unaudited_client(tmp_path):
    """Client whose audit database has no tables, so every audit insert fails."""
    store = await default_store()
    return TestClient(build_app(Enforcer(policies=store, roles=store), f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}"))


def policy(subject="EDITOR", domain="group:5", resource="file", action="read"):
    return {"subject": subject, "domain": domain, "resource": resource, "action": action}


# =============================================================================
# Route protection
# =============================================================================


@pytest.mark.api
class TestRequireAccess:
    """Test the route protection dependency."""

    def test_401_without_token(self, client):
        response = client.get("/api/oss/group/file/9")
        assert response.status_code == 401

    def test_401_with_bad_token(self, client):
        response = client.get("/api/oss/group/file/9", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_allowed_with_role_in_domain(self, client):
        response = client.get("/api/oss/group/file/9", headers=auth(OUTSIDER_ID))
        assert response.status_code == 200
        assert response.json() == {"domain": "group:9", "resource": "file", "action": "read"}

    def test_group_id_from_query(self, client):
        response = client.get("/api/oss/group/file/abc?group_id=9", headers=auth(OUTSIDER_ID))
        assert response.status_code == 200
        assert response.json()["domain"] == "group:9"

    def test_403_is_structured(self, client):
        response = client.get("/api/oss/group/file/10", headers=auth(OUTSIDER_ID))
        assert response.status_code == 403
        assert response.json()["detail"] == {
            "error": "forbidden",
            "message": "Permission denied",
            "resource": "file",
            "action": "read",
            "domain": "group:10",
        }

    def test_missing_domain_skip(self, client):
        response = client.get("/api/oss/group/file", headers=auth(OUTSIDER_ID))
        assert response.status_code == 200
        assert response.json() == {"checked": False}

    def test_missing_domain_deny(self, client):
        response = client.delete("/api/oss/project/member", headers=auth(OUTSIDER_ID))
        assert response.status_code == 403
        detail = response.json()["detail"]
        assert detail["domain"] is None
        assert detail["resource"] == "member"
        assert detail["action"] == "delete"

    def test_malformed_id_denied(self, client):
        response = client.get("/api/oss/group/file/-3", headers=auth(OUTSIDER_ID))
        assert response.status_code == 403

    def test_overlong_id_is_denied_not_500(self, client):
        response = client.get(f"/api/oss/group/file/{'1' * 21}", headers=auth(OUTSIDER_ID))
        assert response.status_code == 403
        assert response.json()["detail"]["domain"] is None

    def test_overlong_query_id_is_skipped(self, client):
        response = client.get(f"/api/oss/group/file?group_id={'1' * 21}", headers=auth(OUTSIDER_ID))
        assert response.status_code == 200
        assert response.json() == {"checked": False}

    def test_system_level(self, client):
        assert client.get("/api/oss/system/stats", headers=auth(SUPER_ADMIN_ID)).json() == {"domain": "system"}
        assert client.get("/api/oss/system/stats", headers=auth(GROUP_ADMIN_ID)).status_code == 403

    def test_500_on_store_failure(self, db_url):
        store = FailingStore()
        client = TestClient(build_app(Enforcer(policies=store, roles=store), db_url))
        response = client.get("/api/oss/group/file/9", headers=auth(OUTSIDER_ID))
        assert response.status_code == 500
        assert response.json()["detail"] == "Authorization service unavailable"

    def test_500_without_enforcer(self, db_url):
        client = TestClient(build_app(None, db_url))
        response = client.get("/api/oss/group/file/9", headers=auth(OUTSIDER_ID))
        assert response.status_code == 500


# =============================================================================
# Policy administration
# =============================================================================


@pytest.mark.api
class TestPolicyRoutes:
    """Test granting and revoking policies."""

    def test_group_admin_grants_in_own_group(self, client):
        response = client.post("/permissions/policies", json=policy(), headers=auth(GROUP_ADMIN_ID))
        assert response.status_code == 200
        assert response.json() == {"changed": True, "message": "Policy granted"}

        again = client.post("/permissions/policies", json=policy(), headers=auth(GROUP_ADMIN_ID))
        assert again.json()["changed"] is False

    def test_group_admin_cannot_grant_elsewhere(self, client):
        response = client.post("/permissions/policies", json=policy(domain="group:6"), headers=auth(GROUP_ADMIN_ID))
        assert response.status_code == 403
        assert response.json()["detail"]["resource"] == "policies"
        assert response.json()["detail"]["action"] == "create"

    def test_wildcard_domain_needs_system(self, client):
        response = client.post("/permissions/policies", json=policy(domain="*"), headers=auth(GROUP_ADMIN_ID))
        assert response.status_code == 403
        assert response.json()["detail"]["domain"] == "system"

        response = client.post("/permissions/policies", json=policy(domain="*"), headers=auth(SUPER_ADMIN_ID))
        # SUPER_ADMIN policies live in the system domain
        assert response.status_code == 200

    def test_invalid_payload_is_400(self, client):
        response = client.post("/permissions/policies", json=policy(domain="group:abc"), headers=auth(GROUP_ADMIN_ID))
        assert response.status_code == 400
        assert "domain" in response.json()

    def test_revoke(self, client):
        client.post("/permissions/policies", json=policy(), headers=auth(GROUP_ADMIN_ID))
        response = client.request("DELETE", "/permissions/policies", json=policy(), headers=auth(GROUP_ADMIN_ID))
        assert response.json() == {"changed": True, "message": "Policy revoked"}
        response = client.request("DELETE", "/permissions/policies", json=policy(), headers=auth(GROUP_ADMIN_ID))
        assert response.json()["changed"] is False

    def test_batch_checks_every_domain(self, client):
        batch = {"policies": [policy(), policy(domain="group:6")]}
        response = client.post("/permissions/policies/batch", json=batch, headers=auth(GROUP_ADMIN_ID))
        assert response.status_code == 403

        batch = {"policies": [policy(), policy(action="create"), policy()]}
        response = client.post("/permissions/policies/batch", json=batch, headers=auth(GROUP_ADMIN_ID))
        assert response.status_code == 200
        assert response.json() == {"requested": 3, "inserted": 2}

    def test_batch_revoke_checks_every_domain(self, client):
        client.post("/permissions/policies", json=policy(), headers=auth(GROUP_ADMIN_ID))

        batch = {"policies": [policy(), policy(domain="group:6")]}
        response = client.request("DELETE", "/permissions/policies/batch", json=batch, headers=auth(GROUP_ADMIN_ID))
        assert response.status_code == 403
        assert response.json()["detail"]["action"] == "delete"

        batch = {"policies": [policy(), policy(action="create")]}
        response = client.request("DELETE", "/permissions/policies/batch", json=batch, headers=auth(GROUP_ADMIN_ID))
        assert response.status_code == 200
        assert response.json() == {"requested": 2, "removed": 1}

        listing = client.get("/permissions/groups/5/policies", headers=auth(GROUP_ADMIN_ID))
        assert listing.json()["policies"] == []

        audit = client.get("/permissions/audit-logs?action=batch_revoke", headers=auth(SUPER_ADMIN_ID))
        assert audit.json()["total"] == 1

    def test_change_applied_when_audit_write_fails(self, unaudited_client):
        response = unaudited_client.post("/permissions/policies", json=policy(), headers=auth(GROUP_ADMIN_ID))
        assert response.status_code == 200
        assert response.json() == {"changed": True, "message": "Policy granted"}

        response = unaudited_client.request(
            "DELETE", "/permissions/policies/batch", json={"policies": [policy()]}, headers=auth(GROUP_ADMIN_ID)
        )
        assert response.status_code == 200
        assert response.json() == {"requested": 1, "removed": 1}

    def test_grant_takes_effect_immediately(self, client):
        client.post(
            "/permissions/policies",
            json=policy(subject=f"user:{OUTSIDER_ID}", resource="reports"),
            headers=auth(GROUP_ADMIN_ID),
        )
        response = client.post(
            "/permissions/check",
            json={"resource": "reports", "action": "read", "domain": "group:5"},
            headers=auth(OUTSIDER_ID),
        )
        assert response.json()["allowed"] is True

    def test_changes_are_audited(self, client):
        client.post("/permissions/policies", json=policy(), headers=auth(GROUP_ADMIN_ID))
        client.post(
            "/permissions/assignments",
            json={"user": "7", "role": "MEMBER", "domain": "group:5"},
            headers=auth(GROUP_ADMIN_ID),
        )

        response = client.get("/permissions/audit-logs", headers=auth(SUPER_ADMIN_ID))
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert {item["action"] for item in body["items"]} == {"grant", "assign_role"}
        assert all(item["actor"] == f"user:{GROUP_ADMIN_ID}" for item in body["items"])

        filtered = client.get("/permissions/audit-logs?action=grant", headers=auth(SUPER_ADMIN_ID))
        assert filtered.json()["total"] == 1

    def test_audit_logs_need_system_permission(self, client):
        assert client.get("/permissions/audit-logs", headers=auth(GROUP_ADMIN_ID)).status_code == 403


# =============================================================================
# Role administration
# =============================================================================


@pytest.mark.api
class TestRoleRoutes:
    """Test role assignment, inheritance and deletion."""

    def test_assign_and_revoke(self, client):
        body = {"user": "7", "role": "MEMBER", "domain": "group:5"}
        response = client.post("/permissions/assignments", json=body, headers=auth(GROUP_ADMIN_ID))
        assert response.json() == {"changed": True, "message": "Role assigned"}

        roles = client.get("/permissions/users/7/roles?domain=group:5", headers=auth(7))
        assert roles.json() == {"subject": "user:7", "domain": "group:5", "roles": ["MEMBER"]}

        response = client.request("DELETE", "/permissions/assignments", json=body, headers=auth(GROUP_ADMIN_ID))
        assert response.json()["changed"] is True

    def test_assign_outside_own_group_forbidden(self, client):
        body = {"user": "user:7", "role": "MEMBER", "domain": "group:6"}
        response = client.post("/permissions/assignments", json=body, headers=auth(GROUP_ADMIN_ID))
        assert response.status_code == 403

    def test_assign_wildcard_domain_rejected(self, client):
        body = {"user": "7", "role": "MEMBER", "domain": "*"}
        response = client.post("/permissions/assignments", json=body, headers=auth(SUPER_ADMIN_ID))
        assert response.status_code == 400

    def test_inheritance_is_system_wide_by_default(self, client):
        body = {"role": "MEMBER", "parent": "VIEWER"}
        assert client.post("/permissions/inheritance", json=body, headers=auth(GROUP_ADMIN_ID)).status_code == 403

        response = client.post("/permissions/inheritance", json=body, headers=auth(SUPER_ADMIN_ID))
        assert response.json()["changed"] is True
        roles = client.get(f"/permissions/users/{OUTSIDER_ID}/roles?domain=group:9", headers=auth(OUTSIDER_ID))
        assert roles.json()["roles"] == ["MEMBER", "VIEWER"]

        response = client.request("DELETE", "/permissions/inheritance", json=body, headers=auth(SUPER_ADMIN_ID))
        assert response.json()["changed"] is True

    def test_self_inheritance_rejected(self, client):
        body = {"role": "MEMBER", "parent": "MEMBER"}
        response = client.post("/permissions/inheritance", json=body, headers=auth(SUPER_ADMIN_ID))
        assert response.status_code == 400

    def test_delete_role(self, client):
        assert client.delete("/permissions/roles/MEMBER", headers=auth(GROUP_ADMIN_ID)).status_code == 403

        response = client.delete("/permissions/roles/MEMBER", headers=auth(SUPER_ADMIN_ID))
        assert response.status_code == 200
        # three policies, the outsider's assignment and GROUP_ADMIN -> MEMBER
        assert response.json() == {"role": "MEMBER", "removed": 5}

        check = client.post(
            "/permissions/check",
            json={"resource": "file", "action": "read", "domain": "group:9"},
            headers=auth(OUTSIDER_ID),
        )
        assert check.json()["allowed"] is False

    def test_delete_role_bad_name(self, client):
        assert client.delete("/permissions/roles/1bad", headers=auth(SUPER_ADMIN_ID)).status_code == 400


# =============================================================================
# Checks and listings
# =============================================================================


@pytest.mark.api
class TestCheckAndListings:
    """Test permission checks and listings."""

    def test_check_self(self, client):
        response = client.post(
            "/permissions/check",
            json={"resource": "file", "action": "upload", "domain": "group:9"},
            headers=auth(OUTSIDER_ID),
        )
        assert response.status_code == 200
        assert response.json() == {
            "allowed": True,
            "subject": f"user:{OUTSIDER_ID}",
            "domain": "group:9",
            "resource": "file",
            "action": "upload",
        }

    def test_check_other_user_needs_permission(self, client):
        body = {"resource": "file", "action": "read", "domain": "group:9", "user": str(GROUP_ADMIN_ID)}
        assert client.post("/permissions/check", json=body, headers=auth(OUTSIDER_ID)).status_code == 403

        body["domain"] = "group:5"
        response = client.post("/permissions/check", json=body, headers=auth(GROUP_ADMIN_ID + 100))
        assert response.status_code == 403

        response = client.post("/permissions/check", json=body, headers=auth(SUPER_ADMIN_ID))
        assert response.status_code == 403  # SUPER_ADMIN holds no role in group:5

    def test_check_store_failure_is_500(self, db_url):
        store = FailingStore()
        client = TestClient(build_app(Enforcer(policies=store, roles=store), db_url))
        response = client.post(
            "/permissions/check",
            json={"resource": "file", "action": "read", "domain": "group:9"},
            headers=auth(OUTSIDER_ID),
        )
        assert response.status_code == 500

    def test_own_permissions(self, client):
        response = client.get(f"/permissions/users/{OUTSIDER_ID}/permissions?domain=group:9", headers=auth(OUTSIDER_ID))
        assert response.status_code == 200
        body = response.json()
        assert body["roles"] == ["MEMBER"]
        assert {(p["resource"], p["action"], p["via_role"]) for p in body["permissions"]} == {
            ("file", "read", "MEMBER"),
            ("file", "upload", "MEMBER"),
            ("file", "download", "MEMBER"),
        }

    def test_other_users_permissions(self, client):
        url = f"/permissions/users/{OUTSIDER_ID}/permissions?domain=group:9"
        assert client.get(url, headers=auth(GROUP_ADMIN_ID)).status_code == 403

        url = f"/permissions/users/{OUTSIDER_ID}/permissions?domain=group:5"
        response = client.get(url, headers=auth(GROUP_ADMIN_ID))
        assert response.status_code == 200
        assert response.json()["permissions"] == []

    def test_bad_domain_parameter(self, client):
        response = client.get(f"/permissions/users/{OUTSIDER_ID}/roles?domain=*", headers=auth(OUTSIDER_ID))
        assert response.status_code == 400

    def test_domain_policy_listing(self, client):
        client.post("/permissions/policies", json=policy(), headers=auth(GROUP_ADMIN_ID))

        response = client.get("/permissions/groups/5/policies", headers=auth(GROUP_ADMIN_ID))
        assert response.status_code == 200
        assert response.json() == {"domain": "group:5", "policies": [policy()]}

        assert client.get("/permissions/groups/6/policies", headers=auth(GROUP_ADMIN_ID)).status_code == 403
        assert client.get("/permissions/projects/1/policies", headers=auth(GROUP_ADMIN_ID)).status_code == 403

    def test_domain_policy_listing_without_id_denied(self, client):
        response = client.get("/permissions/groups/abc/policies", headers=auth(GROUP_ADMIN_ID))
        assert response.status_code == 403
        assert response.json()["detail"]["message"] == "No group scope in request"

    def test_system_policy_listing(self, client):
        response = client.get("/permissions/system/policies", headers=auth(SUPER_ADMIN_ID))
        assert response.status_code == 200
        assert response.json()["policies"] == [policy(subject=SUPER_ADMIN, domain="system", resource="*", action="*")]

    def test_reload_requires_system(self, client):
        assert client.post("/permissions/reload", headers=auth(GROUP_ADMIN_ID)).status_code == 403
        response = client.post("/permissions/reload", headers=auth(SUPER_ADMIN_ID))
        assert response.json() == {"changed": True, "message": "Rules reloaded"}
