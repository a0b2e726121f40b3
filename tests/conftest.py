"""Shared fixtures.

- store / enforcer: in-memory Casbin rule store and an enforcer over it
- seeded_store(): builds an in-memory store holding the given rules
- FailingStore: a store whose reads raise, for fail-closed tests
- token(): signed bearer token for a user id
- db_url: file backed SQLite database with all tables created
"""

from typing import Iterable

import jwt
import pytest
from sqlalchemy import create_engine

from app.core import config
from app.core.database.base import Base
from app.features.permissions.models import AuditLog, CasbinRule  # noqa: F401
from app.features.permissions.enforcer import Enforcer
from app.features.permissions.store import CasbinRuleStore
from app.features.permissions.types import PolicyRule, RoleAssignment, RoleLink


async def seeded_store(
    policies: Iterable[tuple] = (),
    assignments: Iterable[tuple] = (),
    links: Iterable[tuple] = (),
) -> CasbinRuleStore:
    store = CasbinRuleStore()
    await store.add_policies([PolicyRule.of(*p) for p in policies])
    for a in assignments:
        await store.assign_role(RoleAssignment.of(*a))
    for link in links:
        await store.add_role_link(RoleLink.of(*link))
    return store


class FailingStore(CasbinRuleStore):
    """Reads fail as if the backing database were gone."""

    async def match_policies(self, subject, domain, resource, action):
        raise RuntimeError("database unavailable")

    async def roles_for_subject(self, user, domain):
        raise RuntimeError("database unavailable")


def token(user_id) -> str:
    return jwt.encode({"user_id": user_id}, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def auth(user_id) -> dict:
    return {"Authorization": f"Bearer {token(user_id)}"}


@pytest.fixture
def store():
    return CasbinRuleStore()


@pytest.fixture
def enforcer(store):
    return Enforcer(policies=store, roles=store)


@pytest.fixture
def db_url(tmp_path):
    """Async URL of a fresh SQLite file; tables are created with the sync driver."""
    path = tmp_path / "authz.db"
    sync_engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()
    return f"sqlite+aiosqlite:///{path}"
