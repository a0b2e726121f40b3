"""
Storage models for the authorization engine.

``CasbinRule`` mirrors the table that ``casbin_async_sqlalchemy_adapter``
reads and writes, so ``init_db`` creates it with the rest of the schema:

    ptype  v0        v1        v2        v3
    p      subject   domain    resource  action     policy grant
    g      user:<id> role      domain    -          role assignment
    g      role      parent    domain    -          role link

Unused columns hold NULL.
"""
from typing import Any, Dict
from sqlalchemy import String, Integer, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from app.core.database.base import Base, TimestampMixin


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return ulid.new().str


class CasbinRule(Base, TimestampMixin):
    """One persisted Casbin rule."""
    __tablename__ = "casbin_rule"

    # Integer id, as the adapter expects
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    ptype: Mapped[str | None] = mapped_column(String(255), nullable=True)
    v0: Mapped[str | None] = mapped_column(String(255), nullable=True)
    v1: Mapped[str | None] = mapped_column(String(255), nullable=True)
    v2: Mapped[str | None] = mapped_column(String(255), nullable=True)
    v3: Mapped[str | None] = mapped_column(String(255), nullable=True)
    v4: Mapped[str | None] = mapped_column(String(255), nullable=True)
    v5: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_casbin_rule_ptype_v0", "ptype", "v0"),
    )

    def __repr__(self) -> str:
        return (
            f"<CasbinRule(ptype={self.ptype}, v0={self.v0!r}, v1={self.v1!r}, "
            f"v2={self.v2!r}, v3={self.v3!r})>"
        )


class AuditLog(Base, TimestampMixin):
    """
    Audit log for policy and role changes.

    Tracks who changed what, in which domain, and from where.
    """
    __tablename__ = "audit_logs"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor subject, e.g. "user:42"
    actor: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    domain: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, actor={self.actor}, action={self.action}, resource={self.resource_type})>"
