"""
Database backed rule store.

Rules live in the ``casbin_rule`` table through ``casbin_async_sqlalchemy_adapter``.
Every mutation is written by the adapter before the in-memory model changes,
under the writer lock inherited from ``CasbinRuleStore``, so a mutation that
returned is visible to every later check in this process. Reads never touch
the database.

Other processes sharing the database pick up changes on ``reload()``.
"""
from casbin_async_sqlalchemy_adapter import Adapter as CasbinSQLAdapter
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from app.features.permissions.errors import PolicyStoreError
from app.features.permissions.store import CasbinRuleStore, RuleSet
from app.utils import get_logger


log = get_logger(__name__)


class SQLRuleStore(CasbinRuleStore):
    """
    Write-through store over an async SQLAlchemy engine (or database URL).

    Usage:
        store = SQLRuleStore(engine)
        await store.reload()
    """

    storage_errors = (SQLAlchemyError,)

    def __init__(self, engine: AsyncEngine | str):
        super().__init__(CasbinSQLAdapter(engine))

    async def reload(self) -> RuleSet:
        """Replace the in-memory rules with the current table contents."""
        async with self._lock:
            try:
                await self._casbin.load_policy()
            except SQLAlchemyError as e:
                log.error(f"Failed to load authorization rules: {e}")
                raise PolicyStoreError("Failed to load authorization rules") from e

        rules = self.rules()
        log.info(
            f"Loaded {len(rules.policies)} policies, {len(rules.assignments)} role assignments "
            f"and {len(rules.links)} role links"
        )
        return rules
