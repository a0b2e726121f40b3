"""
Seed script to populate the default role policies.

Run this script to create, without starting the server:
- Default role policies (SUPER_ADMIN, GROUP_ADMIN, MEMBER, PROJECT_ADMIN, EDITOR, VIEWER)
- Default role inheritance links
- Optionally, a SUPER_ADMIN assignment for one user in the system domain

Usage:
    python -m scripts.seed_policies
    python -m scripts.seed_policies --admin 42
"""
import argparse
import asyncio

from app.core import config
from app.core.database.engine import engine, init_db
from app.features.permissions.defaults import DEFAULT_POLICIES, DEFAULT_ROLE_LINKS, seed_default_policies
from app.features.permissions.enforcer import Enforcer
from app.features.permissions.errors import PolicyStoreError
from app.features.permissions.sql_store import SQLRuleStore
from app.utils import get_logger


log = get_logger(__name__)


async def main(admin_id=None):
    """Main function to seed policies and role links."""
    log.info("Starting policy seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    store = SQLRuleStore(engine)
    try:
        await store.reload()
        created = await seed_default_policies(Enforcer(policies=store, roles=store), admin_id)
    except PolicyStoreError as e:
        log.error(f"Error seeding policies: {e}", exc_info=True)
        raise

    log.info("Policy seeding completed successfully!")
    log.info(f"{created} new rules, {store.rules().size} rules in total")
    log.info("Default policies:")
    for subject, domain, resource, action in DEFAULT_POLICIES:
        log.info(f"  - {subject}: {action} on {resource} in {domain}")
    for role, parent, domain in DEFAULT_ROLE_LINKS:
        log.info(f"  - {role} implies {parent} in {domain}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the default authorization policies")
    parser.add_argument("--admin", default=config.RBAC_BOOTSTRAP_ADMIN_ID, help="user id to make SUPER_ADMIN")
    args = parser.parse_args()
    asyncio.run(main(args.admin))
