#!/usr/bin/env python3
"""
RBAC maintenance script.

This script:
1. Creates the RBAC tables and seeds system permissions and roles
2. Deactivates expired role assignments
3. Prints role, permission and assignment statistics

Usage:
    python scripts/seed_rbac.py --seed               # Create tables, seed permissions and roles
    python scripts/seed_rbac.py --cleanup-expired    # Deactivate expired assignments
    python scripts/seed_rbac.py --stats              # Show statistics
"""

import argparse
import asyncio
import json
import logging
import os
import sys

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from config.logging_config import configure_logging
from config.settings import get_settings
from database.engine import close_database, get_session, init_database
from rbac.assignments import AssignmentEngine
from rbac.catalog import PermissionCatalog
from rbac.exceptions import RBACError
from rbac.hierarchy import RoleHierarchy
from rbac.seed import seed_all

logger = logging.getLogger(__name__)


async def show_stats(session) -> dict:
    return {
        "roles": await RoleHierarchy(session).get_statistics(),
        "permissions": await PermissionCatalog(session).get_statistics(),
        "assignments": await AssignmentEngine(session).get_assignment_statistics(),
    }


async def run(args) -> int:
    await init_database()
    try:
        async with get_session() as session:
            if args.seed:
                summary = await seed_all(session)
                logger.info(f"Seeding complete: {summary}")

            if args.cleanup_expired:
                result = await AssignmentEngine(session).cleanup_expired_assignments()
                logger.info(result.message)

            if args.stats:
                print(json.dumps(await show_stats(session), indent=2, default=str))
        return 0
    except RBACError as e:
        logger.error(f"RBAC maintenance failed: {e}", exc_info=True)
        return 1
    finally:
        await close_database()


def main():
    parser = argparse.ArgumentParser(description="RBAC seeding and maintenance")
    parser.add_argument("--seed", action="store_true", help="Create tables and seed system permissions and roles")
    parser.add_argument("--cleanup-expired", action="store_true", help="Deactivate expired role assignments")
    parser.add_argument("--stats", action="store_true", help="Show role, permission and assignment statistics")

    args = parser.parse_args()

    if not any([args.seed, args.cleanup_expired, args.stats]):
        parser.print_help()
        return 1

    settings = get_settings()
    configure_logging(level=settings.log_level, json_output=settings.log_json)

    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
