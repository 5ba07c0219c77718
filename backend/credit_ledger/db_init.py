"""
Credit Ledger Database Initialization

Rules:
1. Environment guard - production runs need LEDGER_INIT_CONFIRM=YES
2. Idempotent - safe to run repeatedly, existing collections/indexes are skipped
3. Never destructive - nothing is dropped, deleted or truncated
4. Accounts are created lazily on first identity resolution, not here
5. Dry-run mode - --dry-run prints what it would do
6. Version stamp in ledger_meta

The server applies the same schema (without the version stamp) on startup.

Usage:
    python -m credit_ledger.db_init
    python -m credit_ledger.db_init --dry-run
    APP_ENV=production LEDGER_INIT_CONFIRM=YES python -m credit_ledger.db_init
"""

import os
import sys
import asyncio
import logging
from pathlib import Path
from typing import List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure

from .timestamps import iso_now

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.0.0"

REQUIRED_COLLECTIONS = [
    "accounts",
    "ledger_entries",
    "pending_orders",
    "generation_tasks",
    "payment_events",
    "credit_sync_issues",
    "ledger_meta"
]

# (collection, index_spec, options)
REQUIRED_INDEXES = [
    # accounts: keyed by external identity
    ("accounts", [("account_id", 1)], {"unique": True, "name": "idx_account_id_unique"}),
    ("accounts", [("email", 1)], {"name": "idx_email"}),
    ("accounts", [("subscription_status", 1), ("expires_at", 1)], {"name": "idx_status_expires"}),

    # ledger_entries: _id is the (possibly deterministic) entry id
    ("ledger_entries", [("account_id", 1), ("seq", -1)], {"name": "idx_account_seq"}),
    ("ledger_entries", [("account_id", 1), ("created_at", -1)], {"name": "idx_account_created"}),
    ("ledger_entries", [("external_ref", 1)], {"name": "idx_external_ref"}),

    # pending_orders
    ("pending_orders", [("order_id", 1)], {"unique": True, "name": "idx_order_id_unique"}),
    ("pending_orders", [("account_id", 1), ("status", 1), ("created_at", -1)], {"name": "idx_account_status_created"}),
    ("pending_orders", [("email", 1), ("status", 1), ("created_at", -1)], {"name": "idx_email_status_created"}),

    # generation_tasks
    ("generation_tasks", [("task_id", 1)], {"unique": True, "name": "idx_task_id_unique"}),
    ("generation_tasks", [("account_id", 1), ("created_at", -1)], {"name": "idx_task_account_created"}),
    ("generation_tasks", [("expire_at", 1)], {"name": "idx_task_expire_at"}),

    # audit
    ("payment_events", [("order_id", 1), ("received_at", -1)], {"name": "idx_payment_order"}),
    ("credit_sync_issues", [("resolved", 1), ("created_at", -1)], {"name": "idx_sync_unresolved"}),
]


def check_environment() -> Tuple[bool, str]:
    """
    Returns:
        Tuple of (allowed, message)
    """
    app_env = os.environ.get("APP_ENV", os.environ.get("ENVIRONMENT", "development"))

    if app_env.lower() == "production":
        confirm = os.environ.get("LEDGER_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: LEDGER_INIT_CONFIRM=YES\n"
                f"Current value: LEDGER_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {app_env}"


async def create_collection_if_not_exists(db, collection_name: str, dry_run: bool = False) -> str:
    existing = await db.list_collection_names()

    if collection_name in existing:
        return f"  [SKIP] Collection '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create collection '{collection_name}'"

    try:
        await db.create_collection(collection_name)
        return f"  [CREATE] Created collection '{collection_name}'"
    except CollectionInvalid:
        return f"  [SKIP] Collection '{collection_name}' already exists (race)"


async def create_index_if_not_exists(db, collection_name: str, index_spec: List[Tuple], options: dict, dry_run: bool = False) -> str:
    collection = db[collection_name]
    index_name = options.get("name", str(index_spec))

    existing_indexes = await collection.index_information()
    if index_name in existing_indexes:
        return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{collection_name}'"

    try:
        await collection.create_index(index_spec, **options)
        return f"  [CREATE] Created index '{index_name}' on '{collection_name}'"
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists (race)"
        raise


async def ensure_indexes(db) -> List[str]:
    """Create every required index. Used by server startup and tests."""
    results = []
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        results.append(await create_index_if_not_exists(db, collection_name, index_spec, options))
    return results


async def update_version_stamp(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db.ledger_meta.update_one(
        {"_id": "ledger_init"},
        {"$set": {"version": INIT_VERSION, "applied_at": iso_now()}},
        upsert=True
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def run_init(dry_run: bool = False):
    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, env_message = check_environment()
    logger.info(env_message)
    if not allowed:
        logger.error("Init blocked due to environment guard")
        sys.exit(1)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')
    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        sys.exit(1)

    logger.info(f"Database: {db_name} | Dry Run: {dry_run}")

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    try:
        await client.admin.command('ping')
    except Exception as e:
        logger.error(f"MongoDB connection failed: {e}")
        sys.exit(1)

    try:
        logger.info("=== Collections ===")
        for collection_name in REQUIRED_COLLECTIONS:
            logger.info(await create_collection_if_not_exists(db, collection_name, dry_run))

        logger.info("=== Indexes ===")
        for collection_name, index_spec, options in REQUIRED_INDEXES:
            logger.info(await create_index_if_not_exists(db, collection_name, index_spec, options, dry_run))

        logger.info("=== Version Stamp ===")
        logger.info(await update_version_stamp(db, dry_run))
    finally:
        client.close()

    logger.info("SUCCESS: credit ledger DB init completed")


def main():
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Credit Ledger Database Initialization")
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )
    args = parser.parse_args()

    asyncio.run(run_init(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
