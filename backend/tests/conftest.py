"""
Shared fixtures for the credit ledger test suite.

The database is an in-process mongomock_motor instance, so tests exercise the
real query documents (conditional updates, upserts, duplicate ids) without a
MongoDB server.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock
from mongomock_motor import AsyncMongoMockClient

from credit_ledger.account_store import AccountStore
from credit_ledger.db_init import ensure_indexes
from credit_ledger.guard import EntitlementGuard
from credit_ledger.ledger import Ledger
from credit_ledger.provider_client import GenerationProvider
from credit_ledger.reconciliation import ReconciliationIntake
from credit_ledger.settlement import SettlementEngine
from credit_ledger.timestamps import to_iso, utc_now
from utils.auth import create_token


@pytest.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["credit_ledger_test"]
    await ensure_indexes(database)
    return database


@pytest.fixture
def accounts(db):
    return AccountStore(db)


@pytest.fixture
def ledger(db):
    return Ledger(db)


@pytest.fixture
def engine(db):
    return SettlementEngine(db)


@pytest.fixture
def guard(db):
    return EntitlementGuard(db)


@pytest.fixture
def provider():
    """Provider double that accepts every job."""
    mock = AsyncMock(spec=GenerationProvider)
    mock.submit.return_value = "task_abc123"
    mock.query_status.return_value = {"status": "success", "result_urls": ["https://cdn.example/a.mp3"], "error": None}
    return mock


@pytest.fixture
def intake(db, provider):
    return ReconciliationIntake(db, provider)


@pytest.fixture
def credential():
    """Factory for signed bearer credentials."""
    def _make(account_id="user_1", email="user1@example.com", name="User One"):
        return create_token(account_id, email, name)
    return _make


@pytest.fixture
def make_account(accounts, engine):
    """
    Create an account, optionally granting a plan or raw credits.

    Returns the reloaded Account.
    """
    async def _make(account_id="user_1", plan_id=None, credits=None, email="user1@example.com"):
        await accounts.get_or_create(account_id, email, "Test User")
        if plan_id or credits:
            await engine.grant(account_id, plan_id=plan_id, credits=credits)
        return await accounts.require(account_id)
    return _make


@pytest.fixture
def lapse(db):
    """Move an account's expiry into the past."""
    async def _lapse(account_id="user_1", days_ago=1):
        await db.accounts.update_one(
            {"account_id": account_id},
            {"$set": {"expires_at": to_iso(utc_now() - timedelta(days=days_ago))}}
        )
    return _lapse
