"""
Tests for the Account Store

Store failures are exercised against an AsyncMock database so the
PyMongoError -> StoreUnavailable translation is checked without Mongo.
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from pymongo.errors import ServerSelectionTimeoutError

from credit_ledger.account_store import AccountStore
from credit_ledger.errors import StoreUnavailable, UnknownAccount
from credit_ledger.models import Account
from credit_ledger.timestamps import to_iso, utc_now


class TestStoreFailures:

    @pytest.fixture
    def mock_db(self):
        db = MagicMock()
        db.accounts.find_one = AsyncMock(side_effect=ServerSelectionTimeoutError("no primary"))
        db.accounts.find_one_and_update = AsyncMock(side_effect=ServerSelectionTimeoutError("no primary"))
        return db

    @pytest.mark.asyncio
    async def test_read_failure_is_store_unavailable(self, mock_db):
        with pytest.raises(StoreUnavailable):
            await AccountStore(mock_db).get("user_1")

    @pytest.mark.asyncio
    async def test_debit_failure_is_store_unavailable(self, mock_db):
        with pytest.raises(StoreUnavailable):
            await AccountStore(mock_db).apply_debit("user_1", 1, utc_now())

    @pytest.mark.asyncio
    async def test_missing_account(self):
        db = MagicMock()
        db.accounts.find_one = AsyncMock(return_value=None)
        with pytest.raises(UnknownAccount):
            await AccountStore(db).require("ghost")


class TestGetOrCreate:

    async def test_creates_once(self, accounts):
        first, created = await accounts.get_or_create("user_1", "User1@Example.com", "One")
        second, created_again = await accounts.get_or_create("user_1", "user1@example.com", "One")

        assert created is True
        assert created_again is False
        assert first.email == "user1@example.com"
        assert second.plan_id == "none"
        assert second.balance == 0

    async def test_email_change_is_recorded(self, accounts):
        await accounts.get_or_create("user_1", "old@example.com")
        account, _ = await accounts.get_or_create("user_1", "new@example.com")

        assert account.email == "new@example.com"
        assert (await accounts.find_by_email("NEW@example.com")).account_id == "user_1"

    async def test_debit_floor(self, accounts, make_account):
        await make_account(credits=1)
        assert await accounts.apply_debit("user_1", 2, utc_now()) is None
        assert (await accounts.apply_debit("user_1", 1, utc_now())).balance == 0


class TestSummary:

    def test_days_remaining_rounds_up(self):
        now = utc_now()
        account = Account(
            account_id="a",
            plan_id="tier1",
            balance=5,
            subscription_status="active",
            expires_at=to_iso(now + timedelta(days=2, hours=1))
        )
        summary = AccountStore.summary(account, now)
        assert summary.days_remaining == 3
        assert summary.is_active is True

    def test_lapsed_account_is_inactive(self):
        now = utc_now()
        account = Account(
            account_id="a",
            balance=5,
            subscription_status="active",
            expires_at=to_iso(now - timedelta(minutes=1))
        )
        assert AccountStore.is_lapsed(account, now) is True
        assert AccountStore.summary(account, now).is_active is False
        assert AccountStore.summary(account, now).days_remaining == 0

    def test_cancelled_with_balance_is_inactive(self):
        account = Account(account_id="a", balance=5, subscription_status="cancelled")
        assert AccountStore.summary(account).is_active is False
