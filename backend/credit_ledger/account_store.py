"""
Account Store

Durable record of one entitlement account per end user.

CRITICAL: Every balance mutation is a single conditional
find_one_and_update. The floor check ("balance >= amount") is evaluated by
MongoDB inside the same statement that decrements, so two concurrent debits
can never both observe the pre-decrement balance.

Each mutation also bumps `ledger_seq`, which orders the ledger entries of one
account by commit. `updated_at` only moves forward ($max), so the commit timestamps copied
onto ledger entries are monotonic too.

Only the Settlement Engine calls the apply_* methods.
"""

import logging
import math
from datetime import datetime
from typing import Optional, Tuple, List, Dict, Any

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import StoreUnavailable, UnknownAccount
from .models import Account, AccountSummary, PlanDefinition
from .timestamps import to_iso, parse_iso, utc_now

logger = logging.getLogger(__name__)


class AccountStore:
    """Data access for the `accounts` collection."""

    def __init__(self, db):
        self.db = db

    # ==================== READS ====================

    async def get(self, account_id: str) -> Optional[Account]:
        try:
            doc = await self.db.accounts.find_one({"account_id": account_id}, {"_id": 0})
        except PyMongoError as e:
            logger.error(f"Account read failed for {account_id}: {e}")
            raise StoreUnavailable() from e
        return Account(**doc) if doc else None

    async def require(self, account_id: str) -> Account:
        account = await self.get(account_id)
        if account is None:
            raise UnknownAccount(account_id=account_id)
        return account

    async def find_by_email(self, email: str) -> Optional[Account]:
        if not email:
            return None
        try:
            doc = await self.db.accounts.find_one({"email": email.strip().lower()}, {"_id": 0})
        except PyMongoError as e:
            logger.error(f"Account lookup by email failed: {e}")
            raise StoreUnavailable() from e
        return Account(**doc) if doc else None

    async def find_lapsed(self, now: datetime, limit: int = 500) -> List[Account]:
        """Accounts past their expiry that have not been expired yet."""
        try:
            cursor = self.db.accounts.find(
                {
                    "expires_at": {"$ne": None, "$lt": to_iso(now)},
                    "subscription_status": {"$ne": "expired"}
                },
                {"_id": 0}
            ).limit(limit)
            docs = await cursor.to_list(length=limit)
        except PyMongoError as e:
            logger.error(f"Lapsed account scan failed: {e}")
            raise StoreUnavailable() from e
        return [Account(**doc) for doc in docs]

    # ==================== CREATION ====================

    async def get_or_create(
        self,
        account_id: str,
        email: str = "",
        display_name: str = ""
    ) -> Tuple[Account, bool]:
        """
        Get existing account or create one with no plan and zero balance.

        Uses an upsert with $setOnInsert so concurrent first resolutions of the
        same identity create exactly one document.

        Returns:
            Tuple of (account, created)
        """
        now = to_iso(utc_now())
        email = (email or "").strip().lower()

        account_doc = {
            "account_id": account_id,
            "email": email,
            "display_name": display_name or "",
            "plan_id": "none",
            "balance": 0,
            "total_granted": 0,
            "total_spent": 0,
            "allowed_features": [],
            "allowed_models": [],
            "subscription_status": "none",
            "expires_at": None,
            "purchased_at": None,
            "ledger_seq": 0,
            "created_at": now,
            "updated_at": now
        }

        try:
            result = await self.db.accounts.update_one(
                {"account_id": account_id},
                {"$setOnInsert": account_doc},
                upsert=True
            )
            created = result.upserted_id is not None
        except DuplicateKeyError:
            # Lost the upsert race, the other writer created it
            created = False
        except PyMongoError as e:
            logger.error(f"Account creation failed for {account_id}: {e}")
            raise StoreUnavailable() from e

        account = await self.require(account_id)

        if not created and email and email != account.email:
            await self._update({"account_id": account_id}, {"$set": {"email": email}, "$max": {"updated_at": now}})
            account.email = email

        if created:
            logger.info(f"Created account {account_id}")
        return account, created

    # ==================== CONDITIONAL MUTATIONS ====================

    async def apply_debit(self, account_id: str, amount: int, now: datetime) -> Optional[Account]:
        """Decrement balance by `amount` only if balance >= amount. None if the floor check failed."""
        return await self._update(
            {"account_id": account_id, "balance": {"$gte": amount}},
            {
                "$inc": {"balance": -amount, "total_spent": amount, "ledger_seq": 1},
                "$max": {"updated_at": to_iso(now)}
            }
        )

    async def apply_refund(self, account_id: str, amount: int, now: datetime) -> Optional[Account]:
        """Symmetric reversal of a debit."""
        return await self._update(
            {"account_id": account_id},
            {
                "$inc": {"balance": amount, "total_spent": -amount, "ledger_seq": 1},
                "$max": {"updated_at": to_iso(now)}
            }
        )

    async def apply_grant(
        self,
        account_id: str,
        credits: int,
        now: datetime,
        plan: Optional[PlanDefinition] = None,
        expires_at: Optional[datetime] = None
    ) -> Optional[Account]:
        """
        Add credits and, when a plan is given, snapshot its entitlements.

        Credits stack on the remaining balance. A plan grant overwrites
        plan_id, allow-lists and expiry and reactivates the subscription.
        """
        update: Dict[str, Any] = {
            "$inc": {"balance": credits, "total_granted": credits, "ledger_seq": 1},
            "$max": {"updated_at": to_iso(now)}
        }
        if plan is not None:
            update["$set"] = {
                "plan_id": plan.plan_id,
                "allowed_features": list(plan.features),
                "allowed_models": list(plan.allowed_models),
                "subscription_status": "active",
                "expires_at": to_iso(expires_at) if expires_at else None,
                "purchased_at": to_iso(now)
            }

        return await self._update({"account_id": account_id}, update)

    async def apply_cancel(self, account_id: str, now: datetime) -> Optional[Account]:
        """Mark the subscription cancelled. Balance is left untouched."""
        return await self._update(
            {"account_id": account_id},
            {
                "$inc": {"ledger_seq": 1},
                "$set": {"subscription_status": "cancelled"},
                "$max": {"updated_at": to_iso(now)}
            }
        )

    async def apply_expiry(self, account_id: str, observed_balance: int, now: datetime) -> Optional[Account]:
        """
        Zero the balance and mark the account expired.

        Conditional on the balance still being `observed_balance` and the status
        not yet expired, so the forfeited amount recorded by the caller is exact
        and the transition happens once.
        """
        return await self._update(
            {
                "account_id": account_id,
                "balance": observed_balance,
                "subscription_status": {"$ne": "expired"}
            },
            {
                "$inc": {"balance": -observed_balance, "total_spent": observed_balance, "ledger_seq": 1},
                "$set": {"subscription_status": "expired"},
                "$max": {"updated_at": to_iso(now)}
            }
        )

    async def _update(self, query: Dict[str, Any], update: Dict[str, Any]) -> Optional[Account]:
        try:
            doc = await self.db.accounts.find_one_and_update(
                query,
                update,
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            logger.error(f"Account update failed ({query.get('account_id')}): {e}")
            raise StoreUnavailable() from e
        return Account(**doc) if doc else None

    # ==================== PRESENTATION ====================

    @staticmethod
    def is_lapsed(account: Account, now: datetime) -> bool:
        """True when the stored expiry is in the past, whatever the stored status says."""
        expires_at = parse_iso(account.expires_at)
        return expires_at is not None and expires_at <= now

    @staticmethod
    def summary(account: Account, now: Optional[datetime] = None) -> AccountSummary:
        """Credit info for clients."""
        now = now or utc_now()
        expires_at = parse_iso(account.expires_at)

        days_remaining = 0
        if expires_at and expires_at > now:
            days_remaining = math.ceil((expires_at - now).total_seconds() / 86400)

        is_active = (
            account.subscription_status == "active"
            and account.balance > 0
            and (expires_at is None or expires_at > now)
        )

        return AccountSummary(
            account_id=account.account_id,
            email=account.email,
            display_name=account.display_name,
            plan_id=account.plan_id,
            balance=account.balance,
            total_granted=account.total_granted,
            total_spent=account.total_spent,
            features=account.allowed_features,
            allowed_models=account.allowed_models,
            subscription_status=account.subscription_status,
            expires_at=account.expires_at,
            days_remaining=days_remaining,
            is_active=is_active
        )
