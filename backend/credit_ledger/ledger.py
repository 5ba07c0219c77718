"""
Ledger - Transaction log for balance-affecting events

Entries are immutable once completed. Every settlement claims its entry id
before touching the account. Idempotent operations (payment grants, refunds,
cancellation events) use a deterministic id:

    grant:<orderId>         one grant per payment order
    refund:<spendEntryId>   one refund per spend
    cancellation:<orderId>  one cancellation per event
    expiry:<orderId>        one expiry per expiration event

The claim is inserted as `pending`. A replay collides on `_id` and is
reported as DuplicateEvent. Once the account mutation commits, the claim is
completed with the balance snapshot and commit sequence. If the mutation
fails, the claim is released so the event can be retried.
"""

import logging
import uuid
from typing import Optional, List, Dict, Any

from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import DuplicateEvent, StoreUnavailable
from .models import Account, LedgerEntry
from .timestamps import iso_now

logger = logging.getLogger(__name__)


def grant_entry_id(order_id: str) -> str:
    return f"grant:{order_id}"


def refund_entry_id(spend_entry_id: str) -> str:
    return f"refund:{spend_entry_id}"


def cancellation_entry_id(order_id: str) -> str:
    return f"cancellation:{order_id}"


def expiry_entry_id(order_id: str) -> str:
    return f"expiry:{order_id}"


def new_entry_id(kind: str) -> str:
    return f"{kind}:{uuid.uuid4().hex}"


class Ledger:
    """Data access for the `ledger_entries` collection."""

    def __init__(self, db):
        self.db = db

    # ==================== WRITES ====================

    async def claim(
        self,
        entry_id: str,
        account_id: str,
        kind: str,
        action: str,
        amount: int,
        external_ref: Optional[str] = None,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Reserve a deterministic entry id before applying its mutation.

        Raises:
            DuplicateEvent if the id was already claimed
        """
        doc = {
            "_id": entry_id,
            "entry_id": entry_id,
            "account_id": account_id,
            "kind": kind,
            "action": action,
            "amount": amount,
            "balance_after": None,
            "external_ref": external_ref,
            "status": "pending",
            "seq": None,
            "description": description,
            "metadata": metadata or {},
            "created_at": iso_now()
        }
        try:
            await self.db.ledger_entries.insert_one(doc)
        except DuplicateKeyError:
            logger.info(f"Duplicate ledger claim {entry_id}, skipping")
            raise DuplicateEvent(entry_id=entry_id, external_ref=external_ref)
        except PyMongoError as e:
            logger.error(f"Ledger claim failed for {entry_id}: {e}")
            raise StoreUnavailable() from e

    async def complete(self, entry_id: str, account: Account) -> LedgerEntry:
        """Move a pending claim to completed with the committed balance snapshot."""
        try:
            await self.db.ledger_entries.update_one(
                {"_id": entry_id, "status": "pending"},
                {"$set": {
                    "status": "completed",
                    "balance_after": account.balance,
                    "seq": account.ledger_seq,
                    "created_at": account.updated_at
                }}
            )
        except PyMongoError as e:
            logger.error(f"Ledger completion failed for {entry_id}: {e}")
            raise StoreUnavailable() from e

        entry = await self.get(entry_id)
        if entry is None:
            raise StoreUnavailable(entry_id=entry_id)
        return entry

    async def release(self, entry_id: str) -> None:
        """Drop a pending claim whose mutation did not commit."""
        try:
            await self.db.ledger_entries.delete_one({"_id": entry_id, "status": "pending"})
        except PyMongoError as e:
            # Claim stays pending; a replay reports DuplicateEvent until an operator clears it
            logger.error(f"Could not release ledger claim {entry_id}: {e}")

    # ==================== READS ====================

    async def get(self, entry_id: str) -> Optional[LedgerEntry]:
        try:
            doc = await self.db.ledger_entries.find_one({"_id": entry_id}, {"_id": 0})
        except PyMongoError as e:
            logger.error(f"Ledger read failed for {entry_id}: {e}")
            raise StoreUnavailable() from e
        return LedgerEntry(**doc) if doc else None

    async def find_by_external_ref(self, external_ref: str, kind: Optional[str] = None) -> List[LedgerEntry]:
        query: Dict[str, Any] = {"external_ref": external_ref}
        if kind:
            query["kind"] = kind
        try:
            docs = await self.db.ledger_entries.find(query, {"_id": 0}).to_list(length=100)
        except PyMongoError as e:
            logger.error(f"Ledger lookup by external ref failed: {e}")
            raise StoreUnavailable() from e
        return [LedgerEntry(**doc) for doc in docs]

    async def history(
        self,
        account_id: str,
        limit: int = 50,
        skip: int = 0,
        kind: Optional[str] = None,
        action: Optional[str] = None
    ) -> List[LedgerEntry]:
        """Completed entries for one account, newest commit first."""
        query: Dict[str, Any] = {"account_id": account_id, "status": {"$ne": "pending"}}
        if kind:
            query["kind"] = kind
        if action:
            query["action"] = action

        try:
            cursor = self.db.ledger_entries.find(query, {"_id": 0}).sort("seq", -1).skip(skip).limit(limit)
            docs = await cursor.to_list(length=limit)
        except PyMongoError as e:
            logger.error(f"Ledger history read failed for {account_id}: {e}")
            raise StoreUnavailable() from e
        return [LedgerEntry(**doc) for doc in docs]

    async def count(self, account_id: str) -> int:
        try:
            return await self.db.ledger_entries.count_documents(
                {"account_id": account_id, "status": {"$ne": "pending"}}
            )
        except PyMongoError as e:
            raise StoreUnavailable() from e

    async def stats(self, account_id: str) -> Dict[str, Any]:
        """Spend counts per action for one account."""
        pipeline = [
            {"$match": {"account_id": account_id, "kind": "spend", "status": "completed"}},
            {"$group": {"_id": "$action", "count": {"$sum": 1}, "credits": {"$sum": "$amount"}}}
        ]
        try:
            rows = await self.db.ledger_entries.aggregate(pipeline).to_list(length=50)
        except PyMongoError as e:
            logger.error(f"Ledger stats failed for {account_id}: {e}")
            raise StoreUnavailable() from e

        by_action = {row["_id"]: {"count": row["count"], "credits": -row["credits"]} for row in rows}
        return {
            "by_action": by_action,
            "total_operations": sum(v["count"] for v in by_action.values()),
            "total_credits_spent": sum(v["credits"] for v in by_action.values())
        }

    async def totals(self) -> Dict[str, Any]:
        """Aggregate signed amounts per entry kind across all accounts (admin)."""
        pipeline = [
            {"$match": {"status": "completed"}},
            {"$group": {"_id": "$kind", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}}
        ]
        try:
            rows = await self.db.ledger_entries.aggregate(pipeline).to_list(length=10)
        except PyMongoError as e:
            raise StoreUnavailable() from e
        return {row["_id"]: {"total": row["total"], "count": row["count"]} for row in rows}
