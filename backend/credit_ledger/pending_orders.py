"""
Pending Orders - Paid intents waiting for a payment confirmation

State machine:
    pending --(payment observed + operation dispatched)--> fulfilled
    pending --(older than the retention window)----------> expired

No transition leaves fulfilled or expired. Both transitions are conditional
on status == pending, so a late payment cannot revive an expired order and a
sweep cannot expire a fulfilled one.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .config import PENDING_ORDER_TTL_MINUTES, DISPATCH_LEASE_SECONDS, OPERATIONS
from .errors import StoreUnavailable, PendingOrderNotFound, UnsupportedOperation
from .models import PendingOrder
from .timestamps import utc_now, to_iso

logger = logging.getLogger(__name__)


class PendingOrderStore:
    """Data access for the `pending_orders` collection."""

    def __init__(self, db):
        self.db = db

    async def create(
        self,
        email: str,
        operation: str,
        parameters: Dict[str, Any],
        display_name: str = "",
        account_id: Optional[str] = None
    ) -> PendingOrder:
        if operation not in OPERATIONS:
            raise UnsupportedOperation(operation=operation)

        order = PendingOrder(
            order_id=f"order_{uuid.uuid4().hex}",
            account_id=account_id,
            email=email.strip().lower(),
            display_name=display_name or "",
            operation=operation,
            requested_operation=parameters,
            status="pending",
            created_at=to_iso(utc_now())
        )
        try:
            await self.db.pending_orders.insert_one(order.model_dump())
        except PyMongoError as e:
            logger.error(f"Pending order creation failed: {e}")
            raise StoreUnavailable() from e

        logger.info(f"Created pending order {order.order_id} ({operation}) for {order.email}")
        return order

    async def get(self, order_id: str) -> PendingOrder:
        try:
            doc = await self.db.pending_orders.find_one({"order_id": order_id}, {"_id": 0})
        except PyMongoError as e:
            raise StoreUnavailable() from e
        if not doc:
            raise PendingOrderNotFound(order_id=order_id)
        return PendingOrder(**doc)

    async def find_pending_for(
        self,
        account_id: Optional[str] = None,
        email: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Optional[PendingOrder]:
        """Newest pending order for the identity or email inside the retention window."""
        clauses = []
        if account_id:
            clauses.append({"account_id": account_id})
        if email:
            clauses.append({"email": email.strip().lower()})
        if not clauses:
            return None

        cutoff = (now or utc_now()) - timedelta(minutes=PENDING_ORDER_TTL_MINUTES)
        query = {
            "$or": clauses,
            "status": "pending",
            "created_at": {"$gte": to_iso(cutoff)}
        }
        try:
            docs = await self.db.pending_orders.find(query, {"_id": 0}).sort("created_at", -1).limit(1).to_list(length=1)
        except PyMongoError as e:
            raise StoreUnavailable() from e
        return PendingOrder(**docs[0]) if docs else None

    async def attach_payment(self, order_id: str, account_id: str, payment_ref: Optional[str]) -> None:
        try:
            await self.db.pending_orders.update_one(
                {"order_id": order_id, "status": "pending"},
                {"$set": {"account_id": account_id, "payment_ref": payment_ref}}
            )
        except PyMongoError as e:
            raise StoreUnavailable() from e

    async def claim_dispatch(self, order_id: str, now: Optional[datetime] = None) -> Optional[PendingOrder]:
        """
        Take the dispatch lease on a pending order.

        Returns None while another dispatcher holds an unexpired lease, so two
        concurrent payment replays cannot submit the same operation twice.
        """
        now = now or utc_now()
        lease_cutoff = to_iso(now - timedelta(seconds=DISPATCH_LEASE_SECONDS))
        try:
            doc = await self.db.pending_orders.find_one_and_update(
                {
                    "order_id": order_id,
                    "status": "pending",
                    "$or": [
                        {"dispatch_claimed_at": None},
                        {"dispatch_claimed_at": {"$lt": lease_cutoff}}
                    ]
                },
                {"$set": {"dispatch_claimed_at": to_iso(now)}},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise StoreUnavailable() from e
        return PendingOrder(**doc) if doc else None

    async def release_dispatch(self, order_id: str) -> None:
        try:
            await self.db.pending_orders.update_one(
                {"order_id": order_id, "status": "pending"},
                {"$set": {"dispatch_claimed_at": None}}
            )
        except PyMongoError as e:
            logger.error(f"Could not release dispatch lease on {order_id}: {e}")

    async def mark_fulfilled(self, order_id: str, external_ref: str) -> Optional[PendingOrder]:
        """pending -> fulfilled, linking the provider task id."""
        try:
            doc = await self.db.pending_orders.find_one_and_update(
                {"order_id": order_id, "status": "pending"},
                {"$set": {
                    "status": "fulfilled",
                    "external_ref": external_ref,
                    "fulfilled_at": to_iso(utc_now())
                }},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise StoreUnavailable() from e
        if doc:
            logger.info(f"Pending order {order_id} fulfilled with task {external_ref}")
        return PendingOrder(**doc) if doc else None

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """pending -> expired for orders older than the retention window."""
        cutoff = (now or utc_now()) - timedelta(minutes=PENDING_ORDER_TTL_MINUTES)
        try:
            result = await self.db.pending_orders.update_many(
                {"status": "pending", "created_at": {"$lt": to_iso(cutoff)}},
                {"$set": {"status": "expired"}}
            )
        except PyMongoError as e:
            raise StoreUnavailable() from e
        if result.modified_count:
            logger.info(f"Expired {result.modified_count} stale pending order(s)")
        return result.modified_count
