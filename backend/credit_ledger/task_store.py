"""
Generation task records

Durable replacement for an in-process task map: one document per dispatched
provider job, updated by provider callbacks and status polls, and removed by
the scheduler once `expire_at` has passed.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .config import TASK_RECORD_TTL_HOURS
from .errors import StoreUnavailable
from .models import GenerationTask
from .timestamps import utc_now, to_iso

logger = logging.getLogger(__name__)


class TaskStore:
    """Data access for the `generation_tasks` collection."""

    def __init__(self, db):
        self.db = db

    async def record(
        self,
        task_id: str,
        operation: str,
        account_id: Optional[str] = None,
        order_id: Optional[str] = None
    ) -> GenerationTask:
        now = utc_now()
        task = GenerationTask(
            task_id=task_id,
            account_id=account_id,
            operation=operation,
            status="submitted",
            created_at=to_iso(now),
            updated_at=to_iso(now),
            expire_at=to_iso(now + timedelta(hours=TASK_RECORD_TTL_HOURS))
        )
        # A provider callback may have created the record first, ownership is set either way
        try:
            doc = await self.db.generation_tasks.find_one_and_update(
                {"task_id": task_id},
                {
                    "$set": {"account_id": account_id, "operation": operation, "order_id": order_id},
                    "$setOnInsert": {
                        "status": task.status,
                        "result_urls": [],
                        "error": None,
                        "created_at": task.created_at,
                        "updated_at": task.updated_at,
                        "expire_at": task.expire_at
                    }
                },
                projection={"_id": 0, "order_id": 0},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise StoreUnavailable() from e
        return GenerationTask(**doc) if doc else task

    async def get(self, task_id: str) -> Optional[GenerationTask]:
        try:
            doc = await self.db.generation_tasks.find_one({"task_id": task_id}, {"_id": 0, "order_id": 0})
        except PyMongoError as e:
            raise StoreUnavailable() from e
        return GenerationTask(**doc) if doc else None

    async def update_status(
        self,
        task_id: str,
        status: str,
        result_urls: Optional[List[str]] = None,
        error: Optional[str] = None
    ) -> Optional[GenerationTask]:
        """
        Store the latest provider state. Unknown task ids are recorded so a
        callback that races the dispatch response is not lost.
        """
        now = utc_now()
        update: Dict[str, Any] = {
            "$set": {"status": status, "updated_at": to_iso(now)},
            "$setOnInsert": {
                "task_id": task_id,
                "account_id": None,
                "operation": "unknown",
                "created_at": to_iso(now),
                "expire_at": to_iso(now + timedelta(hours=TASK_RECORD_TTL_HOURS))
            }
        }
        if result_urls:
            update["$set"]["result_urls"] = result_urls
        if error:
            update["$set"]["error"] = error

        try:
            doc = await self.db.generation_tasks.find_one_and_update(
                {"task_id": task_id},
                update,
                projection={"_id": 0, "order_id": 0},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise StoreUnavailable() from e
        return GenerationTask(**doc) if doc else None

    async def list_for_account(self, account_id: str, limit: int = 20) -> List[GenerationTask]:
        try:
            cursor = self.db.generation_tasks.find(
                {"account_id": account_id},
                {"_id": 0, "order_id": 0}
            ).sort("created_at", -1).limit(limit)
            docs = await cursor.to_list(length=limit)
        except PyMongoError as e:
            raise StoreUnavailable() from e
        return [GenerationTask(**doc) for doc in docs]

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        try:
            result = await self.db.generation_tasks.delete_many(
                {"expire_at": {"$lt": to_iso(now or utc_now())}}
            )
        except PyMongoError as e:
            raise StoreUnavailable() from e
        if result.deleted_count:
            logger.info(f"Removed {result.deleted_count} expired task record(s)")
        return result.deleted_count
