"""
Async MongoDB plan store using Motor for non-blocking I/O.

Each execution thread owns one document holding its current plan snapshot
(`ExecutionPlan.to_dict()`); replacing a plan overwrites the document.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from motor.motor_asyncio import AsyncIOMotorClient

from ...planner_exec.plan_step import ExecutionPlan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MongoPlanStoreConfig:
    uri: str = "mongodb://localhost:27017"
    db_name: str = "plancore"
    collection: str = "execution_plans"


def _to_document(key: str, plan: ExecutionPlan) -> Dict[str, Any]:
    # tool results may hold values BSON cannot encode; store their JSON form
    snapshot = json.loads(json.dumps(plan.to_dict(), default=str))
    return {
        "_id": key,
        "thread": key,
        "plan_id": plan.id,
        "status": plan.status.value,
        "plan": snapshot,
        "updated_at": datetime.now(timezone.utc),
    }


class AsyncMongoPlanStore:
    """
    Persistent PlanStore backed by a Motor collection.

    Example:
        ```python
        store = AsyncMongoPlanStore(MongoPlanStoreConfig(uri="mongodb://localhost:27017"))
        planner = PlanAndExecutePlanner(llm, store=store)
        ```
    """

    def __init__(self, config: MongoPlanStoreConfig, client: Optional[Any] = None):
        """
        Parameters:
        -----------
        config : MongoPlanStoreConfig
            Connection URI, database and collection names
        client : optional
            Pre-built Motor client (shared pools, tests)
        """
        self.config = config
        self.async_client = client or AsyncIOMotorClient(
            config.uri,
            maxPoolSize=50,           # Max concurrent connections
            minPoolSize=10,           # Min pooled connections
            maxIdleTimeMS=60000,      # 1 minute idle timeout
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=10000,
            socketTimeoutMS=20000,
            retryWrites=True,
            retryReads=True,
            appname='plancore-async'
        )
        self.async_db = self.async_client[config.db_name]
        self.async_plans_collection = self.async_db[config.collection]

        logger.info("AsyncMongoPlanStore initialized with connection pooling")

    async def get(self, key: str) -> Optional[ExecutionPlan]:
        doc = await self.async_plans_collection.find_one({"_id": key})
        if not doc or not isinstance(doc.get("plan"), dict):
            return None
        return ExecutionPlan.from_dict(doc["plan"])

    async def save(self, key: str, plan: ExecutionPlan) -> None:
        plan.metadata.thread = key
        await self.async_plans_collection.replace_one({"_id": key}, _to_document(key, plan), upsert=True)
        logger.debug(f"Saved plan {plan.id} ({plan.status.value}) for thread {key}")

    async def delete(self, key: str) -> None:
        await self.async_plans_collection.delete_one({"_id": key})

    async def ensure_indexes_async(self):
        """Index plan id and status for lookups from dashboards and cleanup jobs."""
        try:
            await self.async_plans_collection.create_index(
                [("plan_id", 1)], name="plan_id_idx", background=True
            )
            await self.async_plans_collection.create_index(
                [("status", 1), ("updated_at", -1)], name="status_time_idx", background=True
            )
            logger.info(f"Created indexes for {self.config.collection} collection")
        except Exception as e:
            logger.warning(f"Failed to create indexes for {self.config.collection}: {e}")

    async def close_async(self):
        """Close async client connections properly"""
        self.async_client.close()
        logger.info("AsyncMongoPlanStore connections closed")
