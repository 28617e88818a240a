"""
Append-only security event stream.

Every ceremony outcome is written here before the ceremony returns, and mirrored to the
security logger. Events are never updated; the only deletion is the bulk retention sweep.
"""

from typing import Any, Dict, List, Optional
import uuid

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo import DESCENDING

from passkey_readiness.config import settings
from passkey_readiness.database import db_manager
from passkey_readiness.managers.logging_manager import get_logger
from passkey_readiness.routes.auth.models import ClientContext, SecurityEvent, Severity
from passkey_readiness.utils.datetime_utils import Clock, days_ago, utc_now
from passkey_readiness.utils.logging_utils import (
    log_database_operation,
    log_security_event,
    sanitize_security_details,
)

logger = get_logger(prefix="[Security Events]")

MAX_PAGE_SIZE = 100


class SecurityEventSink:
    """Writes and queries SecurityEvent records."""

    def __init__(self, collection: Optional[AsyncIOMotorCollection] = None, clock: Clock = utc_now):
        self._collection = collection
        self.clock = clock

    @property
    def collection(self) -> AsyncIOMotorCollection:
        if self._collection is None:
            return db_manager.get_collection(settings.SECURITY_EVENTS_COLLECTION)
        return self._collection

    @log_database_operation("security_events", "insert")
    async def log_event(
        self,
        event_type: str,
        event_data: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        client: Optional[ClientContext] = None,
        severity: Severity = Severity.LOW,
        success: bool = True,
    ) -> SecurityEvent:
        """
        Append one event.

        ``event_data`` is sanitized before it is stored; codes, keys and credential
        material never reach the audit stream.
        """
        client = client or ClientContext()
        event = SecurityEvent(
            id=str(uuid.uuid4()),
            event_type=event_type,
            event_data=sanitize_security_details(event_data or {}),
            user_id=user_id,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            severity=severity,
            timestamp=self.clock(),
        )
        await self.collection.insert_one(event.model_dump())
        log_security_event(
            event_type=event_type,
            user_id=user_id,
            ip_address=client.ip_address,
            success=success,
            details={"severity": event.severity, **event.event_data},
        )
        return event

    async def get_events(
        self,
        page: int = 1,
        limit: int = 20,
        event_type: Optional[str] = None,
        severity: Optional[Severity] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Newest-first page of events with the total matching count."""
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        query: Dict[str, Any] = {}
        if event_type:
            query["event_type"] = event_type
        if severity:
            query["severity"] = Severity(severity).value
        if user_id:
            query["user_id"] = user_id

        docs = (
            await self.collection.find(query)
            .sort("timestamp", DESCENDING)
            .skip((page - 1) * limit)
            .limit(limit)
            .to_list(length=None)
        )
        total = await self.collection.count_documents(query)
        return {
            "events": [SecurityEvent(**doc) for doc in docs],
            "total": total,
            "page": page,
            "limit": limit,
        }

    async def _group_counts(self, field: str) -> Dict[str, int]:
        pipeline: List[Dict[str, Any]] = [{"$group": {"_id": f"${field}", "count": {"$sum": 1}}}]
        counts: Dict[str, int] = {}
        async for row in self.collection.aggregate(pipeline):
            counts[row["_id"] or "unknown"] = row["count"]
        return counts

    async def get_event_stats(self) -> Dict[str, Any]:
        one_day_ago = days_ago(1, self.clock())
        return {
            "total_events": await self.collection.count_documents({}),
            "recent_events": await self.collection.count_documents({"timestamp": {"$gte": one_day_ago}}),
            "events_by_severity": await self._group_counts("severity"),
            "events_by_type": await self._group_counts("event_type"),
        }

    @log_database_operation("security_events", "delete")
    async def delete_old_events(self, days_to_keep: Optional[int] = None) -> int:
        """Retention sweep: remove events older than ``days_to_keep`` days."""
        days = days_to_keep if days_to_keep is not None else settings.SECURITY_EVENT_RETENTION_DAYS
        cutoff = days_ago(days, self.clock())
        result = await self.collection.delete_many({"timestamp": {"$lt": cutoff}})
        logger.info("Retention sweep removed %d events older than %d days", result.deleted_count, days)
        return result.deleted_count
