"""
Background maintenance for the ceremony stores.

What this file does:
- Purges expired challenges every CHALLENGE_CLEANUP_INTERVAL seconds. Lookups already
  ignore expired challenges; the purge only reclaims storage.
- Purges expired in-memory OTP tickets on the same schedule (Redis expires its own keys).
- Runs the security event retention sweep every SECURITY_EVENT_CLEANUP_INTERVAL seconds,
  keeping SECURITY_EVENT_RETENTION_DAYS days of events.
- Tracks the last run of each task in the 'system' collection so a restart does not
  re-run a sweep that just happened.

How to use:
- Start `periodic_challenge_cleanup()` and `periodic_security_event_retention()` as
  background tasks from the FastAPI lifespan. They run until cancelled.
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional

from motor.motor_asyncio import AsyncIOMotorCollection

from passkey_readiness.config import settings
from passkey_readiness.database import db_manager
from passkey_readiness.managers.logging_manager import get_logger
from passkey_readiness.routes.auth.services.otp.tickets import OTPTicketStore
from passkey_readiness.routes.auth.services.security.events import SecurityEventSink
from passkey_readiness.routes.auth.services.webauthn.challenge import ChallengeRegistry
from passkey_readiness.utils.datetime_utils import ensure_timezone_aware, utc_now

logger = get_logger(prefix="[Auth Periodic Cleanup]")

SYSTEM_COLLECTION = "system"
CHALLENGE_CLEANUP_DOC_ID = "challenge_cleanup"
EVENT_RETENTION_DOC_ID = "security_event_retention"


def _system(collection: Optional[AsyncIOMotorCollection]) -> AsyncIOMotorCollection:
    return collection if collection is not None else db_manager.get_collection(SYSTEM_COLLECTION)


async def get_last_run_time(task_id: str, system: Optional[AsyncIOMotorCollection] = None) -> Optional[datetime]:
    """Last recorded run of ``task_id``, or None if it never ran."""
    doc = await _system(system).find_one({"_id": task_id})
    if doc and "last_cleanup" in doc:
        return ensure_timezone_aware(datetime.fromisoformat(doc["last_cleanup"]))
    return None


async def set_last_run_time(task_id: str, dt: datetime, system: Optional[AsyncIOMotorCollection] = None) -> None:
    await _system(system).update_one({"_id": task_id}, {"$set": {"last_cleanup": dt.isoformat()}}, upsert=True)
    logger.debug("Set last %s time to: %s", task_id, dt.isoformat())


async def run_cleanup_cycle(
    task_id: str,
    interval: int,
    job: Callable[[], Awaitable[int]],
    system: Optional[AsyncIOMotorCollection] = None,
    now: Optional[datetime] = None,
) -> Optional[int]:
    """
    Run ``job`` once if at least ``interval`` seconds passed since its last recorded run.

    Returns:
        The number of records the job removed, or None when the cycle was skipped.
    """
    now = now or utc_now()
    last_run = await get_last_run_time(task_id, system)
    if last_run and (now - last_run).total_seconds() < interval:
        logger.debug(
            "Skipping %s; only %ds since last run (interval: %ds)",
            task_id,
            (now - last_run).total_seconds(),
            interval,
        )
        return None
    removed = await job()
    await set_last_run_time(task_id, now, system)
    if removed:
        logger.info("%s removed %d records", task_id, removed)
    return removed


async def _run_forever(task_id: str, interval: int, job: Callable[[], Awaitable[int]]) -> None:
    logger.info("Starting periodic %s task with interval %ds", task_id, interval)
    while True:
        try:
            await run_cleanup_cycle(task_id, interval, job)
        except Exception as exc:
            logger.error("Error in periodic %s task: %s", task_id, exc, exc_info=True)
        finally:
            await asyncio.sleep(interval)


async def periodic_challenge_cleanup(
    challenges: Optional[ChallengeRegistry] = None, tickets: Optional[OTPTicketStore] = None
) -> None:
    registry = challenges or ChallengeRegistry()

    async def job() -> int:
        removed = await registry.purge_expired()
        if tickets is not None:
            removed += await tickets.purge_expired()
        return removed

    await _run_forever(CHALLENGE_CLEANUP_DOC_ID, settings.CHALLENGE_CLEANUP_INTERVAL, job)


async def periodic_security_event_retention(events: Optional[SecurityEventSink] = None) -> None:
    sink = events or SecurityEventSink()
    await _run_forever(EVENT_RETENTION_DOC_ID, settings.SECURITY_EVENT_CLEANUP_INTERVAL, sink.delete_old_events)
