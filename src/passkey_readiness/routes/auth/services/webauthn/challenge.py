"""
WebAuthn challenge registry.

Challenges are single-use random values bound to a ceremony type and, optionally,
an owning user. They live in MongoDB with an absolute expiry; a TTL index reclaims
storage, but every lookup also compares ``expires_at`` against the clock so an
expired challenge is never handed back before the sweep runs.

``consume`` is one conditional ``find_one_and_update`` and is the only replay barrier:
of any number of concurrent completions for the same challenge exactly one wins.
"""

from datetime import timedelta
import secrets
from typing import Any, Dict, Optional
import uuid

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo import DESCENDING
from webauthn.helpers import bytes_to_base64url

from passkey_readiness.config import settings
from passkey_readiness.database import db_manager
from passkey_readiness.managers.logging_manager import get_logger
from passkey_readiness.routes.auth.models import Challenge, ChallengeType
from passkey_readiness.utils.datetime_utils import Clock, utc_now
from passkey_readiness.utils.logging_utils import log_database_operation, log_performance, truncate_id

logger = get_logger(prefix="[WebAuthn Challenge]")

CHALLENGE_LENGTH_BYTES = 32  # 256 bits of entropy


def generate_challenge_bytes() -> bytes:
    """Generate a cryptographically secure challenge value."""
    return secrets.token_bytes(CHALLENGE_LENGTH_BYTES)


class ChallengeRegistry:
    """Issues, looks up and single-use-marks ceremony challenges."""

    def __init__(
        self,
        collection: Optional[AsyncIOMotorCollection] = None,
        clock: Clock = utc_now,
        expiry_minutes: Optional[int] = None,
    ):
        self._collection = collection
        self.clock = clock
        self.expiry = timedelta(minutes=expiry_minutes or settings.CHALLENGE_EXPIRY_MINUTES)

    @property
    def collection(self) -> AsyncIOMotorCollection:
        if self._collection is None:
            return db_manager.get_collection(settings.CHALLENGES_COLLECTION)
        return self._collection

    @log_performance("issue_challenge")
    @log_database_operation("challenges", "insert")
    async def issue(
        self,
        challenge_type: ChallengeType,
        owner_id: Optional[str] = None,
        value: Optional[bytes] = None,
    ) -> Challenge:
        """
        Persist a fresh challenge.

        Args:
            challenge_type: registration or authentication
            owner_id: owning user, or None for a discoverable (userless) ceremony
            value: raw challenge bytes already embedded in the verifier options;
                generated here when omitted

        Returns:
            Challenge: the stored record; ``challenge`` holds the base64url value
        """
        now = self.clock()
        challenge = Challenge(
            id=str(uuid.uuid4()),
            challenge=bytes_to_base64url(value or generate_challenge_bytes()),
            user_id=owner_id,
            type=challenge_type,
            created_at=now,
            expires_at=now + self.expiry,
        )
        await self.collection.insert_one(challenge.model_dump())
        logger.info(
            "Issued %s challenge %s for user %s (expires %s)",
            challenge_type.value,
            truncate_id(challenge.id),
            owner_id or "anonymous",
            challenge.expires_at.isoformat(),
        )
        return challenge

    @log_database_operation("challenges", "find")
    async def find_usable(
        self,
        challenge_type: ChallengeType,
        owner_id: Optional[str] = None,
        value: Optional[str] = None,
        include_ownerless: bool = False,
    ) -> Optional[Challenge]:
        """
        Most recently issued unused, unexpired challenge of ``challenge_type``.

        With ``owner_id`` omitted any challenge of that type is eligible. With
        ``include_ownerless`` an owner-scoped lookup also accepts challenges issued
        for a discoverable ceremony. ``value`` narrows the match to one challenge
        value when the client response names it.
        """
        query: Dict[str, Any] = {
            "type": challenge_type.value,
            "used": False,
            "expires_at": {"$gt": self.clock()},
        }
        if owner_id is not None:
            query["user_id"] = {"$in": [owner_id, None]} if include_ownerless else owner_id
        if value is not None:
            query["challenge"] = value

        doc = await self.collection.find_one(query, sort=[("created_at", DESCENDING)])
        if doc is None:
            logger.debug("No usable %s challenge for user %s", challenge_type.value, owner_id or "anonymous")
            return None
        return Challenge(**doc)

    @log_database_operation("challenges", "consume")
    async def consume(self, challenge_id: str) -> bool:
        """
        Atomically mark a challenge used.

        Returns:
            bool: True only for the call that performed the unused -> used transition.
        """
        now = self.clock()
        doc = await self.collection.find_one_and_update(
            {"id": challenge_id, "used": False, "expires_at": {"$gt": now}},
            {"$set": {"used": True, "used_at": now}},
        )
        if doc is None:
            logger.warning("Challenge %s already used or expired", truncate_id(challenge_id))
            return False
        logger.info("Consumed challenge %s", truncate_id(challenge_id))
        return True

    @log_database_operation("challenges", "delete")
    async def purge_expired(self) -> int:
        """Delete expired challenges; storage reclamation only."""
        result = await self.collection.delete_many({"expires_at": {"$lte": self.clock()}})
        if result.deleted_count:
            logger.info("Purged %d expired challenges", result.deleted_count)
        return result.deleted_count

    async def get_stats(self) -> Dict[str, int]:
        now = self.clock()
        total = await self.collection.count_documents({})
        used = await self.collection.count_documents({"used": True})
        active = await self.collection.count_documents({"used": False, "expires_at": {"$gt": now}})
        expired = await self.collection.count_documents({"used": False, "expires_at": {"$lte": now}})
        return {"total": total, "used": used, "active": active, "expired": expired}
