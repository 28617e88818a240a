"""
User records and handle resolution.

``IdentityResolver.resolve`` treats a handle containing "@" as an email and anything
else as a username. ``resolve_or_create`` refuses to create a user whose email is
already owned by somebody else; the unique indexes on ``username`` and ``email``
back this up when two creations race.
"""

from typing import Any, Dict, Optional
import uuid

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from passkey_readiness.config import settings
from passkey_readiness.database import db_manager
from passkey_readiness.managers.logging_manager import get_logger
from passkey_readiness.routes.auth.models import User
from passkey_readiness.routes.auth.services.errors import ConflictError, InvalidInputError
from passkey_readiness.utils.datetime_utils import Clock, utc_now
from passkey_readiness.utils.logging_utils import log_database_operation

logger = get_logger(prefix="[Identity]")

COUNTER_FIELDS = (
    "passkey_registrations",
    "otp_fallback_usage",
    "successful_authentications",
    "failed_authentications",
)


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


class UserStore:
    """MongoDB-backed user records."""

    def __init__(self, collection: Optional[AsyncIOMotorCollection] = None, clock: Clock = utc_now):
        self._collection = collection
        self.clock = clock

    @property
    def collection(self) -> AsyncIOMotorCollection:
        if self._collection is None:
            return db_manager.get_collection(settings.USERS_COLLECTION)
        return self._collection

    async def _find(self, query: Dict[str, Any]) -> Optional[User]:
        doc = await self.collection.find_one(query)
        return User(**doc) if doc else None

    async def find_by_id(self, user_id: str) -> Optional[User]:
        return await self._find({"id": user_id})

    async def find_by_username(self, username: str) -> Optional[User]:
        return await self._find({"username": username})

    async def find_by_email(self, email: str) -> Optional[User]:
        return await self._find({"email": normalize_email(email)})

    @log_database_operation("users", "insert")
    async def create(self, username: str, display_name: Optional[str] = None, email: Optional[str] = None) -> User:
        user = User(
            id=str(uuid.uuid4()),
            username=username,
            email=normalize_email(email),
            display_name=display_name or username,
            created_at=self.clock(),
        )
        doc = user.model_dump()
        if doc["email"] is None:
            # Sparse unique index: absent, not null.
            doc.pop("email")
        await self.collection.insert_one(doc)
        logger.info("Created user %s (%s)", user.id, user.username)
        return user

    async def increment(self, user_id: str, field: str, touch_login: bool = False) -> Optional[User]:
        """Increment one lifecycle counter; ``touch_login`` also stamps ``last_login_at``."""
        if field not in COUNTER_FIELDS:
            raise ValueError(f"Unknown user counter: {field}")
        update: Dict[str, Any] = {"$inc": {field: 1}}
        if touch_login:
            update["$set"] = {"last_login_at": self.clock()}
        doc = await self.collection.find_one_and_update(
            {"id": user_id}, update, return_document=ReturnDocument.AFTER
        )
        return User(**doc) if doc else None

    async def get_stats(self) -> Dict[str, int]:
        total = await self.collection.count_documents({})
        active = await self.collection.count_documents({"is_active": True})
        with_passkeys = await self.collection.count_documents({"passkey_registrations": {"$gt": 0}})
        used_otp = await self.collection.count_documents({"otp_fallback_usage": {"$gt": 0}})
        return {
            "total_users": total,
            "active_users": active,
            "users_with_passkeys": with_passkeys,
            "users_with_otp_fallback": used_otp,
        }


class IdentityResolver:
    """Maps a username-or-email handle to a User."""

    def __init__(self, users: Optional[UserStore] = None):
        self.users = users or UserStore()

    async def resolve(self, handle: str) -> Optional[User]:
        handle = (handle or "").strip()
        if not handle:
            return None
        if "@" in handle:
            return await self.users.find_by_email(handle)
        return await self.users.find_by_username(handle)

    async def resolve_or_create(
        self, handle: str, display_name: Optional[str] = None, email: Optional[str] = None
    ) -> User:
        """
        Resolve ``handle`` or create a user for it.

        A handle that is itself an email doubles as the new user's email when none is given.

        Raises:
            InvalidInputError: empty handle
            ConflictError: the email belongs to another user
        """
        handle = (handle or "").strip()
        if not handle:
            raise InvalidInputError("Username is required", field="username")

        user = await self.resolve(handle)
        if user is not None:
            return user

        email = normalize_email(email) or (normalize_email(handle) if "@" in handle else None)
        if email is not None and await self.users.find_by_email(email) is not None:
            logger.info("Refusing to create user %s: email already bound", handle)
            raise ConflictError("Email already bound to another user", context={"handle": handle})

        try:
            return await self.users.create(handle, display_name=display_name, email=email)
        except DuplicateKeyError as e:
            # Lost a creation race: the username winner is our user, an email winner is a conflict.
            existing = await self.users.find_by_username(handle)
            if existing is not None and (email is None or existing.email == email):
                return existing
            raise ConflictError("Email already bound to another user", context={"handle": handle}) from e
