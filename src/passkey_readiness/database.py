"""Database module for the Passkey Readiness server."""

import asyncio
import time
from typing import Any, Dict, List, Optional, Union

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError, ServerSelectionTimeoutError

from passkey_readiness.config import settings
from passkey_readiness.managers.logging_manager import get_logger

db_logger = get_logger(prefix="[DATABASE]")
perf_logger = get_logger(prefix="[DB_PERFORMANCE]")
health_logger = get_logger(prefix="[DB_HEALTH]")

IndexSpec = Union[str, List[tuple]]


class DatabaseManager:
    """MongoDB database manager using Motor (async MongoDB driver)"""

    def __init__(self):
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self._connection_retries = 3

    def _connection_string(self) -> str:
        if settings.MONGODB_USERNAME and settings.MONGODB_PASSWORD:
            password = settings.MONGODB_PASSWORD.get_secret_value()
            db_logger.debug("Using authenticated connection to MongoDB")
            return (
                f"mongodb://{settings.MONGODB_USERNAME}:{password}@"
                f"{settings.MONGODB_URL.replace('mongodb://', '')}"
            )
        db_logger.debug("Using unauthenticated connection to MongoDB")
        return settings.MONGODB_URL

    async def connect(self):
        """Connect to MongoDB with retry logic"""
        start_time = time.time()
        db_logger.info("Starting MongoDB connection process")

        for attempt in range(self._connection_retries):
            attempt_start = time.time()
            try:
                db_logger.info("Connection attempt %d/%d to MongoDB", attempt + 1, self._connection_retries)
                self.client = AsyncIOMotorClient(
                    self._connection_string(),
                    serverSelectionTimeoutMS=settings.MONGODB_SERVER_SELECTION_TIMEOUT,
                    connectTimeoutMS=settings.MONGODB_CONNECTION_TIMEOUT,
                    maxPoolSize=50,
                    minPoolSize=5,
                    tz_aware=True,
                )
                self.database = self.client[settings.MONGODB_DATABASE]

                ping_start = time.time()
                await self.client.admin.command("ping")
                perf_logger.info(
                    "MongoDB connection established in %.3fs (ping: %.3fs)",
                    time.time() - start_time,
                    time.time() - ping_start,
                )
                db_logger.info("Successfully connected to MongoDB database: %s", settings.MONGODB_DATABASE)
                return

            except (ServerSelectionTimeoutError, ConnectionFailure) as e:
                perf_logger.warning("Connection attempt %d failed after %.3fs", attempt + 1, time.time() - attempt_start)
                db_logger.warning(
                    "Failed to connect to MongoDB (attempt %d/%d): %s", attempt + 1, self._connection_retries, e
                )
                if attempt == self._connection_retries - 1:
                    db_logger.error("All connection attempts failed after %.3fs", time.time() - start_time)
                    raise

                backoff_time = 2**attempt
                db_logger.info("Waiting %.1fs before retry (exponential backoff)", backoff_time)
                await asyncio.sleep(backoff_time)

    async def disconnect(self):
        """Disconnect from MongoDB"""
        if self.client is None:
            db_logger.warning("Disconnect called but no active MongoDB connection found")
            return
        self.client.close()
        self.client = None
        self.database = None
        db_logger.info("Successfully disconnected from MongoDB")

    async def health_check(self) -> bool:
        """Check database connection health"""
        start_time = time.time()
        if self.client is None:
            health_logger.warning("Health check failed: No database client available")
            return False
        try:
            await self.client.admin.command("ping")
        except PyMongoError as e:
            perf_logger.warning("Database health check failed after %.3fs", time.time() - start_time)
            health_logger.error("Database health check failed: %s", e)
            return False
        perf_logger.debug("Database health check completed in %.3fs", time.time() - start_time)
        return True

    def get_collection(self, collection_name: str) -> AsyncIOMotorCollection:
        """Get a collection from the database"""
        if self.database is None:
            db_logger.error("Cannot get collection '%s': Database not connected", collection_name)
            raise RuntimeError("Database not connected")
        return self.database[collection_name]

    async def create_indexes(self):
        """Create the indexes the ceremony stores rely on for uniqueness and expiry."""
        start_time = time.time()
        db_logger.info("Starting database index creation process")

        users = self.get_collection(settings.USERS_COLLECTION)
        await self._create_index_if_not_exists(users, "id", {"unique": True})
        await self._create_index_if_not_exists(users, "username", {"unique": True})
        await self._create_index_if_not_exists(users, "email", {"unique": True, "sparse": True})

        credentials = self.get_collection(settings.CREDENTIALS_COLLECTION)
        await self._create_index_if_not_exists(credentials, "credential_id", {"unique": True})
        await self._create_index_if_not_exists(credentials, "user_id", {})
        await self._create_index_if_not_exists(credentials, "created_at", {})

        challenges = self.get_collection(settings.CHALLENGES_COLLECTION)
        await self._create_index_if_not_exists(challenges, "id", {"unique": True})
        await self._create_index_if_not_exists(challenges, "expires_at", {"expireAfterSeconds": 0})
        await self._create_index_if_not_exists(challenges, "user_id", {})
        await self._create_index_if_not_exists(
            challenges, [("type", ASCENDING), ("created_at", DESCENDING)], {}
        )

        events = self.get_collection(settings.SECURITY_EVENTS_COLLECTION)
        await self._create_index_if_not_exists(events, [("timestamp", DESCENDING)], {})
        await self._create_index_if_not_exists(events, "user_id", {})
        await self._create_index_if_not_exists(events, "event_type", {})
        await self._create_index_if_not_exists(events, "severity", {})

        perf_logger.info("Database index creation completed in %.3fs", time.time() - start_time)
        db_logger.info("Database indexes created successfully")

    async def _create_index_if_not_exists(
        self, collection: AsyncIOMotorCollection, field_spec: IndexSpec, options: Dict[str, Any]
    ):
        """Create an index if it doesn't already exist"""
        try:
            await collection.create_index(field_spec, **options)
            db_logger.debug("Created/ensured index '%s' on %s", field_spec, collection.name)
        except OperationFailure as e:
            # Conflicting options on an existing index; keep the existing one.
            db_logger.warning("Could not create/ensure index '%s' on %s: %s", field_spec, collection.name, e)


# Global database manager instance
db_manager = DatabaseManager()
