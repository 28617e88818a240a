"""
WebAuthn credential storage and identifier canonicalization.

A credential id is binary, carried over the wire as unpadded base64url. Layers that
base64url-encode an already encoded id produce a different string for the same
credential, so lookups go through a resolution ladder:

1. exact match on the stored id
2. match on the canonicalized lookup id
3. for a known user, canonicalize each stored id and compare
4. for a known user, compare the raw bytes behind both canonical ids

Hits below step 1 trigger a best-effort rewrite of the stored id to canonical form.
The rewrite runs as a background task, and its failures are logged and otherwise ignored.
"""

import asyncio
import binascii
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url

from passkey_readiness.config import settings
from passkey_readiness.database import db_manager
from passkey_readiness.managers.logging_manager import get_logger
from passkey_readiness.routes.auth.models import Credential
from passkey_readiness.utils.datetime_utils import Clock, utc_now
from passkey_readiness.utils.logging_utils import log_database_operation, truncate_id

logger = get_logger(prefix="[WebAuthn Credentials]")

BASE64URL_TEXT = re.compile(r"^[A-Za-z0-9_-]+$")

LOOKUP_DIRECT = "direct"
LOOKUP_CANONICAL = "canonical-received"
LOOKUP_USER_SCAN = "user-scan-canonical"
LOOKUP_BINARY = "binary-match"


class DuplicateCredentialError(Exception):
    """A credential with the same canonical id is already enrolled."""


def _decode(value: str) -> Optional[bytes]:
    value = value.rstrip("=")
    # The decoder silently skips foreign characters; reject them up front.
    if not BASE64URL_TEXT.match(value) or len(value) % 4 == 1:
        return None
    try:
        return base64url_to_bytes(value)
    except (binascii.Error, ValueError):
        return None


def _unwrapped_text(raw: bytes, current: str) -> Optional[str]:
    """Return ``raw`` as text when it is itself base64url text shorter than ``current``."""
    try:
        text = raw.decode("ascii")
    except UnicodeDecodeError:
        return None
    if BASE64URL_TEXT.match(text) and len(text) < len(current):
        return text
    return None


def canonicalize_credential_id(value: str, max_unwrap: Optional[int] = None) -> str:
    """
    Normalize a possibly re-encoded credential id to canonical unpadded base64url.

    Each pass decodes the current string. When the decoded bytes are base64url text
    shorter than the input, that is one wrapping layer: unwrap and go again. Otherwise
    the decoded bytes are the credential id and their canonical encoding is returned.
    Strings that are not base64url at all are returned unchanged, and so are strings
    still wrapped after ``max_unwrap`` passes, so the result is always a fixed point.

    Args:
        value: identifier as received or stored
        max_unwrap: bound on unwrap passes (CREDENTIAL_ID_MAX_UNWRAP by default)
    """
    limit = settings.CREDENTIAL_ID_MAX_UNWRAP if max_unwrap is None else max_unwrap
    current = value
    for depth in range(limit + 1):
        raw = _decode(current)
        if raw is None:
            return current
        unwrapped = _unwrapped_text(raw, current)
        if unwrapped is None:
            return bytes_to_base64url(raw)
        if depth == limit:
            logger.warning(
                "Credential id %s is wrapped more than %d times; keeping it as received",
                truncate_id(value),
                limit,
            )
            return value
        current = unwrapped
    return current


def credential_id_bytes(value: str) -> Optional[bytes]:
    """Raw bytes behind an identifier after canonicalization."""
    return _decode(canonicalize_credential_id(value))


class CredentialStore:
    """Persists enrolled credentials and resolves them by ambiguous identifiers."""

    def __init__(
        self,
        collection: Optional[AsyncIOMotorCollection] = None,
        clock: Clock = utc_now,
        on_migrated: Optional[Callable[[str, str], Awaitable[Any]]] = None,
    ):
        self._collection = collection
        self.clock = clock
        self.on_migrated = on_migrated
        self._migrations: Set[asyncio.Task] = set()

    @property
    def collection(self) -> AsyncIOMotorCollection:
        if self._collection is None:
            return db_manager.get_collection(settings.CREDENTIALS_COLLECTION)
        return self._collection

    @log_database_operation("credentials", "insert")
    async def create(self, credential: Credential) -> Credential:
        """
        Persist a credential under its canonical id.

        Raises:
            DuplicateCredentialError: when the id is already enrolled
        """
        canonical = canonicalize_credential_id(credential.credential_id)
        stored = credential.model_copy(update={"credential_id": canonical})
        try:
            await self.collection.insert_one(stored.model_dump())
        except DuplicateKeyError as e:
            logger.warning("Credential %s already enrolled", truncate_id(canonical))
            raise DuplicateCredentialError(canonical) from e
        logger.info("Stored credential %s for user %s", truncate_id(canonical), stored.user_id)
        return stored

    @log_database_operation("credentials", "find")
    async def find_by_user(self, user_id: str) -> List[Credential]:
        docs = await self.collection.find({"user_id": user_id}).sort("created_at", 1).to_list(length=None)
        return [Credential(**doc) for doc in docs]

    async def _find_exact(self, credential_id: str) -> Optional[Credential]:
        doc = await self.collection.find_one({"credential_id": credential_id})
        return Credential(**doc) if doc else None

    async def resolve(self, credential_id: str, user_id: Optional[str] = None) -> Tuple[Optional[Credential], Optional[str]]:
        """
        Run the lookup ladder.

        Returns:
            (credential, lookup_method); credential is None when every step missed.
        """
        found = await self._find_exact(credential_id)
        if found:
            return found, LOOKUP_DIRECT

        canonical = canonicalize_credential_id(credential_id)
        if canonical != credential_id:
            found = await self._find_exact(canonical)
            if found:
                return found, LOOKUP_CANONICAL

        if user_id is None:
            return None, None

        candidates = await self.find_by_user(user_id)
        for candidate in candidates:
            if canonicalize_credential_id(candidate.credential_id) == canonical:
                return candidate, LOOKUP_USER_SCAN

        wanted = _decode(canonical)
        if wanted is None:
            return None, None
        for candidate in candidates:
            if credential_id_bytes(candidate.credential_id) == wanted:
                return candidate, LOOKUP_BINARY

        return None, None

    async def find_by_id(self, credential_id: str, user_id: Optional[str] = None) -> Optional[Credential]:
        """
        Resolve a credential through the ladder, scheduling canonical-id migration on non-exact hits.
        """
        credential, method = await self.resolve(credential_id, user_id)
        if credential is None:
            logger.info("Credential %s not found (user %s)", truncate_id(credential_id), user_id or "unknown")
            return None
        logger.debug("Resolved credential %s via %s", truncate_id(credential.credential_id), method)
        if method != LOOKUP_DIRECT:
            self.schedule_migration(credential.credential_id)
        return credential

    def schedule_migration(self, stored_id: str) -> None:
        """Rewrite ``stored_id`` to canonical form in the background."""
        canonical = canonicalize_credential_id(stored_id)
        if canonical == stored_id:
            return
        task = asyncio.get_running_loop().create_task(self.migrate_id(stored_id, canonical))
        self._migrations.add(task)
        task.add_done_callback(self._migrations.discard)

    async def migrate_id(self, stored_id: str, canonical: str) -> bool:
        """
        Best-effort rewrite of a stored id. Never raises; returns whether the rewrite happened.
        """
        try:
            result = await self.collection.update_one(
                {"credential_id": stored_id}, {"$set": {"credential_id": canonical}}
            )
            if result.modified_count and self.on_migrated is not None:
                await self.on_migrated(stored_id, canonical)
        except (PyMongoError, RuntimeError) as e:
            logger.warning("Credential id migration %s -> %s failed: %s", truncate_id(stored_id), truncate_id(canonical), e)
            return False
        if result.modified_count:
            logger.info("Migrated credential id %s to canonical %s", truncate_id(stored_id), truncate_id(canonical))
        return bool(result.modified_count)

    async def wait_for_migrations(self) -> None:
        """Await pending migrations (shutdown and tests)."""
        if self._migrations:
            await asyncio.gather(*self._migrations, return_exceptions=True)

    @log_database_operation("credentials", "update")
    async def update_counter(self, credential_id: str, new_counter: int, expected_counter: int) -> bool:
        """
        Compare-and-set the signature counter and record usage.

        The write only lands when the stored counter still equals ``expected_counter``;
        when that value is nonzero, ``new_counter`` must be strictly greater.

        Returns:
            bool: False on regression or when another authentication already moved the counter.
        """
        if expected_counter > 0 and new_counter <= expected_counter:
            logger.warning(
                "Counter regression on credential %s: stored=%d presented=%d",
                truncate_id(credential_id),
                expected_counter,
                new_counter,
            )
            return False
        # A pending migration may have moved the record to its canonical id.
        ids = list({credential_id, canonicalize_credential_id(credential_id)})
        doc = await self.collection.find_one_and_update(
            {"credential_id": {"$in": ids}, "counter": expected_counter},
            {
                "$set": {"counter": new_counter, "last_used_at": self.clock()},
                "$inc": {"use_count": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            logger.warning("Counter for credential %s changed concurrently", truncate_id(credential_id))
            return False
        return True

    async def get_stats(self) -> Dict[str, Any]:
        total = await self.collection.count_documents({})
        platform = await self.collection.count_documents({"device_type": "platform"})
        return {
            "total": total,
            "by_device_type": {"platform": platform, "cross-platform": total - platform},
        }
