"""
TTL stores for OTP tickets.

A ticket is readable until it expires, is destroyed after a successful
verification, or is destroyed when its attempts run out. Expiry is checked
against the store's clock on every read; Redis key expiry and the in-memory
purge only reclaim space.

Two backends share one interface:

- ``RedisOTPTicketStore``: a hash per ticket, attempts incremented server-side.
- ``MemoryOTPTicketStore``: a dict guarded by an asyncio lock, for development
  and single-process deployments.
"""

import asyncio
import math
from typing import Any, Dict, Optional

from passkey_readiness.config import settings
from passkey_readiness.managers.logging_manager import get_logger
from passkey_readiness.managers.redis_manager import redis_manager
from passkey_readiness.routes.auth.models import OTPTicket
from passkey_readiness.utils.datetime_utils import Clock, is_expired, utc_now
from passkey_readiness.utils.logging_utils import truncate_id

logger = get_logger(prefix="[OTP Tickets]")

# HINCRBY would recreate a destroyed ticket as a bare hash; only increment live ones.
INCREMENT_IF_EXISTS_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return redis.call('HINCRBY', KEYS[1], ARGV[1], 1)
end
return nil
"""


class OTPTicketStore:
    """Interface shared by the ticket backends."""

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock

    async def save(self, ticket: OTPTicket) -> None:
        raise NotImplementedError

    async def get(self, ticket_id: str) -> Optional[OTPTicket]:
        """The live ticket, or None when it is missing, destroyed or expired."""
        raise NotImplementedError

    async def increment_attempts(self, ticket_id: str) -> Optional[int]:
        """Atomically add one attempt; returns the new count, or None if the ticket is gone."""
        raise NotImplementedError

    async def destroy(self, ticket_id: str) -> bool:
        raise NotImplementedError

    async def purge_expired(self) -> int:
        return 0


class MemoryOTPTicketStore(OTPTicketStore):
    def __init__(self, clock: Clock = utc_now):
        super().__init__(clock)
        self._tickets: Dict[str, OTPTicket] = {}
        self._lock = asyncio.Lock()

    def _live(self, ticket_id: str) -> Optional[OTPTicket]:
        ticket = self._tickets.get(ticket_id)
        if ticket is None:
            return None
        if is_expired(ticket.expires_at, self.clock()):
            del self._tickets[ticket_id]
            logger.debug("Ticket %s expired", truncate_id(ticket_id))
            return None
        return ticket

    async def save(self, ticket: OTPTicket) -> None:
        async with self._lock:
            self._tickets[ticket.id] = ticket.model_copy()

    async def get(self, ticket_id: str) -> Optional[OTPTicket]:
        async with self._lock:
            ticket = self._live(ticket_id)
            return ticket.model_copy() if ticket else None

    async def increment_attempts(self, ticket_id: str) -> Optional[int]:
        async with self._lock:
            ticket = self._live(ticket_id)
            if ticket is None:
                return None
            ticket.attempts += 1
            return ticket.attempts

    async def destroy(self, ticket_id: str) -> bool:
        async with self._lock:
            return self._tickets.pop(ticket_id, None) is not None

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self.clock()
            expired = [tid for tid, t in self._tickets.items() if is_expired(t.expires_at, now)]
            for ticket_id in expired:
                del self._tickets[ticket_id]
        if expired:
            logger.info("Purged %d expired OTP tickets", len(expired))
        return len(expired)


def _to_hash(ticket: OTPTicket) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for key, value in ticket.model_dump(mode="json").items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = int(value)
        mapping[key] = value
    return mapping


class RedisOTPTicketStore(OTPTicketStore):
    def __init__(self, redis=None, clock: Clock = utc_now, key_prefix: Optional[str] = None):
        super().__init__(clock)
        self._redis = redis
        self.key_prefix = key_prefix or f"{settings.ENV_PREFIX}:otp_ticket"

    async def get_redis(self):
        if self._redis is None:
            return await redis_manager.get_redis()
        return self._redis

    def _key(self, ticket_id: str) -> str:
        return f"{self.key_prefix}:{ticket_id}"

    async def save(self, ticket: OTPTicket) -> None:
        redis_conn = await self.get_redis()
        key = self._key(ticket.id)
        ttl = max(math.ceil((ticket.expires_at - self.clock()).total_seconds()), 1)
        await redis_conn.hset(key, mapping=_to_hash(ticket))
        await redis_conn.expire(key, ttl)
        logger.debug("Stored OTP ticket %s (ttl %ds)", truncate_id(ticket.id), ttl)

    async def get(self, ticket_id: str) -> Optional[OTPTicket]:
        redis_conn = await self.get_redis()
        data = await redis_conn.hgetall(self._key(ticket_id))
        if not data or "code" not in data:
            return None
        ticket = OTPTicket(**data)
        if is_expired(ticket.expires_at, self.clock()):
            await self.destroy(ticket_id)
            return None
        return ticket

    async def increment_attempts(self, ticket_id: str) -> Optional[int]:
        if await self.get(ticket_id) is None:
            return None
        redis_conn = await self.get_redis()
        attempts = await redis_conn.eval(INCREMENT_IF_EXISTS_SCRIPT, 1, self._key(ticket_id), "attempts")
        return int(attempts) if attempts is not None else None

    async def destroy(self, ticket_id: str) -> bool:
        redis_conn = await self.get_redis()
        return bool(await redis_conn.delete(self._key(ticket_id)))


def create_ticket_store(backend: Optional[str] = None, clock: Clock = utc_now) -> OTPTicketStore:
    backend = backend or settings.OTP_TICKET_BACKEND
    if backend == "memory":
        logger.info("Using in-memory OTP ticket store")
        return MemoryOTPTicketStore(clock=clock)
    return RedisOTPTicketStore(clock=clock)
