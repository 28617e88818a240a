"""
Tests for challenge issuance, lookup, single-use consumption and expiry.
"""

import asyncio

import pytest
from webauthn.helpers import bytes_to_base64url

from passkey_readiness.routes.auth.models import ChallengeType
from passkey_readiness.routes.auth.services.webauthn.challenge import CHALLENGE_LENGTH_BYTES, generate_challenge_bytes


class TestGenerateChallenge:
    def test_length_and_uniqueness(self):
        values = {generate_challenge_bytes() for _ in range(50)}
        assert len(values) == 50
        assert all(len(v) == CHALLENGE_LENGTH_BYTES for v in values)


class TestChallengeRegistry:
    """ChallengeRegistry issue/find/consume lifecycle."""

    @pytest.mark.asyncio
    async def test_issue_persists_supplied_value(self, challenge_registry, clock):
        value = generate_challenge_bytes()

        challenge = await challenge_registry.issue(ChallengeType.REGISTRATION, owner_id="user-1", value=value)

        assert challenge.challenge == bytes_to_base64url(value)
        assert challenge.user_id == "user-1"
        assert challenge.used is False
        assert (challenge.expires_at - challenge.created_at).total_seconds() == 300
        assert challenge.created_at == clock()

    @pytest.mark.asyncio
    async def test_find_usable_scoped_by_owner_and_type(self, challenge_registry):
        issued = await challenge_registry.issue(ChallengeType.REGISTRATION, owner_id="user-1")

        assert (await challenge_registry.find_usable(ChallengeType.REGISTRATION, owner_id="user-1")).id == issued.id
        assert await challenge_registry.find_usable(ChallengeType.REGISTRATION, owner_id="user-2") is None
        assert await challenge_registry.find_usable(ChallengeType.AUTHENTICATION, owner_id="user-1") is None

    @pytest.mark.asyncio
    async def test_find_usable_returns_most_recent(self, challenge_registry, clock):
        await challenge_registry.issue(ChallengeType.REGISTRATION, owner_id="user-1")
        clock.advance(seconds=10)
        newest = await challenge_registry.issue(ChallengeType.REGISTRATION, owner_id="user-1")

        found = await challenge_registry.find_usable(ChallengeType.REGISTRATION, owner_id="user-1")

        assert found.id == newest.id

    @pytest.mark.asyncio
    async def test_find_usable_by_value(self, challenge_registry, clock):
        first = await challenge_registry.issue(ChallengeType.AUTHENTICATION, owner_id="user-1")
        clock.advance(seconds=10)
        await challenge_registry.issue(ChallengeType.AUTHENTICATION, owner_id="user-1")

        found = await challenge_registry.find_usable(
            ChallengeType.AUTHENTICATION, owner_id="user-1", value=first.challenge
        )

        assert found.id == first.id

    @pytest.mark.asyncio
    async def test_ownerless_challenge_only_with_flag(self, challenge_registry):
        discoverable = await challenge_registry.issue(ChallengeType.AUTHENTICATION)

        assert await challenge_registry.find_usable(ChallengeType.AUTHENTICATION, owner_id="user-1") is None
        found = await challenge_registry.find_usable(
            ChallengeType.AUTHENTICATION, owner_id="user-1", include_ownerless=True
        )
        assert found.id == discoverable.id

    @pytest.mark.asyncio
    async def test_expired_challenge_never_returned(self, challenge_registry, clock):
        issued = await challenge_registry.issue(ChallengeType.REGISTRATION, owner_id="user-1")
        clock.advance(minutes=5)

        assert await challenge_registry.find_usable(ChallengeType.REGISTRATION, owner_id="user-1") is None
        assert await challenge_registry.consume(issued.id) is False

    @pytest.mark.asyncio
    async def test_consume_is_single_use(self, challenge_registry):
        issued = await challenge_registry.issue(ChallengeType.REGISTRATION, owner_id="user-1")

        assert await challenge_registry.consume(issued.id) is True
        assert await challenge_registry.consume(issued.id) is False
        assert await challenge_registry.find_usable(ChallengeType.REGISTRATION, owner_id="user-1") is None

    @pytest.mark.asyncio
    async def test_concurrent_consume_has_one_winner(self, challenge_registry):
        issued = await challenge_registry.issue(ChallengeType.AUTHENTICATION, owner_id="user-1")

        results = await asyncio.gather(*(challenge_registry.consume(issued.id) for _ in range(10)))

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_purge_expired_and_stats(self, challenge_registry, clock):
        old = await challenge_registry.issue(ChallengeType.REGISTRATION, owner_id="user-1")
        await challenge_registry.consume(old.id)
        clock.advance(minutes=6)
        await challenge_registry.issue(ChallengeType.REGISTRATION, owner_id="user-1")

        stats = await challenge_registry.get_stats()
        assert stats == {"total": 2, "used": 1, "active": 1, "expired": 0}

        assert await challenge_registry.purge_expired() == 1
        assert (await challenge_registry.get_stats())["total"] == 1
