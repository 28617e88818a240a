"""
Tests for handle resolution, user creation and lifecycle counters.
"""

import pytest

from passkey_readiness.routes.auth.services.errors import ConflictError, InvalidInputError


class TestIdentityResolver:
    @pytest.mark.asyncio
    async def test_resolve_by_username_and_email(self, identity, user_store):
        created = await user_store.create("alice", email="Alice@Example.com")

        assert (await identity.resolve("alice")).id == created.id
        assert (await identity.resolve("alice@example.com")).id == created.id
        assert (await identity.resolve(" ALICE@example.com ")).id == created.id
        assert await identity.resolve("nobody") is None
        assert await identity.resolve("") is None

    @pytest.mark.asyncio
    async def test_resolve_or_create_creates_once(self, identity, collections):
        first = await identity.resolve_or_create("alice", display_name="Alice")
        second = await identity.resolve_or_create("alice")

        assert first.id == second.id
        assert first.display_name == "Alice"
        assert len(collections["users"].docs) == 1

    @pytest.mark.asyncio
    async def test_display_name_defaults_to_handle(self, identity):
        user = await identity.resolve_or_create("carol")

        assert user.display_name == "carol"
        assert user.email is None

    @pytest.mark.asyncio
    async def test_email_handle_doubles_as_email(self, identity):
        user = await identity.resolve_or_create("dana@example.com")

        assert user.username == "dana@example.com"
        assert user.email == "dana@example.com"

    @pytest.mark.asyncio
    async def test_email_conflict_creates_nothing(self, identity, collections):
        await identity.resolve_or_create("bob2", email="bob@example.com")

        with pytest.raises(ConflictError):
            await identity.resolve_or_create("bob", email="bob@example.com")

        assert len(collections["users"].docs) == 1
        assert await identity.resolve("bob") is None

    @pytest.mark.asyncio
    async def test_empty_handle_rejected(self, identity):
        with pytest.raises(InvalidInputError):
            await identity.resolve_or_create("   ")


class TestUserStore:
    @pytest.mark.asyncio
    async def test_increment_counters(self, user_store, clock):
        user = await user_store.create("alice")

        updated = await user_store.increment(user.id, "successful_authentications", touch_login=True)

        assert updated.successful_authentications == 1
        assert updated.last_login_at == clock()

    @pytest.mark.asyncio
    async def test_unknown_counter_rejected(self, user_store):
        user = await user_store.create("alice")

        with pytest.raises(ValueError):
            await user_store.increment(user.id, "is_active")

    @pytest.mark.asyncio
    async def test_stats(self, user_store):
        alice = await user_store.create("alice")
        await user_store.create("bob")
        await user_store.increment(alice.id, "passkey_registrations")

        stats = await user_store.get_stats()

        assert stats == {
            "total_users": 2,
            "active_users": 2,
            "users_with_passkeys": 1,
            "users_with_otp_fallback": 0,
        }
