"""
Tests for credential id canonicalization, the lookup ladder, background id
migration and the compare-and-set signature counter.
"""

from datetime import datetime, timezone

import pytest
from webauthn.helpers import bytes_to_base64url

from passkey_readiness.routes.auth.models import Credential, DeviceType
from passkey_readiness.routes.auth.services.webauthn.credentials import (
    LOOKUP_BINARY,
    LOOKUP_CANONICAL,
    LOOKUP_DIRECT,
    LOOKUP_USER_SCAN,
    DuplicateCredentialError,
    canonicalize_credential_id,
    credential_id_bytes,
)

RAW_ID = bytes(range(200, 232))
CANONICAL_ID = bytes_to_base64url(RAW_ID)
WRAPPED_ID = bytes_to_base64url(CANONICAL_ID.encode("ascii"))
DOUBLE_WRAPPED_ID = bytes_to_base64url(WRAPPED_ID.encode("ascii"))
TRIPLE_WRAPPED_ID = bytes_to_base64url(DOUBLE_WRAPPED_ID.encode("ascii"))


def make_credential(credential_id: str, user_id: str = "user-1", counter: int = 0) -> Credential:
    return Credential(
        credential_id=credential_id,
        user_id=user_id,
        public_key=b"\xa5\x01\x02",
        counter=counter,
        device_type=DeviceType.PLATFORM,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


class TestCanonicalizeCredentialId:
    """canonicalize_credential_id normalizes re-encoded ids."""

    def test_canonical_id_is_unchanged(self):
        assert canonicalize_credential_id(CANONICAL_ID) == CANONICAL_ID

    def test_idempotent(self):
        for value in (CANONICAL_ID, WRAPPED_ID, DOUBLE_WRAPPED_ID, TRIPLE_WRAPPED_ID, "not base64url!"):
            once = canonicalize_credential_id(value)
            assert canonicalize_credential_id(once) == once

    @pytest.mark.parametrize("max_unwrap", [0, 1, 2])
    def test_idempotent_past_unwrap_bound(self, max_unwrap):
        for value in (WRAPPED_ID, DOUBLE_WRAPPED_ID, TRIPLE_WRAPPED_ID):
            once = canonicalize_credential_id(value, max_unwrap=max_unwrap)
            assert canonicalize_credential_id(once, max_unwrap=max_unwrap) == once

    def test_single_wrapping_is_removed(self):
        assert canonicalize_credential_id(WRAPPED_ID) == CANONICAL_ID

    def test_double_wrapping_is_removed(self):
        assert canonicalize_credential_id(DOUBLE_WRAPPED_ID) == CANONICAL_ID

    def test_unwrap_bound_is_respected(self):
        assert canonicalize_credential_id(TRIPLE_WRAPPED_ID) == TRIPLE_WRAPPED_ID
        assert canonicalize_credential_id(DOUBLE_WRAPPED_ID, max_unwrap=1) == DOUBLE_WRAPPED_ID
        assert canonicalize_credential_id(WRAPPED_ID, max_unwrap=0) == WRAPPED_ID

    def test_padding_is_stripped(self):
        padded = CANONICAL_ID + "=" * (-len(CANONICAL_ID) % 4)
        assert canonicalize_credential_id(padded) == CANONICAL_ID

    def test_undecodable_input_returned_unchanged(self):
        assert canonicalize_credential_id("has spaces and !") == "has spaces and !"

    def test_distinct_bytes_never_collide(self):
        other = bytes_to_base64url(bytes(range(100, 132)))
        assert canonicalize_credential_id(other) != canonicalize_credential_id(CANONICAL_ID)
        assert credential_id_bytes(WRAPPED_ID) == RAW_ID
        assert credential_id_bytes(other) != RAW_ID


class TestCredentialStoreCreate:
    @pytest.mark.asyncio
    async def test_create_stores_canonical_id(self, credential_store, collections):
        stored = await credential_store.create(make_credential(WRAPPED_ID))

        assert stored.credential_id == CANONICAL_ID
        assert collections["credentials"].docs[0]["credential_id"] == CANONICAL_ID

    @pytest.mark.asyncio
    async def test_duplicate_canonical_id_rejected(self, credential_store):
        await credential_store.create(make_credential(CANONICAL_ID))

        with pytest.raises(DuplicateCredentialError):
            await credential_store.create(make_credential(WRAPPED_ID, user_id="user-2"))

    @pytest.mark.asyncio
    async def test_find_by_user(self, credential_store):
        await credential_store.create(make_credential(CANONICAL_ID))
        await credential_store.create(make_credential(bytes_to_base64url(b"\x01" * 16), user_id="user-2"))

        owned = await credential_store.find_by_user("user-1")

        assert [c.credential_id for c in owned] == [CANONICAL_ID]


class TestCredentialLookupLadder:
    """resolve() walks direct, canonical, user-scan and binary steps in order."""

    @pytest.mark.asyncio
    async def test_direct_hit(self, credential_store):
        await credential_store.create(make_credential(CANONICAL_ID))

        found, method = await credential_store.resolve(CANONICAL_ID)

        assert found.credential_id == CANONICAL_ID
        assert method == LOOKUP_DIRECT

    @pytest.mark.asyncio
    async def test_wrapped_lookup_finds_canonical_record(self, credential_store):
        await credential_store.create(make_credential(CANONICAL_ID))

        found, method = await credential_store.resolve(WRAPPED_ID)

        assert found.credential_id == CANONICAL_ID
        assert method == LOOKUP_CANONICAL

    @pytest.mark.asyncio
    async def test_legacy_wrapped_record_found_by_user_scan(self, credential_store, collections):
        legacy = make_credential(CANONICAL_ID).model_dump()
        legacy["credential_id"] = WRAPPED_ID
        await collections["credentials"].insert_one(legacy)

        found, method = await credential_store.resolve(CANONICAL_ID, user_id="user-1")

        assert found.credential_id == WRAPPED_ID
        assert method == LOOKUP_USER_SCAN

    @pytest.mark.asyncio
    async def test_legacy_record_not_scanned_without_user(self, credential_store, collections):
        legacy = make_credential(CANONICAL_ID).model_dump()
        legacy["credential_id"] = WRAPPED_ID
        await collections["credentials"].insert_one(legacy)

        found, method = await credential_store.resolve(CANONICAL_ID)

        assert found is None
        assert method is None

    @pytest.mark.asyncio
    async def test_padded_legacy_record_found_by_binary_match(self, credential_store, collections):
        padded = CANONICAL_ID + "=" * (-len(CANONICAL_ID) % 4)
        assert padded != CANONICAL_ID
        legacy = make_credential(CANONICAL_ID).model_dump()
        legacy["credential_id"] = padded
        await collections["credentials"].insert_one(legacy)

        found, method = await credential_store.resolve(CANONICAL_ID, user_id="user-1")

        assert found.credential_id == padded
        assert method in (LOOKUP_USER_SCAN, LOOKUP_BINARY)

    @pytest.mark.asyncio
    async def test_other_users_records_never_match(self, credential_store, collections):
        legacy = make_credential(CANONICAL_ID, user_id="someone-else").model_dump()
        legacy["credential_id"] = WRAPPED_ID
        await collections["credentials"].insert_one(legacy)

        found, _ = await credential_store.resolve(CANONICAL_ID, user_id="user-1")

        assert found is None


class TestCredentialIdMigration:
    @pytest.mark.asyncio
    async def test_non_direct_hit_migrates_stored_id(self, credential_store, collections, migrations):
        legacy = make_credential(CANONICAL_ID).model_dump()
        legacy["credential_id"] = WRAPPED_ID
        await collections["credentials"].insert_one(legacy)

        found = await credential_store.find_by_id(CANONICAL_ID, user_id="user-1")
        await credential_store.wait_for_migrations()

        assert found.credential_id == WRAPPED_ID
        assert collections["credentials"].docs[0]["credential_id"] == CANONICAL_ID
        assert migrations == [(WRAPPED_ID, CANONICAL_ID)]

    @pytest.mark.asyncio
    async def test_direct_hit_does_not_migrate(self, credential_store, migrations):
        await credential_store.create(make_credential(CANONICAL_ID))

        await credential_store.find_by_id(CANONICAL_ID)
        await credential_store.wait_for_migrations()

        assert migrations == []

    @pytest.mark.asyncio
    async def test_migration_conflict_is_not_raised(self, credential_store, collections, migrations):
        await credential_store.create(make_credential(CANONICAL_ID))
        legacy = make_credential(CANONICAL_ID).model_dump()
        legacy["credential_id"] = WRAPPED_ID
        await collections["credentials"].insert_one(legacy)

        migrated = await credential_store.migrate_id(WRAPPED_ID, CANONICAL_ID)

        assert migrated is False
        assert migrations == []


class TestUpdateCounter:
    """Compare-and-set semantics of update_counter."""

    @pytest.mark.asyncio
    async def test_first_use_from_zero(self, credential_store, collections):
        await credential_store.create(make_credential(CANONICAL_ID))

        assert await credential_store.update_counter(CANONICAL_ID, 1, 0) is True

        doc = collections["credentials"].docs[0]
        assert doc["counter"] == 1
        assert doc["use_count"] == 1
        assert doc["last_used_at"] is not None

    @pytest.mark.asyncio
    async def test_zero_counter_authenticators_stay_at_zero(self, credential_store, collections):
        await credential_store.create(make_credential(CANONICAL_ID))

        assert await credential_store.update_counter(CANONICAL_ID, 0, 0) is True
        assert await credential_store.update_counter(CANONICAL_ID, 0, 0) is True
        assert collections["credentials"].docs[0]["use_count"] == 2

    @pytest.mark.asyncio
    async def test_regression_rejected(self, credential_store, collections):
        await credential_store.create(make_credential(CANONICAL_ID, counter=5))

        assert await credential_store.update_counter(CANONICAL_ID, 5, 5) is False
        assert await credential_store.update_counter(CANONICAL_ID, 3, 5) is False
        assert collections["credentials"].docs[0]["counter"] == 5

    @pytest.mark.asyncio
    async def test_stale_expected_counter_rejected(self, credential_store, collections):
        await credential_store.create(make_credential(CANONICAL_ID, counter=5))

        assert await credential_store.update_counter(CANONICAL_ID, 7, 5) is True
        assert await credential_store.update_counter(CANONICAL_ID, 6, 5) is False
        assert collections["credentials"].docs[0]["counter"] == 7

    @pytest.mark.asyncio
    async def test_update_follows_pending_migration(self, credential_store, collections):
        await credential_store.create(make_credential(CANONICAL_ID, counter=2))

        assert await credential_store.update_counter(WRAPPED_ID, 3, 2) is True
        assert collections["credentials"].docs[0]["counter"] == 3

    @pytest.mark.asyncio
    async def test_stats_by_device_type(self, credential_store):
        await credential_store.create(make_credential(CANONICAL_ID))

        stats = await credential_store.get_stats()

        assert stats == {"total": 1, "by_device_type": {"platform": 1, "cross-platform": 0}}
