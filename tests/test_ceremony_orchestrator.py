"""
End-to-end ceremony tests for the WebAuthn orchestrator.

The verifier is a double, so these exercise the state machine: challenge binding,
replay rejection, counter handling, failure events and the no-mutation guarantees.
"""

import asyncio

import pytest
from webauthn.helpers import bytes_to_base64url

from fakes import authentication_response, registration_response
from passkey_readiness.routes.auth.models import ChallengeType, ClientContext
from passkey_readiness.routes.auth.services.errors import (
    ChallengeInvalidError,
    ConflictError,
    CredentialNotFoundError,
    InvalidInputError,
    NoCredentialsEnrolledError,
    RateLimitedError,
    VerificationFailedError,
)
from passkey_readiness.routes.auth.services.webauthn.verifier import VerifierErrorKind

ALICE_CREDENTIAL = bytes_to_base64url(bytes(range(200, 232)))
BOB_CREDENTIAL = bytes_to_base64url(bytes(range(100, 132)))
CLIENT = ClientContext(ip_address="198.51.100.7", user_agent="pytest")


def event_types(collections):
    return [doc["event_type"] for doc in collections["security_events"].docs]


async def register(orchestrator, username, credential_id, email=None):
    started = await orchestrator.start_registration(username, email=email, client=CLIENT)
    challenge = started["options"]["challenge"]
    return await orchestrator.finish_registration(
        username, registration_response(credential_id, challenge), client=CLIENT
    )


async def authenticate(orchestrator, username, credential_id, sign_count, user_handle=None):
    started = await orchestrator.start_authentication(username, client=CLIENT)
    challenge = started["options"]["challenge"]
    response = authentication_response(credential_id, challenge, sign_count, user_handle=user_handle)
    return response, await orchestrator.finish_authentication(response, username=username, client=CLIENT)


class TestRegistrationCeremony:
    @pytest.mark.asyncio
    async def test_start_creates_user_and_issues_challenge(self, orchestrator, collections):
        result = await orchestrator.start_registration("alice", display_name="Alice", client=CLIENT)

        assert result["user"]["username"] == "alice"
        assert result["user"]["display_name"] == "Alice"
        assert result["options"]["excludeCredentials"] == []
        challenges = collections["challenges"].docs
        assert len(challenges) == 1
        assert challenges[0]["type"] == "registration"
        assert challenges[0]["user_id"] == result["user"]["id"]
        assert challenges[0]["challenge"] == result["options"]["challenge"]
        assert event_types(collections) == ["registration_start"]

    @pytest.mark.asyncio
    async def test_alice_registers_a_platform_passkey(self, orchestrator, collections):
        result = await register(orchestrator, "alice", ALICE_CREDENTIAL)

        assert result["verified"] is True
        assert result["user"]["credential_count"] == 1
        stored = collections["credentials"].docs[0]
        assert stored["credential_id"] == ALICE_CREDENTIAL
        assert stored["counter"] == 0
        assert stored["device_type"] == "platform"
        assert collections["challenges"].docs[0]["used"] is True
        assert collections["users"].docs[0]["passkey_registrations"] == 1
        assert event_types(collections) == ["registration_start", "registration_success"]

    @pytest.mark.asyncio
    async def test_second_registration_excludes_existing(self, orchestrator):
        await register(orchestrator, "alice", ALICE_CREDENTIAL)

        started = await orchestrator.start_registration("alice", client=CLIENT)

        assert [c["id"] for c in started["options"]["excludeCredentials"]] == [ALICE_CREDENTIAL]

    @pytest.mark.asyncio
    async def test_email_conflict(self, orchestrator, collections):
        await orchestrator.start_registration("alice", email="shared@example.com", client=CLIENT)

        with pytest.raises(ConflictError):
            await orchestrator.start_registration("bob", email="shared@example.com", client=CLIENT)

        assert [doc["username"] for doc in collections["users"].docs] == ["alice"]
        assert len(collections["challenges"].docs) == 1
        assert event_types(collections)[-1] == "registration_failed"

    @pytest.mark.asyncio
    async def test_finish_without_start_is_challenge_invalid(self, orchestrator, identity, collections):
        await identity.resolve_or_create("alice")

        with pytest.raises(ChallengeInvalidError):
            await orchestrator.finish_registration(
                "alice", registration_response(ALICE_CREDENTIAL, "bm9uZQ"), client=CLIENT
            )

        assert collections["credentials"].docs == []

    @pytest.mark.asyncio
    async def test_finish_for_unknown_user_is_challenge_invalid(self, orchestrator, collections):
        with pytest.raises(ChallengeInvalidError):
            await orchestrator.finish_registration(
                "ghost", registration_response(ALICE_CREDENTIAL, "bm9uZQ"), client=CLIENT
            )

        assert collections["users"].docs == []

    @pytest.mark.asyncio
    async def test_verifier_rejection_leaves_challenge_unused(self, orchestrator, verifier, collections):
        started = await orchestrator.start_registration("alice", client=CLIENT)
        verifier.error_kind = VerifierErrorKind.INVALID_RESPONSE

        with pytest.raises(VerificationFailedError):
            await orchestrator.finish_registration(
                "alice", registration_response(ALICE_CREDENTIAL, started["options"]["challenge"]), client=CLIENT
            )

        assert collections["credentials"].docs == []
        assert collections["challenges"].docs[0]["used"] is False
        failed = collections["security_events"].docs[-1]
        assert failed["event_type"] == "registration_failed"
        assert failed["event_data"]["reason"] == "verifier_invalid_response"
        assert failed["severity"] == "medium"

    @pytest.mark.asyncio
    async def test_replayed_attestation_rejected(self, orchestrator, collections):
        started = await orchestrator.start_registration("alice", client=CLIENT)
        response = registration_response(ALICE_CREDENTIAL, started["options"]["challenge"])
        await orchestrator.finish_registration("alice", response, client=CLIENT)

        with pytest.raises(ChallengeInvalidError):
            await orchestrator.finish_registration("alice", response, client=CLIENT)

        assert len(collections["credentials"].docs) == 1

    @pytest.mark.asyncio
    async def test_concurrent_finishes_commit_once(self, orchestrator, collections):
        started = await orchestrator.start_registration("alice", client=CLIENT)
        response = registration_response(ALICE_CREDENTIAL, started["options"]["challenge"])

        results = await asyncio.gather(
            orchestrator.finish_registration("alice", response, client=CLIENT),
            orchestrator.finish_registration("alice", response, client=CLIENT),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, dict) and r["verified"]) == 1
        assert sum(1 for r in results if isinstance(r, ChallengeInvalidError)) == 1
        assert len(collections["credentials"].docs) == 1

    @pytest.mark.asyncio
    async def test_credential_enrolled_elsewhere_is_conflict(self, orchestrator):
        await register(orchestrator, "alice", ALICE_CREDENTIAL)

        with pytest.raises(ConflictError):
            await register(orchestrator, "bob", ALICE_CREDENTIAL)


class TestAuthenticationCeremony:
    @pytest.mark.asyncio
    async def test_alice_authenticates_and_counter_advances(self, orchestrator, collections):
        await register(orchestrator, "alice", ALICE_CREDENTIAL)

        _, result = await authenticate(orchestrator, "alice", ALICE_CREDENTIAL, sign_count=1)

        assert result["verified"] is True
        assert result["counter"] == 1
        assert result["user"]["username"] == "alice"
        credential = collections["credentials"].docs[0]
        assert credential["counter"] == 1
        assert credential["use_count"] == 1
        user = collections["users"].docs[0]
        assert user["successful_authentications"] == 1
        assert user["last_login_at"] is not None
        assert event_types(collections)[-1] == "authentication_success"

    @pytest.mark.asyncio
    async def test_replayed_assertion_is_challenge_invalid(self, orchestrator, collections):
        await register(orchestrator, "alice", ALICE_CREDENTIAL)
        response, _ = await authenticate(orchestrator, "alice", ALICE_CREDENTIAL, sign_count=1)

        with pytest.raises(ChallengeInvalidError):
            await orchestrator.finish_authentication(response, username="alice", client=CLIENT)

        assert collections["credentials"].docs[0]["counter"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_finishes_authenticate_once(self, orchestrator, collections):
        await register(orchestrator, "alice", ALICE_CREDENTIAL)
        started = await orchestrator.start_authentication("alice", client=CLIENT)
        response = authentication_response(ALICE_CREDENTIAL, started["options"]["challenge"], 1)

        results = await asyncio.gather(
            *(orchestrator.finish_authentication(response, username="alice", client=CLIENT) for _ in range(3)),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, dict) and r["verified"]) == 1
        assert sum(1 for r in results if isinstance(r, ChallengeInvalidError)) == 2
        stored = collections["credentials"].docs[0]
        assert stored["counter"] == 1
        assert stored["use_count"] == 1

    @pytest.mark.asyncio
    async def test_no_credentials_issues_nothing(self, orchestrator, identity, collections):
        await identity.resolve_or_create("carol")

        with pytest.raises(NoCredentialsEnrolledError):
            await orchestrator.start_authentication("carol", client=CLIENT)

        assert collections["challenges"].docs == []
        failed = collections["security_events"].docs[-1]
        assert failed["event_type"] == "authentication_failed"
        assert failed["event_data"]["reason"] == "no_credentials_enrolled"

    @pytest.mark.asyncio
    async def test_unknown_user_gets_discoverable_options(self, orchestrator, collections):
        result = await orchestrator.start_authentication("nobody", client=CLIENT)

        assert result["options"]["allowCredentials"] == []
        assert collections["challenges"].docs[0]["user_id"] is None
        assert collections["users"].docs == []

    @pytest.mark.asyncio
    async def test_scoped_options_fall_back_to_discoverable(self, orchestrator, verifier, collections):
        await register(orchestrator, "alice", ALICE_CREDENTIAL)
        verifier.fail_scoped_options = True

        result = await orchestrator.start_authentication("alice", client=CLIENT)

        assert result["options"]["allowCredentials"] == []
        assert collections["challenges"].docs[-1]["type"] == "authentication"

    @pytest.mark.asyncio
    async def test_discoverable_login_by_user_handle(self, orchestrator, collections):
        registered = await register(orchestrator, "alice", ALICE_CREDENTIAL)
        user_handle = bytes_to_base64url(registered["user"]["id"].encode("utf-8"))

        started = await orchestrator.start_authentication(client=CLIENT)
        response = authentication_response(
            ALICE_CREDENTIAL, started["options"]["challenge"], 1, user_handle=user_handle
        )
        result = await orchestrator.finish_authentication(response, client=CLIENT)

        assert result["user"]["username"] == "alice"

    @pytest.mark.asyncio
    async def test_wrapped_credential_id_resolves(self, orchestrator):
        await register(orchestrator, "alice", ALICE_CREDENTIAL)
        wrapped = bytes_to_base64url(ALICE_CREDENTIAL.encode("ascii"))

        _, result = await authenticate(orchestrator, "alice", wrapped, sign_count=1)

        assert result["verified"] is True

    @pytest.mark.asyncio
    async def test_unknown_credential(self, orchestrator, collections):
        await register(orchestrator, "alice", ALICE_CREDENTIAL)

        with pytest.raises(CredentialNotFoundError):
            await authenticate(orchestrator, "alice", BOB_CREDENTIAL, sign_count=1)

        assert collections["users"].docs[0]["failed_authentications"] == 1

    @pytest.mark.asyncio
    async def test_credential_of_another_user(self, orchestrator, collections):
        await register(orchestrator, "alice", ALICE_CREDENTIAL)
        await register(orchestrator, "bob", BOB_CREDENTIAL)

        with pytest.raises(CredentialNotFoundError):
            await authenticate(orchestrator, "alice", BOB_CREDENTIAL, sign_count=1)

        mismatch = collections["security_events"].docs[-1]
        assert mismatch["event_data"]["reason"] == "credential_owner_mismatch"
        assert mismatch["severity"] == "high"

    @pytest.mark.asyncio
    async def test_missing_credential_id(self, orchestrator):
        with pytest.raises(InvalidInputError):
            await orchestrator.finish_authentication({"response": {}}, client=CLIENT)

    @pytest.mark.asyncio
    async def test_verifier_error_is_verification_failed(self, orchestrator, verifier, collections):
        await register(orchestrator, "alice", ALICE_CREDENTIAL)
        verifier.error_kind = VerifierErrorKind.TIMEOUT

        with pytest.raises(VerificationFailedError):
            await authenticate(orchestrator, "alice", ALICE_CREDENTIAL, sign_count=1)

        assert collections["credentials"].docs[0]["counter"] == 0
        authentication_challenges = [
            doc for doc in collections["challenges"].docs if doc["type"] == ChallengeType.AUTHENTICATION.value
        ]
        assert authentication_challenges[0]["used"] is False

    @pytest.mark.asyncio
    async def test_counter_regression_flags_clone(self, orchestrator, collections):
        await register(orchestrator, "alice", ALICE_CREDENTIAL)
        await authenticate(orchestrator, "alice", ALICE_CREDENTIAL, sign_count=5)

        with pytest.raises(VerificationFailedError):
            await authenticate(orchestrator, "alice", ALICE_CREDENTIAL, sign_count=5)

        assert collections["credentials"].docs[0]["counter"] == 5
        flagged = collections["security_events"].docs[-1]
        assert flagged["event_type"] == "possible_cloned_authenticator"
        assert flagged["severity"] == "high"

    @pytest.mark.asyncio
    async def test_zero_counter_authenticator_keeps_working(self, orchestrator):
        await register(orchestrator, "alice", ALICE_CREDENTIAL)

        await authenticate(orchestrator, "alice", ALICE_CREDENTIAL, sign_count=0)
        _, result = await authenticate(orchestrator, "alice", ALICE_CREDENTIAL, sign_count=0)

        assert result["counter"] == 0

    @pytest.mark.asyncio
    async def test_expired_challenge(self, orchestrator, clock):
        await register(orchestrator, "alice", ALICE_CREDENTIAL)
        started = await orchestrator.start_authentication("alice", client=CLIENT)
        clock.advance(minutes=6)

        response = authentication_response(ALICE_CREDENTIAL, started["options"]["challenge"], 1)
        with pytest.raises(ChallengeInvalidError):
            await orchestrator.finish_authentication(response, username="alice", client=CLIENT)


class TestRateLimitedStarts:
    @pytest.mark.asyncio
    async def test_rate_limited_start_logs_and_raises(self, orchestrator, collections):
        class Limiter:
            async def check_rate_limit(self, action, client_ip):
                raise RateLimitedError(retry_after=60)

        orchestrator.rate_limiter = Limiter()

        with pytest.raises(RateLimitedError):
            await orchestrator.start_registration("alice", client=CLIENT)

        assert collections["users"].docs == []
        assert event_types(collections) == ["rate_limit_exceeded"]
