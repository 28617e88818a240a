"""
WebAuthn ceremony orchestrator.

Drives the registration and authentication ceremonies:

    started -> challenge_issued -> verified
                               \\-> failed

A start step resolves the subject, asks the verifier for options and issues a
challenge bound to (ceremony type, subject). A finish step re-validates the
challenge, resolves the credential, runs verification, and only then commits:
the challenge is consumed first, so two concurrent completions of the same
ceremony cannot both commit.

Every outcome is written to the security event stream before the step returns.
No User or Credential is mutated before the final success step, except that
registration start creates the User.
"""

import binascii
from typing import Any, Dict, List, Optional

from webauthn.helpers import base64url_to_bytes

from passkey_readiness.managers.logging_manager import get_logger
from passkey_readiness.routes.auth.models import ChallengeType, ClientContext, Credential, Severity, User
from passkey_readiness.routes.auth.services.errors import (
    CeremonyError,
    ChallengeInvalidError,
    ConflictError,
    CredentialNotFoundError,
    InternalCeremonyError,
    InvalidInputError,
    NoCredentialsEnrolledError,
    RateLimitedError,
    VerificationFailedError,
    ceremony_boundary,
)
from passkey_readiness.routes.auth.services.security.events import SecurityEventSink
from passkey_readiness.routes.auth.services.webauthn.challenge import ChallengeRegistry, generate_challenge_bytes
from passkey_readiness.routes.auth.services.webauthn.credentials import CredentialStore, DuplicateCredentialError
from passkey_readiness.routes.auth.services.webauthn.identity import IdentityResolver, UserStore
from passkey_readiness.routes.auth.services.webauthn.verifier import VerifierError, extract_challenge
from passkey_readiness.utils.logging_utils import log_performance, truncate_id

logger = get_logger(prefix="[WebAuthn Ceremony]")


def _public_user(user: User, **extra: Any) -> Dict[str, Any]:
    return {"id": user.id, "username": user.username, "display_name": user.display_name, **extra}


class CeremonyOrchestrator:
    """Registration and authentication state machines over the ceremony stores."""

    def __init__(
        self,
        identity: IdentityResolver,
        credentials: CredentialStore,
        challenges: ChallengeRegistry,
        events: SecurityEventSink,
        verifier,
        rate_limiter=None,
    ):
        self.identity = identity
        self.users: UserStore = identity.users
        self.credentials = credentials
        self.challenges = challenges
        self.events = events
        self.verifier = verifier
        self.rate_limiter = rate_limiter

    async def _check_rate_limit(self, action: str, client: ClientContext) -> None:
        if self.rate_limiter is None:
            return
        try:
            await self.rate_limiter.check_rate_limit(action, client.ip_address)
        except RateLimitedError as e:
            await self.events.log_event(
                "rate_limit_exceeded",
                {"action": action, "reason": e.error_code},
                client=client,
                severity=Severity.MEDIUM,
                success=False,
            )
            raise

    # --- Registration ---

    @ceremony_boundary("webauthn_registration_start")
    @log_performance("webauthn_registration_start")
    async def start_registration(
        self,
        username: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        client: Optional[ClientContext] = None,
    ) -> Dict[str, Any]:
        """
        Begin enrolment of a passkey for ``username``, creating the user on first use.

        Returns:
            dict: ``options`` for navigator.credentials.create() and the public ``user``

        Raises:
            InvalidInputError: empty handle
            ConflictError: the email is bound to a different user
            RateLimitedError: too many starts from this client
        """
        client = client or ClientContext()
        await self._check_rate_limit("registration_start", client)

        try:
            user = await self.identity.resolve_or_create(username, display_name=display_name, email=email)
        except ConflictError:
            await self.events.log_event(
                "registration_failed",
                {"username": username, "reason": "email_conflict"},
                client=client,
                severity=Severity.LOW,
                success=False,
            )
            raise

        existing = await self.credentials.find_by_user(user.id)
        value = generate_challenge_bytes()
        try:
            options = await self.verifier.registration_options(
                user_id=user.id,
                user_name=user.username,
                display_name=user.display_name,
                challenge=value,
                exclude=existing,
            )
        except VerifierError as e:
            raise InternalCeremonyError(context={"verifier": e.kind.value}) from e

        challenge = await self.challenges.issue(ChallengeType.REGISTRATION, owner_id=user.id, value=value)
        await self.events.log_event(
            "registration_start",
            {"username": user.username, "existing_count": len(existing)},
            user_id=user.id,
            client=client,
        )
        logger.info(
            "Registration started for %s with challenge %s (%d existing credentials)",
            user.username,
            truncate_id(challenge.id),
            len(existing),
        )
        return {"options": options, "user": _public_user(user)}

    async def _registration_failed(
        self, reason: str, username: str, user_id: Optional[str], client: ClientContext, error: CeremonyError
    ) -> CeremonyError:
        await self.events.log_event(
            "registration_failed",
            {"username": username, "reason": reason},
            user_id=user_id,
            client=client,
            severity=Severity.MEDIUM,
            success=False,
        )
        return error

    @ceremony_boundary("webauthn_registration_finish")
    @log_performance("webauthn_registration_finish")
    async def finish_registration(
        self, username: str, credential: Dict[str, Any], client: Optional[ClientContext] = None
    ) -> Dict[str, Any]:
        """
        Verify an attestation response and enrol the credential.

        Raises:
            ChallengeInvalidError: no pending registration challenge for the subject, or it was
                consumed by a concurrent completion
            VerificationFailedError: the verifier rejected the response
            ConflictError: the credential id is already enrolled
        """
        client = client or ClientContext()
        user = await self.identity.resolve(username)
        if user is None:
            raise await self._registration_failed("unknown_user", username, None, client, ChallengeInvalidError())

        challenge = await self.challenges.find_usable(
            ChallengeType.REGISTRATION, owner_id=user.id, value=extract_challenge(credential)
        )
        if challenge is None:
            raise await self._registration_failed("no_pending_challenge", username, user.id, client, ChallengeInvalidError())

        try:
            result = await self.verifier.verify_registration(credential, challenge.challenge)
        except VerifierError as e:
            logger.warning("Registration verification failed for %s: %s", user.username, e.kind.value)
            raise await self._registration_failed(
                f"verifier_{e.kind.value}", username, user.id, client, VerificationFailedError()
            ) from e
        if not result.verified:
            raise await self._registration_failed("not_verified", username, user.id, client, VerificationFailedError())

        if not await self.challenges.consume(challenge.id):
            raise await self._registration_failed("challenge_replayed", username, user.id, client, ChallengeInvalidError())

        now = self.credentials.clock()
        try:
            stored = await self.credentials.create(
                Credential(
                    credential_id=result.credential_id,
                    user_id=user.id,
                    public_key=result.public_key,
                    counter=result.counter,
                    device_type=result.device_type,
                    transports=result.transports,
                    created_at=now,
                    backed_up=result.backed_up,
                )
            )
        except DuplicateCredentialError as e:
            raise await self._registration_failed(
                "credential_already_enrolled", username, user.id, client, ConflictError("Credential already enrolled")
            ) from e

        await self.users.increment(user.id, "passkey_registrations")
        credential_count = len(await self.credentials.find_by_user(user.id))
        await self.events.log_event(
            "registration_success",
            {"username": user.username, "device_type": stored.device_type, "backed_up": stored.backed_up},
            user_id=user.id,
            client=client,
        )
        logger.info("Registered %s credential for %s", stored.device_type, user.username)
        return {"verified": True, "user": _public_user(user, credential_count=credential_count)}

    # --- Authentication ---

    @ceremony_boundary("webauthn_authentication_start")
    @log_performance("webauthn_authentication_start")
    async def start_authentication(
        self, username: Optional[str] = None, client: Optional[ClientContext] = None
    ) -> Dict[str, Any]:
        """
        Begin an assertion ceremony.

        A handle that resolves to a user scopes the options to that user's credentials.
        An unknown or absent handle yields discoverable options, so the response does not
        reveal whether an account exists.

        Raises:
            NoCredentialsEnrolledError: the user exists but has no passkeys; nothing is issued
        """
        client = client or ClientContext()
        await self._check_rate_limit("authentication_start", client)

        user = await self.identity.resolve(username) if username else None
        allow: Optional[List[Credential]] = None
        if user is not None:
            allow = await self.credentials.find_by_user(user.id)
            if not allow:
                await self.events.log_event(
                    "authentication_failed",
                    {"username": user.username, "reason": "no_credentials_enrolled"},
                    user_id=user.id,
                    client=client,
                    severity=Severity.LOW,
                    success=False,
                )
                raise NoCredentialsEnrolledError()

        value = generate_challenge_bytes()
        try:
            options = await self.verifier.authentication_options(challenge=value, allow=allow)
        except VerifierError as e:
            if allow is None:
                raise InternalCeremonyError(context={"verifier": e.kind.value}) from e
            logger.warning("Scoped authentication options failed (%s); falling back to discoverable", e.kind.value)
            try:
                options = await self.verifier.authentication_options(challenge=value, allow=None)
            except VerifierError as fallback_error:
                raise InternalCeremonyError(context={"verifier": fallback_error.kind.value}) from fallback_error

        challenge = await self.challenges.issue(
            ChallengeType.AUTHENTICATION, owner_id=user.id if user else None, value=value
        )
        await self.events.log_event(
            "authentication_start",
            {"discoverable": user is None, "allowed_count": len(allow or [])},
            user_id=user.id if user else None,
            client=client,
        )
        logger.info("Authentication started with challenge %s", truncate_id(challenge.id))
        return {"options": options}

    async def _subject_from_response(self, credential: Dict[str, Any], username: Optional[str]) -> Optional[User]:
        """Subject named by the authenticator's user handle, else by the supplied handle."""
        user_handle = (credential.get("response") or {}).get("userHandle")
        if user_handle:
            try:
                user_id = base64url_to_bytes(user_handle).decode("utf-8")
            except (binascii.Error, ValueError):
                user_id = user_handle
            user = await self.users.find_by_id(user_id)
            if user is not None:
                return user
        if username:
            return await self.identity.resolve(username)
        return None

    async def _authentication_failed(
        self,
        reason: str,
        user_id: Optional[str],
        client: ClientContext,
        error: CeremonyError,
        severity: Severity = Severity.MEDIUM,
        event_type: str = "authentication_failed",
    ) -> CeremonyError:
        if user_id is not None:
            await self.users.increment(user_id, "failed_authentications")
        await self.events.log_event(
            event_type, {"reason": reason}, user_id=user_id, client=client, severity=severity, success=False
        )
        return error

    @ceremony_boundary("webauthn_authentication_finish")
    @log_performance("webauthn_authentication_finish")
    async def finish_authentication(
        self,
        credential: Dict[str, Any],
        username: Optional[str] = None,
        client: Optional[ClientContext] = None,
    ) -> Dict[str, Any]:
        """
        Verify an assertion and commit the new signature counter.

        Raises:
            InvalidInputError: the response carries no credential id
            CredentialNotFoundError: the credential id resolves to nothing
            ChallengeInvalidError: no usable authentication challenge, or it was replayed
            VerificationFailedError: the verifier rejected the assertion or the counter regressed
        """
        client = client or ClientContext()
        credential_id = credential.get("rawId") or credential.get("id")
        if not credential_id or not isinstance(credential_id, str):
            raise InvalidInputError("Credential id is required", field="credential")

        subject = await self._subject_from_response(credential, username)
        subject_id = subject.id if subject else None

        stored = await self.credentials.find_by_id(credential_id, subject_id)
        if stored is None:
            raise await self._authentication_failed("credential_not_found", subject_id, client, CredentialNotFoundError())
        if subject is not None and stored.user_id != subject.id:
            raise await self._authentication_failed(
                "credential_owner_mismatch", subject.id, client, CredentialNotFoundError(), severity=Severity.HIGH
            )

        user = subject or await self.users.find_by_id(stored.user_id)
        if user is None or not user.is_active:
            raise await self._authentication_failed("inactive_or_missing_user", stored.user_id, client, CredentialNotFoundError())

        challenge = await self.challenges.find_usable(
            ChallengeType.AUTHENTICATION,
            owner_id=user.id,
            value=extract_challenge(credential),
            include_ownerless=True,
        )
        if challenge is None:
            raise await self._authentication_failed("no_usable_challenge", user.id, client, ChallengeInvalidError())

        try:
            result = await self.verifier.verify_authentication(credential, challenge.challenge, stored)
        except VerifierError as e:
            logger.warning("Assertion verification failed for %s: %s", user.username, e.kind.value)
            raise await self._authentication_failed(
                f"verifier_{e.kind.value}", user.id, client, VerificationFailedError()
            ) from e
        if not result.verified:
            raise await self._authentication_failed("not_verified", user.id, client, VerificationFailedError())

        if stored.counter > 0 and result.new_counter <= stored.counter:
            logger.warning(
                "Signature counter did not advance for credential %s (stored=%d, presented=%d)",
                truncate_id(stored.credential_id),
                stored.counter,
                result.new_counter,
            )
            raise await self._authentication_failed(
                "counter_regression",
                user.id,
                client,
                VerificationFailedError(),
                severity=Severity.HIGH,
                event_type="possible_cloned_authenticator",
            )

        if not await self.challenges.consume(challenge.id):
            raise await self._authentication_failed("challenge_replayed", user.id, client, ChallengeInvalidError())

        if not await self.credentials.update_counter(stored.credential_id, result.new_counter, stored.counter):
            raise await self._authentication_failed("counter_changed_concurrently", user.id, client, VerificationFailedError())

        await self.users.increment(user.id, "successful_authentications", touch_login=True)
        await self.events.log_event(
            "authentication_success",
            {"username": user.username, "device_type": stored.device_type, "counter": result.new_counter},
            user_id=user.id,
            client=client,
        )
        logger.info("Authenticated %s with %s credential", user.username, stored.device_type)
        return {
            "verified": True,
            "user": _public_user(user),
            "counter": result.new_counter,
        }
