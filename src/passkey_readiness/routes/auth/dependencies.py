"""
FastAPI dependencies wiring the ceremony services.

The stores resolve their MongoDB collections and Redis client lazily, so these
module-level instances can be built at import time, before the database connects.
Tests replace them through ``app.dependency_overrides``.
"""

from fastapi import Request

from passkey_readiness.managers.notification_manager import notification_manager
from passkey_readiness.managers.security_manager import security_manager
from passkey_readiness.routes.auth.models import ClientContext
from passkey_readiness.routes.auth.services.otp.fallback import OTPFallbackCeremony
from passkey_readiness.routes.auth.services.otp.tickets import create_ticket_store
from passkey_readiness.routes.auth.services.security.events import SecurityEventSink
from passkey_readiness.routes.auth.services.webauthn.challenge import ChallengeRegistry
from passkey_readiness.routes.auth.services.webauthn.credentials import CredentialStore
from passkey_readiness.routes.auth.services.webauthn.identity import IdentityResolver, UserStore
from passkey_readiness.routes.auth.services.webauthn.orchestrator import CeremonyOrchestrator
from passkey_readiness.routes.auth.services.webauthn.verifier import WebAuthnVerifier
from passkey_readiness.utils.logging_utils import get_client_ip, truncate_id

event_sink = SecurityEventSink()
user_store = UserStore()
identity_resolver = IdentityResolver(user_store)
challenge_registry = ChallengeRegistry()
otp_ticket_store = create_ticket_store()


async def record_credential_migration(stored_id: str, canonical_id: str) -> None:
    await event_sink.log_event(
        "credential_id_migrated",
        {"from": truncate_id(stored_id, 16), "to": truncate_id(canonical_id, 16)},
    )


credential_store = CredentialStore(on_migrated=record_credential_migration)

orchestrator = CeremonyOrchestrator(
    identity=identity_resolver,
    credentials=credential_store,
    challenges=challenge_registry,
    events=event_sink,
    verifier=WebAuthnVerifier(),
    rate_limiter=security_manager,
)

otp_ceremony = OTPFallbackCeremony(
    store=otp_ticket_store,
    identity=identity_resolver,
    events=event_sink,
    notifier=notification_manager,
    rate_limiter=security_manager,
)


def get_client_context(request: Request) -> ClientContext:
    """Source address and user agent, extracted the way the request logger does it."""
    return ClientContext(ip_address=get_client_ip(request), user_agent=request.headers.get("user-agent"))


def get_orchestrator() -> CeremonyOrchestrator:
    return orchestrator


def get_otp_ceremony() -> OTPFallbackCeremony:
    return otp_ceremony


def get_event_sink() -> SecurityEventSink:
    return event_sink


def get_user_store() -> UserStore:
    return user_store


def get_credential_store() -> CredentialStore:
    return credential_store


def get_challenge_registry() -> ChallengeRegistry:
    return challenge_registry
