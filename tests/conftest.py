"""
Pytest configuration for the ceremony tests.

Every store is wired to in-memory fakes from ``tests/fakes.py`` and shares one
FakeClock, so expiry and retention can be driven without sleeping.
"""

import os
import sys

import pytest

# Add src and tests to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))
sys.path.insert(0, os.path.dirname(__file__))

os.environ.setdefault("OTP_TICKET_BACKEND", "memory")
os.environ.setdefault("LOKI_ENABLED", "false")

from fakes import FakeClock, FakeNotifier, FakeVerifier, make_collections  # noqa: E402

from passkey_readiness.routes.auth.services.otp.fallback import OTPFallbackCeremony  # noqa: E402
from passkey_readiness.routes.auth.services.otp.tickets import MemoryOTPTicketStore  # noqa: E402
from passkey_readiness.routes.auth.services.security.events import SecurityEventSink  # noqa: E402
from passkey_readiness.routes.auth.services.webauthn.challenge import ChallengeRegistry  # noqa: E402
from passkey_readiness.routes.auth.services.webauthn.credentials import CredentialStore  # noqa: E402
from passkey_readiness.routes.auth.services.webauthn.identity import IdentityResolver, UserStore  # noqa: E402
from passkey_readiness.routes.auth.services.webauthn.orchestrator import CeremonyOrchestrator  # noqa: E402


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def collections():
    return make_collections()


@pytest.fixture
def user_store(collections, clock):
    return UserStore(collections["users"], clock=clock)


@pytest.fixture
def identity(user_store):
    return IdentityResolver(user_store)


@pytest.fixture
def migrations():
    """(stored_id, canonical_id) pairs reported by the credential store."""
    return []


@pytest.fixture
def credential_store(collections, clock, migrations):
    async def record(stored_id, canonical_id):
        migrations.append((stored_id, canonical_id))

    return CredentialStore(collections["credentials"], clock=clock, on_migrated=record)


@pytest.fixture
def challenge_registry(collections, clock):
    return ChallengeRegistry(collections["challenges"], clock=clock, expiry_minutes=5)


@pytest.fixture
def event_sink(collections, clock):
    return SecurityEventSink(collections["security_events"], clock=clock)


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def ticket_store(clock):
    return MemoryOTPTicketStore(clock=clock)


@pytest.fixture
def orchestrator(identity, credential_store, challenge_registry, event_sink, verifier):
    return CeremonyOrchestrator(identity, credential_store, challenge_registry, event_sink, verifier)


@pytest.fixture
def otp_ceremony(ticket_store, identity, event_sink, notifier, clock):
    return OTPFallbackCeremony(
        ticket_store,
        identity,
        event_sink,
        notifier,
        clock=clock,
        code_length=6,
        expiry_seconds=300,
        max_attempts=3,
    )
