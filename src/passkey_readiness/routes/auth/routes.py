"""
HTTP endpoints for the passkey and OTP ceremonies, the security event stream and
the metrics summary.

Ceremony failures surface as ``CeremonyError`` and are rendered by
``ceremony_error_handler`` as ``{"error": code, "message": ...}`` with the error's
HTTP status; no internal detail reaches the response body.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from passkey_readiness.config import settings
from passkey_readiness.managers.logging_manager import get_logger
from passkey_readiness.routes.auth.dependencies import (
    get_challenge_registry,
    get_client_context,
    get_credential_store,
    get_event_sink,
    get_orchestrator,
    get_otp_ceremony,
    get_user_store,
)
from passkey_readiness.routes.auth.models import (
    AuthenticationFinishRequest,
    AuthenticationStartRequest,
    ChallengeType,
    ClientContext,
    OTPSendRequest,
    OTPVerifyRequest,
    RegistrationFinishRequest,
    RegistrationStartRequest,
    Severity,
)
from passkey_readiness.routes.auth.services.errors import CeremonyError, InvalidInputError, RateLimitedError
from passkey_readiness.routes.auth.services.otp.fallback import OTPFallbackCeremony
from passkey_readiness.routes.auth.services.security.events import SecurityEventSink
from passkey_readiness.routes.auth.services.webauthn.challenge import ChallengeRegistry
from passkey_readiness.routes.auth.services.webauthn.credentials import CredentialStore
from passkey_readiness.routes.auth.services.webauthn.identity import UserStore
from passkey_readiness.routes.auth.services.webauthn.orchestrator import CeremonyOrchestrator
from passkey_readiness.utils.logging_utils import log_performance

logger = get_logger(prefix="[Auth Routes]")

router = APIRouter(prefix="/api")


async def ceremony_error_handler(request: Request, exc: CeremonyError) -> JSONResponse:
    """Render a CeremonyError with its status and public message."""
    logger.info(
        "%s %s failed: %s (%s)", request.method, request.url.path, exc.error_code, exc.status_code
    )
    headers = None
    if isinstance(exc, RateLimitedError) and exc.retry_after:
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_response(), headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render request model failures in the INVALID_INPUT shape."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    message = first.get("msg", "Invalid request")
    error = InvalidInputError(f"{field}: {message}" if field else message, field=field or None)
    logger.info("%s %s rejected: %d validation error(s)", request.method, request.url.path, len(errors))
    return JSONResponse(status_code=error.status_code, content=error.to_response())


# --- WebAuthn ---


@router.post("/webauthn/register/start", tags=["WebAuthn"])
async def register_start(
    payload: RegistrationStartRequest,
    client: ClientContext = Depends(get_client_context),
    orchestrator: CeremonyOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Creation options for a new platform passkey; creates the user on first registration."""
    return await orchestrator.start_registration(
        payload.username, email=payload.email, display_name=payload.display_name, client=client
    )


@router.post("/webauthn/register/finish", tags=["WebAuthn"])
async def register_finish(
    payload: RegistrationFinishRequest,
    client: ClientContext = Depends(get_client_context),
    orchestrator: CeremonyOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return await orchestrator.finish_registration(payload.username, payload.credential, client=client)


@router.post("/webauthn/authenticate/start", tags=["WebAuthn"])
async def authenticate_start(
    payload: AuthenticationStartRequest,
    client: ClientContext = Depends(get_client_context),
    orchestrator: CeremonyOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Request options, scoped to the user's passkeys when the username resolves."""
    return await orchestrator.start_authentication(payload.username, client=client)


@router.post("/webauthn/authenticate/finish", tags=["WebAuthn"])
async def authenticate_finish(
    payload: AuthenticationFinishRequest,
    client: ClientContext = Depends(get_client_context),
    orchestrator: CeremonyOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return await orchestrator.finish_authentication(payload.credential, username=payload.username, client=client)


# --- OTP fallback ---


async def _send_otp(ceremony: OTPFallbackCeremony, payload: OTPSendRequest, ceremony_type: ChallengeType, client):
    result = await ceremony.send(
        payload.username or payload.email,
        payload.method,
        ceremony_type,
        email=payload.email,
        phone_number=payload.phone_number,
        client=client,
    )
    return {**result, "message": f"Verification code sent via {result['method']}"}


@router.post("/otp/register/send", tags=["OTP"])
async def otp_register_send(
    payload: OTPSendRequest,
    client: ClientContext = Depends(get_client_context),
    ceremony: OTPFallbackCeremony = Depends(get_otp_ceremony),
) -> Dict[str, Any]:
    return await _send_otp(ceremony, payload, ChallengeType.REGISTRATION, client)


@router.post("/otp/register/verify", tags=["OTP"])
async def otp_register_verify(
    payload: OTPVerifyRequest,
    client: ClientContext = Depends(get_client_context),
    ceremony: OTPFallbackCeremony = Depends(get_otp_ceremony),
) -> Dict[str, Any]:
    return await ceremony.verify(payload.otp_id, payload.otp, payload.target, ChallengeType.REGISTRATION, client=client)


@router.post("/otp/authenticate/send", tags=["OTP"])
async def otp_authenticate_send(
    payload: OTPSendRequest,
    client: ClientContext = Depends(get_client_context),
    ceremony: OTPFallbackCeremony = Depends(get_otp_ceremony),
) -> Dict[str, Any]:
    return await _send_otp(ceremony, payload, ChallengeType.AUTHENTICATION, client)


@router.post("/otp/authenticate/verify", tags=["OTP"])
async def otp_authenticate_verify(
    payload: OTPVerifyRequest,
    client: ClientContext = Depends(get_client_context),
    ceremony: OTPFallbackCeremony = Depends(get_otp_ceremony),
) -> Dict[str, Any]:
    return await ceremony.verify(
        payload.otp_id, payload.otp, payload.target, ChallengeType.AUTHENTICATION, client=client
    )


# --- Security events and metrics ---


@router.get("/security/events", tags=["Security"])
async def list_security_events(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    event_type: Optional[str] = None,
    severity: Optional[Severity] = None,
    user_id: Optional[str] = None,
    events: SecurityEventSink = Depends(get_event_sink),
) -> Dict[str, Any]:
    result = await events.get_events(page=page, limit=limit, event_type=event_type, severity=severity, user_id=user_id)
    total = result["total"]
    return {
        "events": [event.model_dump(mode="json") for event in result["events"]],
        "pagination": {
            "page": result["page"],
            "limit": result["limit"],
            "total": total,
            "pages": (total + result["limit"] - 1) // result["limit"],
        },
    }


@router.get("/security/stats", tags=["Security"])
async def security_stats(events: SecurityEventSink = Depends(get_event_sink)) -> Dict[str, Any]:
    return await events.get_event_stats()


def _success_rate(by_type: Dict[str, int], started: str, succeeded: str) -> Optional[float]:
    attempts = by_type.get(started, 0)
    if not attempts:
        return None
    return round(min(100.0, by_type.get(succeeded, 0) * 100.0 / attempts), 1)


@router.get("/metrics/summary", tags=["Metrics"])
@log_performance("metrics_summary")
async def metrics_summary(
    users: UserStore = Depends(get_user_store),
    credentials: CredentialStore = Depends(get_credential_store),
    challenges: ChallengeRegistry = Depends(get_challenge_registry),
    events: SecurityEventSink = Depends(get_event_sink),
) -> Dict[str, Any]:
    """Aggregate counts across users, credentials, challenges and ceremony outcomes."""
    user_stats = await users.get_stats()
    credential_stats = await credentials.get_stats()
    event_stats = await events.get_event_stats()
    by_type = event_stats["events_by_type"]
    return {
        "overview": {
            "total_users": user_stats["total_users"],
            "total_credentials": credential_stats["total"],
            "registration_success_rate": _success_rate(by_type, "registration_start", "registration_success"),
            "authentication_success_rate": _success_rate(by_type, "authentication_start", "authentication_success"),
            "attestation_enabled": settings.ENABLE_ATTESTATION,
        },
        "users": user_stats,
        "device_distribution": credential_stats["by_device_type"],
        "challenges": await challenges.get_stats(),
        "security": {
            "recent_events": event_stats["recent_events"],
            "events_by_severity": event_stats["events_by_severity"],
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
