"""
Adapter over the py_webauthn library.

All FIDO2 cryptography (attestation parsing, signature checks, origin and RP id
checks) happens inside ``webauthn``. This module only shapes its inputs and outputs
for the ceremony layer, runs the blocking calls off the event loop under a timeout,
and turns every library failure into a ``VerifierError`` with a typed ``kind``.
"""

import asyncio
import binascii
from dataclasses import dataclass, field
from enum import Enum
import json
from typing import Any, Callable, Dict, List, Optional

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url, parse_client_data_json
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from passkey_readiness.config import settings
from passkey_readiness.managers.logging_manager import get_logger
from passkey_readiness.routes.auth.models import Credential, DeviceType
from passkey_readiness.routes.auth.services.webauthn.credentials import canonicalize_credential_id
from passkey_readiness.utils.logging_utils import log_performance

logger = get_logger(prefix="[WebAuthn Verifier]")

_KNOWN_TRANSPORTS = {t.value for t in AuthenticatorTransport}


class VerifierErrorKind(str, Enum):
    INVALID_RESPONSE = "invalid_response"
    TIMEOUT = "timeout"
    OPTIONS_FAILED = "options_failed"
    INTERNAL = "internal"


class VerifierError(Exception):
    """Failure reported by the verifier adapter; callers branch on ``kind`` only."""

    def __init__(self, kind: VerifierErrorKind, detail: str = ""):
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)
        self.kind = kind
        self.detail = detail


@dataclass
class RegistrationVerification:
    verified: bool
    credential_id: str
    public_key: bytes
    counter: int
    device_type: DeviceType
    backed_up: bool = False
    transports: List[str] = field(default_factory=list)


@dataclass
class AuthenticationVerification:
    verified: bool
    new_counter: int
    backed_up: bool = False


def extract_challenge(response: Dict[str, Any]) -> Optional[str]:
    """
    Challenge value embedded in a client response's clientDataJSON, as base64url.

    Returns None when the response carries no parseable client data.
    """
    try:
        client_data = base64url_to_bytes(response["response"]["clientDataJSON"])
        return bytes_to_base64url(parse_client_data_json(client_data).challenge)
    except (WebAuthnException, binascii.Error, ValueError, KeyError, TypeError):
        return None


def _transports(values: Optional[List[str]]) -> List[str]:
    return [t for t in (values or []) if t in _KNOWN_TRANSPORTS]


def _descriptor(credential: Credential) -> PublicKeyCredentialDescriptor:
    return PublicKeyCredentialDescriptor(
        id=base64url_to_bytes(canonicalize_credential_id(credential.credential_id)),
        transports=[AuthenticatorTransport(t) for t in _transports(credential.transports)] or None,
    )


class WebAuthnVerifier:
    """Relying-party side of the WebAuthn ceremonies."""

    def __init__(
        self,
        rp_id: Optional[str] = None,
        rp_name: Optional[str] = None,
        expected_origins: Optional[List[str]] = None,
        timeout: Optional[float] = None,
    ):
        self.rp_id = rp_id or settings.RP_ID
        self.rp_name = rp_name or settings.RP_NAME
        self.expected_origins = expected_origins or settings.expected_origins_list
        self.timeout = timeout or settings.VERIFIER_TIMEOUT_SECONDS

    async def _run(self, func: Callable, failure_kind: VerifierErrorKind, **kwargs) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.warning("%s timed out after %.1fs", func.__name__, self.timeout)
            raise VerifierError(VerifierErrorKind.TIMEOUT, func.__name__) from e
        except (WebAuthnException, binascii.Error, ValueError, KeyError, TypeError) as e:
            logger.info("%s rejected input: %s", func.__name__, e)
            raise VerifierError(failure_kind, str(e)) from e

    @log_performance("webauthn_registration_options")
    async def registration_options(
        self,
        user_id: str,
        user_name: str,
        display_name: str,
        challenge: bytes,
        exclude: Optional[List[Credential]] = None,
    ) -> Dict[str, Any]:
        """Creation options for a platform authenticator with a resident key and user verification."""
        attestation = (
            AttestationConveyancePreference.DIRECT
            if settings.ENABLE_ATTESTATION
            else AttestationConveyancePreference.NONE
        )
        options = await self._run(
            generate_registration_options,
            VerifierErrorKind.OPTIONS_FAILED,
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user_id.encode("utf-8"),
            user_name=user_name,
            user_display_name=display_name,
            challenge=challenge,
            timeout=settings.WEBAUTHN_TIMEOUT_MS,
            attestation=attestation,
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.REQUIRED,
                user_verification=UserVerificationRequirement.REQUIRED,
            ),
            exclude_credentials=[_descriptor(c) for c in exclude or []],
        )
        return json.loads(options_to_json(options))

    @log_performance("webauthn_authentication_options")
    async def authentication_options(
        self, challenge: bytes, allow: Optional[List[Credential]] = None
    ) -> Dict[str, Any]:
        """Request options; ``allow`` scopes them to known credentials, None leaves them discoverable."""
        options = await self._run(
            generate_authentication_options,
            VerifierErrorKind.OPTIONS_FAILED,
            rp_id=self.rp_id,
            challenge=challenge,
            timeout=settings.WEBAUTHN_TIMEOUT_MS,
            allow_credentials=[_descriptor(c) for c in allow] if allow else None,
            user_verification=UserVerificationRequirement.REQUIRED,
        )
        return json.loads(options_to_json(options))

    @log_performance("webauthn_verify_registration")
    async def verify_registration(
        self,
        response: Dict[str, Any],
        expected_challenge: str,
        expected_origin: Optional[List[str]] = None,
        expected_rp_id: Optional[str] = None,
    ) -> RegistrationVerification:
        try:
            challenge_bytes = base64url_to_bytes(expected_challenge)
        except (binascii.Error, ValueError) as e:
            raise VerifierError(VerifierErrorKind.INTERNAL, "stored challenge is not base64url") from e

        verified = await self._run(
            verify_registration_response,
            VerifierErrorKind.INVALID_RESPONSE,
            credential=response,
            expected_challenge=challenge_bytes,
            expected_rp_id=expected_rp_id or self.rp_id,
            expected_origin=expected_origin or self.expected_origins,
            require_user_verification=True,
        )

        inner = response.get("response") or {}
        transports = _transports(inner.get("transports") or response.get("transports"))
        is_platform = response.get("authenticatorAttachment") == "platform" or "internal" in transports
        return RegistrationVerification(
            verified=True,
            credential_id=bytes_to_base64url(verified.credential_id),
            public_key=verified.credential_public_key,
            counter=verified.sign_count,
            device_type=DeviceType.PLATFORM if is_platform else DeviceType.CROSS_PLATFORM,
            backed_up=bool(verified.credential_backed_up),
            transports=transports,
        )

    @log_performance("webauthn_verify_authentication")
    async def verify_authentication(
        self,
        response: Dict[str, Any],
        expected_challenge: str,
        credential: Credential,
        expected_origin: Optional[List[str]] = None,
        expected_rp_id: Optional[str] = None,
    ) -> AuthenticationVerification:
        try:
            challenge_bytes = base64url_to_bytes(expected_challenge)
        except (binascii.Error, ValueError) as e:
            raise VerifierError(VerifierErrorKind.INTERNAL, "stored challenge is not base64url") from e

        verified = await self._run(
            verify_authentication_response,
            VerifierErrorKind.INVALID_RESPONSE,
            credential=response,
            expected_challenge=challenge_bytes,
            expected_rp_id=expected_rp_id or self.rp_id,
            expected_origin=expected_origin or self.expected_origins,
            credential_public_key=credential.public_key,
            # Counter regressions are judged by the orchestrator against the stored value.
            credential_current_sign_count=0,
            require_user_verification=True,
        )
        return AuthenticationVerification(
            verified=True,
            new_counter=verified.new_sign_count,
            backed_up=bool(verified.credential_backed_up),
        )
