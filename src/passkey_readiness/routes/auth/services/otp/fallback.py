"""
One-time-code fallback ceremony.

Runs in parallel to the passkey ceremonies for users or devices that cannot
complete WebAuthn. A ticket carries the code, the target it was issued for and
an attempt budget:

- every verify increments the ticket's attempt counter before comparing codes
- a mismatch that uses the last attempt destroys the ticket
- a match destroys the ticket and completes the ceremony
- a destroyed or expired ticket reads as not found
"""

from datetime import timedelta
import hmac
import secrets
from typing import Any, Dict, Optional
import uuid

from passkey_readiness.config import settings
from passkey_readiness.managers.logging_manager import get_logger
from passkey_readiness.routes.auth.models import (
    ChallengeType,
    ClientContext,
    DeliveryMethod,
    OTPTicket,
    Severity,
    User,
)
from passkey_readiness.routes.auth.services.errors import (
    CodeMismatchError,
    DeliveryFailedError,
    InvalidInputError,
    MaxAttemptsExceededError,
    TicketNotFoundError,
    ceremony_boundary,
)
from passkey_readiness.routes.auth.services.otp.tickets import OTPTicketStore
from passkey_readiness.routes.auth.services.security.events import SecurityEventSink
from passkey_readiness.routes.auth.services.webauthn.identity import IdentityResolver, normalize_email
from passkey_readiness.utils.datetime_utils import Clock, utc_now
from passkey_readiness.utils.logging_utils import log_performance, truncate_id

logger = get_logger(prefix="[OTP Fallback]")

# Event names differ between the registration and authentication paths.
EVENT_NAMES = {
    ChallengeType.REGISTRATION: {
        "sent": "otp_sent",
        "failed": "otp_failed",
        "max_attempts": "otp_max_attempts",
        "success": "otp_registration_success",
    },
    ChallengeType.AUTHENTICATION: {
        "sent": "auth_otp_sent",
        "failed": "auth_otp_failed",
        "max_attempts": "auth_otp_max_attempts",
        "success": "auth_otp_success",
    },
}


def generate_code(length: int) -> str:
    """Uniformly random numeric code, zero padded to ``length`` digits."""
    return str(secrets.randbelow(10**length)).zfill(length)


class OTPFallbackCeremony:
    def __init__(
        self,
        store: OTPTicketStore,
        identity: IdentityResolver,
        events: SecurityEventSink,
        notifier,
        clock: Clock = utc_now,
        code_length: Optional[int] = None,
        expiry_seconds: Optional[int] = None,
        max_attempts: Optional[int] = None,
        rate_limiter=None,
    ):
        self.store = store
        self.identity = identity
        self.users = identity.users
        self.events = events
        self.notifier = notifier
        self.clock = clock
        self.code_length = code_length or settings.OTP_CODE_LENGTH
        self.expiry = timedelta(seconds=expiry_seconds or settings.OTP_EXPIRY_SECONDS)
        self.max_attempts = max_attempts or settings.OTP_MAX_ATTEMPTS
        self.rate_limiter = rate_limiter

    async def _deliver(self, ticket: OTPTicket) -> bool:
        minutes = max(int(self.expiry.total_seconds() // 60), 1)
        body = f"Your verification code is {ticket.code}. It expires in {minutes} minutes."
        if ticket.method == DeliveryMethod.SMS.value:
            return await self.notifier.send_sms(ticket.phone_number, body)
        return await self.notifier.send_email(ticket.email, "Your verification code", body)

    @ceremony_boundary("otp_send")
    @log_performance("otp_send")
    async def send(
        self,
        target: Optional[str],
        method: DeliveryMethod,
        ceremony_type: ChallengeType,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
        client: Optional[ClientContext] = None,
    ) -> Dict[str, Any]:
        """
        Issue a ticket and dispatch its code.

        Registration needs an email for the email method and a phone number for SMS;
        a handle that is itself an email doubles as the address. Authentication needs
        an existing user and falls back to the user's stored email.

        Returns:
            dict: ``otp_id``, ``method`` and ``expires_in`` seconds

        Raises:
            InvalidInputError: missing target or delivery address, unknown user on authentication
            DeliveryFailedError: no provider accepted the message; the ticket is discarded
        """
        client = client or ClientContext()
        if self.rate_limiter is not None:
            await self.rate_limiter.check_rate_limit(f"otp_send_{ceremony_type.value}", client.ip_address)
        method = DeliveryMethod(method)
        target = (target or email or "").strip()
        if not target:
            raise InvalidInputError("Username or email is required", field="username")

        user: Optional[User] = None
        if ceremony_type == ChallengeType.AUTHENTICATION:
            user = await self.identity.resolve(target)
            if user is None:
                raise InvalidInputError("Invalid user identifier", field="username")
            email = normalize_email(email) or user.email
        else:
            email = normalize_email(email) or (normalize_email(target) if "@" in target else None)

        if method == DeliveryMethod.EMAIL and not email:
            raise InvalidInputError("Email is required for email delivery", field="email")
        if method == DeliveryMethod.SMS and not phone_number:
            raise InvalidInputError("Phone number is required for SMS delivery", field="phone_number")

        now = self.clock()
        ticket = OTPTicket(
            id=str(uuid.uuid4()),
            target=target,
            method=method,
            code=generate_code(self.code_length),
            type=ceremony_type,
            user_id=user.id if user else None,
            email=email,
            phone_number=phone_number,
            max_attempts=self.max_attempts,
            created_at=now,
            expires_at=now + self.expiry,
        )
        await self.store.save(ticket)

        names = EVENT_NAMES[ceremony_type]
        if not await self._deliver(ticket):
            await self.store.destroy(ticket.id)
            await self.events.log_event(
                names["failed"],
                {"target": target, "method": method.value, "reason": "delivery_failed"},
                user_id=ticket.user_id,
                client=client,
                severity=Severity.MEDIUM,
                success=False,
            )
            raise DeliveryFailedError()

        await self.events.log_event(
            names["sent"], {"target": target, "method": method.value}, user_id=ticket.user_id, client=client
        )
        logger.info("Sent %s code for %s via %s (ticket %s)", ceremony_type.value, target, method.value, truncate_id(ticket.id))
        return {
            "otp_id": ticket.id,
            "method": method.value,
            "expires_in": int(self.expiry.total_seconds()),
        }

    @ceremony_boundary("otp_verify")
    @log_performance("otp_verify")
    async def verify(
        self,
        ticket_id: str,
        code: str,
        target: Optional[str],
        ceremony_type: ChallengeType,
        client: Optional[ClientContext] = None,
    ) -> Dict[str, Any]:
        """
        Check a code against its ticket and complete the ceremony.

        Returns:
            dict: ``verified`` and the public ``user``

        Raises:
            TicketNotFoundError: the ticket is missing, expired, destroyed or of another ceremony type
            CodeMismatchError: wrong code or target; the ticket keeps its remaining attempts
            MaxAttemptsExceededError: the attempt budget is spent; the ticket is destroyed
        """
        client = client or ClientContext()
        ticket = await self.store.get(ticket_id)
        if ticket is None or ticket.type != ceremony_type.value:
            raise TicketNotFoundError()

        names = EVENT_NAMES[ceremony_type]
        attempts = await self.store.increment_attempts(ticket_id)
        if attempts is None:
            raise TicketNotFoundError()

        target = (target or "").strip()
        matches = hmac.compare_digest(ticket.code, (code or "").strip()) and target == ticket.target
        if not matches:
            if attempts >= ticket.max_attempts:
                await self.store.destroy(ticket_id)
                await self.events.log_event(
                    names["max_attempts"],
                    {"target": target, "attempts": attempts},
                    user_id=ticket.user_id,
                    client=client,
                    severity=Severity.HIGH,
                    success=False,
                )
                raise MaxAttemptsExceededError()
            await self.events.log_event(
                names["failed"],
                {"target": target, "attempts": attempts},
                user_id=ticket.user_id,
                client=client,
                severity=Severity.LOW,
                success=False,
            )
            raise CodeMismatchError(attempts, ticket.max_attempts)

        if attempts > ticket.max_attempts:
            await self.store.destroy(ticket_id)
            raise MaxAttemptsExceededError()

        if not await self.store.destroy(ticket_id):
            # A concurrent verify of the same ticket completed first.
            raise TicketNotFoundError()

        if ceremony_type == ChallengeType.REGISTRATION:
            user = await self.identity.resolve_or_create(ticket.target, email=ticket.email)
            await self.users.increment(user.id, "otp_fallback_usage")
        else:
            user = await self.users.find_by_id(ticket.user_id) if ticket.user_id else None
            if user is None:
                raise TicketNotFoundError()
            await self.users.increment(user.id, "otp_fallback_usage")
            await self.users.increment(user.id, "successful_authentications", touch_login=True)

        await self.events.log_event(
            names["success"], {"target": ticket.target, "method": ticket.method}, user_id=user.id, client=client
        )
        logger.info("OTP %s completed for %s", ceremony_type.value, user.username)
        return {
            "verified": True,
            "user": {"id": user.id, "username": user.username, "method": "otp"},
        }
