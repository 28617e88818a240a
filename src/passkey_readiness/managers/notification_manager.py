"""
NotificationManager module for the Passkey Readiness server.

- Delivers one-time codes by email or SMS through an ordered list of providers.
- The first provider that does not raise ``RuntimeError`` wins; if every provider
  fails the send returns False and the caller decides what that means.
- The development console provider prints the message instead of delivering it.
"""

from typing import Awaitable, Callable, List, Optional

from passkey_readiness.managers.logging_manager import get_logger

logger = get_logger(prefix="[NotificationManager]")

EmailProvider = Callable[[str, str, str], Awaitable[None]]
SmsProvider = Callable[[str, str], Awaitable[None]]


class NotificationManager:
    """
    Sends email and SMS messages using multiple providers.
    """

    def __init__(
        self,
        email_providers: Optional[List[EmailProvider]] = None,
        sms_providers: Optional[List[SmsProvider]] = None,
    ):
        self.logger = logger
        self.email_providers = email_providers or [self._send_email_via_console]
        self.sms_providers = sms_providers or [self._send_sms_via_console]
        self.logger.debug(
            "Initialized with email providers %s and sms providers %s",
            [p.__name__ for p in self.email_providers],
            [p.__name__ for p in self.sms_providers],
        )

    async def send_email(self, to_email: str, subject: str, body: str) -> bool:
        """
        Send an email using available providers.
        Returns True if sent successfully, False otherwise.
        """
        self.logger.info("Attempting to send email to %s", to_email)
        for provider in self.email_providers:
            try:
                await provider(to_email, subject, body)
                self.logger.info("Email sent to %s using provider %s", to_email, provider.__name__)
                return True
            except RuntimeError as e:
                self.logger.warning("Email provider %s failed for %s: %s", provider.__name__, to_email, e, exc_info=True)
        self.logger.error("All email providers failed to send to %s", to_email)
        return False

    async def send_sms(self, to_number: str, body: str) -> bool:
        """
        Send an SMS using available providers.
        Returns True if sent successfully, False otherwise.
        """
        self.logger.info("Attempting to send SMS to %s", to_number)
        for provider in self.sms_providers:
            try:
                await provider(to_number, body)
                self.logger.info("SMS sent to %s using provider %s", to_number, provider.__name__)
                return True
            except RuntimeError as e:
                self.logger.warning("SMS provider %s failed for %s: %s", provider.__name__, to_number, e, exc_info=True)
        self.logger.error("All SMS providers failed to send to %s", to_number)
        return False

    async def _send_email_via_console(self, to_email: str, subject: str, body: str) -> None:
        """
        For development: print the email to the console instead of sending.
        """
        self.logger.debug("Console email for %s: subject=%s, body_length=%d", to_email, subject, len(body))
        print(f"\n[DEV EMAIL] To: {to_email}\nSubject: {subject}\n{body}\n")

    async def _send_sms_via_console(self, to_number: str, body: str) -> None:
        self.logger.debug("Console SMS for %s: body_length=%d", to_number, len(body))
        print(f"\n[DEV SMS] To: {to_number}\n{body}\n")


# Singleton instance
notification_manager = NotificationManager()
