"""Passkey Readiness server: WebAuthn ceremony orchestration with an OTP fallback."""
