"""Passkey and OTP ceremony routes."""

from passkey_readiness.routes.auth.routes import ceremony_error_handler, router, validation_error_handler
