"""Logging utilities for comprehensive application logging.

This module provides decorators, middleware, and utilities for adding
detailed logging throughout the application with performance monitoring,
security context, and error handling.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import functools
import os
import time
import traceback
from typing import Any, Callable, Dict, Optional
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from passkey_readiness.config import settings
from passkey_readiness.managers.logging_manager import get_logger

SLOW_OPERATION_SECONDS = 2.0
SLOW_DB_OPERATION_SECONDS = 1.0

SENSITIVE_KEYS = {
    "password",
    "token",
    "secret",
    "key",
    "hash",
    "signature",
    "credential",
    "code",
    "otp",
    "challenge",
}


@dataclass
class SecurityContext:
    """Security event context for logging."""

    event_type: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    success: bool = True
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None


class SecurityLogger:
    """Specialized logger for security events (structured)."""

    def __init__(self, prefix: str = "[SECURITY]"):
        self.logger = get_logger(name="Passkey_Readiness_Security", prefix=prefix)

    def log_event(self, context: SecurityContext):
        event_data = {
            "event": "security_event",
            "event_type": context.event_type,
            "timestamp": context.timestamp or datetime.now(timezone.utc).isoformat(),
            "success": context.success,
            "status": "SUCCESS" if context.success else "FAILURE",
            "user_id": context.user_id or "anonymous",
            "ip_address": context.ip_address or "unknown",
            "details": sanitize_security_details(context.details) if context.details else None,
            "process": os.getpid(),
            "app": settings.APP_NAME,
            "env": settings.ENV,
        }
        self.logger.info(event_data)


def log_security_event(
    event_type: str,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    success: bool = True,
    details: Optional[Dict[str, Any]] = None,
):
    """
    Log security-related events with proper context.

    Args:
        event_type: Type of security event (registration_start, otp_failed, etc.)
        user_id: User identifier if available
        ip_address: Client IP address if available
        success: Whether the security event was successful
        details: Additional event details, sanitized before logging
    """
    SecurityLogger().log_event(
        SecurityContext(
            event_type=event_type,
            user_id=user_id,
            ip_address=ip_address,
            success=success,
            details=details,
        )
    )


def get_client_ip(request: Request) -> str:
    """Extract client IP address from request headers, honouring reverse proxies."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip

    return getattr(request.client, "host", "unknown")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Request/response logging middleware for FastAPI.

    Logs all incoming requests and outgoing responses with timing,
    status codes, and client context.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.logger = get_logger(name="Passkey_Readiness_Requests", prefix="[REQUEST]")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())[:8]
        start_time = time.time()
        client_ip = get_client_ip(request)
        method = request.method
        path = str(request.url.path)

        self.logger.info(
            {
                "event": "request_received",
                "request_id": request_id,
                "method": method,
                "path": path,
                "client_ip": client_ip,
                "user_agent": request.headers.get("user-agent", "unknown"),
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            self.logger.error(
                {
                    "event": "request_error",
                    "request_id": request_id,
                    "method": method,
                    "path": path,
                    "duration": time.time() - start_time,
                    "exception": str(e),
                    "stack_trace": traceback.format_exc(),
                }
            )
            raise

        duration = time.time() - start_time
        response_log = {
            "event": "response_sent",
            "request_id": request_id,
            "method": method,
            "path": path,
            "status_code": response.status_code,
            "duration": duration,
            "client_ip": client_ip,
        }
        self.logger.info(response_log)
        if duration > 1.0:
            self.logger.warning({**response_log, "event": "slow_request"})
        return response


def log_performance(operation_name: str, log_args: bool = False):
    """
    Decorator for logging function/method performance with timing.

    Args:
        operation_name: Name of the operation for logging
        log_args: Whether to log function arguments (sanitized)
    """

    def decorator(func: Callable) -> Callable:
        logger = get_logger(name="Passkey_Readiness_Performance", prefix="[PERFORMANCE]")

        def _start(args, kwargs) -> str:
            operation_id = str(uuid.uuid4())[:8]
            if log_args and (args or kwargs):
                logger.debug(
                    "[%s] Starting %s with args: %s", operation_id, operation_name, _sanitize_args(args, kwargs)
                )
            else:
                logger.debug("[%s] Starting %s", operation_id, operation_name)
            return operation_id

        def _done(operation_id: str, start_time: float) -> None:
            duration = time.time() - start_time
            logger.info("[%s] Completed %s in %.3fs", operation_id, operation_name, duration)
            if duration > SLOW_OPERATION_SECONDS:
                logger.warning("[%s] SLOW OPERATION: %s took %.3fs", operation_id, operation_name, duration)

        def _failed(operation_id: str, start_time: float, e: Exception) -> None:
            logger.error(
                "[%s] Failed %s after %.3fs: %s", operation_id, operation_name, time.time() - start_time, type(e).__name__
            )

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.time()
            operation_id = _start(args, kwargs)
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _failed(operation_id, start_time, e)
                raise
            _done(operation_id, start_time)
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            start_time = time.time()
            operation_id = _start(args, kwargs)
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _failed(operation_id, start_time, e)
                raise
            _done(operation_id, start_time)
            return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def log_database_operation(collection_name: str, operation_type: str):
    """
    Decorator for logging database operations with performance metrics.

    Args:
        collection_name: Name of the MongoDB collection
        operation_type: Type of operation (find, insert, update, delete, etc.)
    """

    def decorator(func: Callable) -> Callable:
        logger = get_logger(name="Passkey_Readiness_DB_Operations", prefix="[DATABASE]")

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.time()
            operation_id = str(uuid.uuid4())[:8]
            logger.debug("[%s] DB %s on %s", operation_id, operation_type, collection_name)

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    "[%s] DB %s on %s failed after %.3fs: %s",
                    operation_id,
                    operation_type,
                    collection_name,
                    time.time() - start_time,
                    str(e),
                )
                raise

            duration = time.time() - start_time
            result_count = None
            if hasattr(result, "inserted_id"):
                result_count = 1
            elif hasattr(result, "modified_count"):
                result_count = result.modified_count
            elif hasattr(result, "deleted_count"):
                result_count = result.deleted_count
            elif isinstance(result, list):
                result_count = len(result)

            if result_count is not None:
                logger.debug(
                    "[%s] DB %s on %s completed in %.3fs - %s records affected",
                    operation_id,
                    operation_type,
                    collection_name,
                    duration,
                    result_count,
                )
            else:
                logger.debug(
                    "[%s] DB %s on %s completed in %.3fs", operation_id, operation_type, collection_name, duration
                )
            if duration > SLOW_DB_OPERATION_SECONDS:
                logger.warning(
                    "[%s] SLOW DB OPERATION: %s on %s took %.3fs",
                    operation_id,
                    operation_type,
                    collection_name,
                    duration,
                )
            return result

        return async_wrapper

    return decorator


def log_application_lifecycle(event: str, details: Optional[Dict[str, Any]] = None):
    """
    Log application lifecycle events (startup, shutdown, etc.).

    Args:
        event: Lifecycle event name
        details: Additional event details
    """
    logger = get_logger(name="Passkey_Readiness_Lifecycle", prefix="[LIFECYCLE]")
    event_data = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    if details:
        event_data.update(details)
    logger.info("APPLICATION LIFECYCLE: %s - %s", event, event_data)


def log_error_with_context(error: Exception, context: Optional[Dict[str, Any]] = None, operation: Optional[str] = None):
    """
    Log errors with full context and stack trace.

    Args:
        error: The exception that occurred
        context: Additional context information
        operation: Name of the operation that failed
    """
    logger = get_logger(name="Passkey_Readiness_Errors", prefix="[ERROR]")
    error_data = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "stack_trace": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
    }
    if operation:
        error_data["operation"] = operation
    if context:
        error_data["context"] = _sanitize_args((), context)
    logger.error("ERROR OCCURRED: %s", error_data)


def truncate_id(value: Optional[str], keep: int = 8) -> str:
    """Shorten an identifier for log lines."""
    if not value:
        return "none"
    return value[:keep] + "..." if len(value) > keep else value


def _sanitize_args(args: tuple, kwargs: dict) -> dict:
    """
    Sanitize function arguments to avoid logging sensitive data.

    Returns:
        Sanitized arguments dictionary
    """
    sanitized = {}
    if args:
        sanitized["args"] = [
            (
                "<REDACTED>"
                if any(key in str(arg).lower() for key in SENSITIVE_KEYS)
                else str(arg)[:100] + ("..." if len(str(arg)) > 100 else "")
            )
            for arg in args
        ]
    if kwargs:
        sanitized["kwargs"] = {}
        for key, value in kwargs.items():
            if any(sensitive_key in key.lower() for sensitive_key in SENSITIVE_KEYS):
                sanitized["kwargs"][key] = "<REDACTED>"
            else:
                str_value = str(value)
                sanitized["kwargs"][key] = str_value[:100] + ("..." if len(str_value) > 100 else "")
    return sanitized


def sanitize_security_details(details: Dict[str, Any]) -> Dict[str, Any]:
    """
    Sanitize security event details to avoid logging sensitive information.

    Returns:
        Sanitized details dictionary
    """
    sanitized = {}
    for key, value in details.items():
        if any(sensitive_key in key.lower() for sensitive_key in SENSITIVE_KEYS):
            sanitized[key] = "<REDACTED>"
        else:
            sanitized[key] = value
    return sanitized
