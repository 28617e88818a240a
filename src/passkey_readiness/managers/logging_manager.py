"""
Centralized logging manager for the application.

Loki Downtime Handling:
----------------------
- Console (stdout) and a per-worker file under ``logs/`` are always attached.
- When ``LOKI_ENABLED`` is set, a LokiLoggerHandler is attached. If the handler cannot be
  created, records are appended to a JSON-lines buffer file instead.
- ``ping_loki_and_flush_if_available`` checks Loki's readiness endpoint and, when Loki is up,
  replays the buffer file into the Loki handler. The FastAPI lifespan schedules it.

Usage:
- Use get_logger() to obtain a logger instance. Prefixed loggers are children of the
  application logger and share its handlers.
"""

from datetime import datetime, timezone
import json
import logging
import os
import socket
import sys
import threading
import traceback
from typing import Optional

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler
import requests

from passkey_readiness.config import settings

APP_LOGGER_NAME: str = "Passkey_Readiness"
LOKI_URL: str = settings.LOKI_URL
LOKI_TAGS: dict[str, str] = {"app": settings.APP_NAME, "env": settings.ENV}
LOG_LEVEL: str = settings.LOG_LEVEL.upper()
LOKI_HEALTH_URL: str = LOKI_URL.replace("/loki/api/v1/push", "/ready")
LOKI_PING_INTERVAL_SECONDS: int = 24 * 60 * 60  # Once per day
LOGS_DIR: str = "logs"
BUFFER_FILE: str = os.path.join(LOGS_DIR, "loki_buffer.log")
BUFFER_LOCK = threading.Lock()

FORMATTER = logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


class PrefixFilter(logging.Filter):
    """Prepends a fixed prefix such as ``[WebAuthn Challenge]`` to each record."""

    def __init__(self, prefix: str):
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        if self.prefix and not getattr(record, "_prefix_applied", False):
            record.msg = f"{self.prefix} {record.msg}"
            record._prefix_applied = True
        return True


class BufferHandler(logging.Handler):
    """Writes records to the Loki buffer file while Loki is unreachable."""

    def emit(self, record: logging.LogRecord) -> None:
        _write_to_buffer(record)


def _ensure_console_handler(logger: logging.Logger) -> bool:
    """
    Ensure logger has a StreamHandler for console output.

    Returns:
        bool: True if a new StreamHandler was added, False if one already existed
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            return False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(FORMATTER)
    logger.addHandler(console_handler)
    return True


def _ensure_worker_file_handler(logger: logging.Logger) -> None:
    log_filename = get_worker_log_filename()
    os.makedirs(os.path.dirname(log_filename), exist_ok=True)
    if any(
        isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == os.path.abspath(log_filename)
        for h in logger.handlers
    ):
        return
    file_handler = logging.FileHandler(log_filename)
    file_handler.setFormatter(FORMATTER)
    logger.addHandler(file_handler)


def _write_to_buffer(record: logging.LogRecord) -> None:
    """
    Append a log record to the buffer file as one JSON line.
    Consecutive identical lines are written once.
    """
    log_dict = {
        "ts": record.created,
        "level": record.levelname,
        "logger": record.name,
        "msg": record.getMessage(),
        "process": record.process,
        "filename": record.filename,
        "funcName": record.funcName,
        "lineno": record.lineno,
        "host": socket.gethostname(),
        "app": settings.APP_NAME,
        "env": settings.ENV,
        "exception": None,
    }
    if record.exc_info:
        log_dict["exception"] = "".join(traceback.format_exception(*record.exc_info))
    log_line = json.dumps(log_dict, ensure_ascii=False)
    try:
        with BUFFER_LOCK:
            os.makedirs(os.path.dirname(BUFFER_FILE), exist_ok=True)
            last_line = None
            if os.path.exists(BUFFER_FILE):
                with open(BUFFER_FILE, "r", encoding="utf-8") as f:
                    lines = f.readlines()
                    if lines:
                        last_line = lines[-1].rstrip("\n")
            if last_line == log_line:
                return
            with open(BUFFER_FILE, "a", encoding="utf-8") as f:
                f.write(log_line + "\n")
    except OSError as e:
        sys.stderr.write(f"[LoggingManager] Failed to write log to buffer file '{BUFFER_FILE}': {e}\n")


def _flush_buffer_to_loki(loki_handler: logging.Handler, logger: logging.Logger) -> None:
    """
    Push buffered records to Loki and delete the buffer file when every line was sent.
    Lines that fail to parse are kept in the buffer file.
    """
    if not os.path.exists(BUFFER_FILE):
        return

    with BUFFER_LOCK:
        try:
            with open(BUFFER_FILE, "r", encoding="utf-8") as f:
                lines = f.readlines()

            failed_lines = []
            for idx, line in enumerate(lines):
                try:
                    data = json.loads(line)
                    record = logging.LogRecord(
                        name=data.get("logger", APP_LOGGER_NAME),
                        level=getattr(logging, data.get("level", "INFO"), logging.INFO),
                        pathname="(buffered)",
                        lineno=0,
                        msg=data.get("msg", ""),
                        args=None,
                        exc_info=None,
                    )
                    record.created = float(data.get("ts", record.created))
                    loki_handler.emit(record)
                except (ValueError, OSError) as e:
                    logger.error("[LoggingManager] Failed to resend buffered log (line %d): %s", idx, e)
                    failed_lines.append(line)

            if failed_lines:
                with open(BUFFER_FILE, "w", encoding="utf-8") as f:
                    f.writelines(failed_lines)
                logger.warning(
                    "[LoggingManager] %d/%d buffered logs could not be resent to Loki and were kept.",
                    len(failed_lines),
                    len(lines),
                )
            else:
                os.remove(BUFFER_FILE)
                logger.info("[LoggingManager] Flushed all buffered logs to Loki and deleted buffer file.")
        except OSError as flush_exc:
            logger.error("[LoggingManager] Failed to flush buffer to Loki: %s", flush_exc, exc_info=True)


def _attach_loki_handler(logger: logging.Logger) -> Optional[logging.Handler]:
    existing = [h for h in logger.handlers if isinstance(h, LokiLoggerHandler)]
    if existing:
        return existing[0]
    try:
        loki_handler = LokiLoggerHandler(
            url=LOKI_URL,
            labels=LOKI_TAGS,
            compressed=settings.LOKI_COMPRESS,
        )
    except (OSError, ValueError) as e:
        logger.error("[LoggingManager] Failed to attach LokiLoggerHandler: %s. Falling back to file buffer.", e)
        if not any(isinstance(h, BufferHandler) for h in logger.handlers):
            logger.addHandler(BufferHandler())
        return None
    logger.addHandler(loki_handler)
    logger.info("[LoggingManager] LokiLoggerHandler attached (url=%s, labels=%s)", LOKI_URL, LOKI_TAGS)
    return loki_handler


def ping_loki_and_flush_if_available() -> bool:
    """
    Ping Loki's readiness endpoint. If available, attach the Loki handler and flush the buffer.

    Returns:
        bool: True when Loki answered the readiness probe.
    """
    logger = get_logger()
    try:
        resp = requests.get(LOKI_HEALTH_URL, timeout=(2, 3), headers={"Connection": "close"})
    except requests.exceptions.RequestException as e:
        logger.warning("[LoggingManager] Loki health check connection failed: %s", e)
        return False

    if resp.status_code != 200:
        logger.warning("[LoggingManager] Loki health check failed: status %s", resp.status_code)
        return False

    loki_handler = _attach_loki_handler(logging.getLogger(APP_LOGGER_NAME))
    if loki_handler is not None:
        _flush_buffer_to_loki(loki_handler, logger)
    return True


def schedule_loki_ping(interval: int = LOKI_PING_INTERVAL_SECONDS) -> Optional[threading.Timer]:
    """Run the Loki readiness ping on a daemon timer that reschedules itself."""
    if not settings.LOKI_ENABLED:
        return None

    def _run():
        try:
            ping_loki_and_flush_if_available()
        finally:
            schedule_loki_ping(interval)

    timer = threading.Timer(interval, _run)
    timer.daemon = True
    timer.start()
    return timer


def get_worker_log_filename() -> str:
    return os.path.join(LOGS_DIR, f"worker_{os.getpid()}.log")


def get_logger(name: str = APP_LOGGER_NAME, add_loki: bool = True, prefix: str = "") -> logging.Logger:
    """
    Return a configured logger.

    Handlers live on the named base logger. A prefix yields a child logger carrying a
    PrefixFilter, so prefixed loggers never stack prefixes on each other.
    """
    base = logging.getLogger(name)
    base.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    if _ensure_console_handler(base):
        base.debug("[LoggingManager] Console StreamHandler attached to logger '%s'", name)
    _ensure_worker_file_handler(base)

    if add_loki and settings.LOKI_ENABLED:
        _attach_loki_handler(base)

    if not prefix:
        return base

    child = base.getChild(prefix.strip("[] ").replace(" ", "_").replace(".", "_") or "prefixed")
    child.setLevel(base.level)
    if not any(isinstance(f, PrefixFilter) for f in child.filters):
        child.addFilter(PrefixFilter(prefix))
    return child


def log_startup_banner() -> None:
    get_logger().info(
        "[LoggingManager] Logging initialised at %s (level=%s, loki=%s)",
        datetime.now(timezone.utc).isoformat(),
        LOG_LEVEL,
        settings.LOKI_ENABLED,
    )
