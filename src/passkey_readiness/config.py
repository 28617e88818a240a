"""Configuration module for the Passkey Readiness server.

Config discovery:
-----------------
The config file is discovered in the following order: (1) via the `PASSKEY_READINESS_CONFIG_PATH`
environment variable, (2) `.passkey` in the project root, (3) `.env` in the project root, (4) fallback to
environment variables only. This lets the server run from plain environment variables in containers and CI.

The `Settings` class uses Pydantic's `BaseSettings`; extra environment variables are allowed so unrelated
deployment variables never break startup.

How to extend/maintain:
-----------------------
- Add new config fields to the `Settings` class, and document them.
- If you change the config discovery logic, update this docstring.
"""

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Constants ---
PASSKEY_FILENAME: str = ".passkey"
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "PASSKEY_READINESS_CONFIG_PATH"
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent


# --- Config file discovery (no logging) ---
def get_config_path() -> Optional[str]:
    """Determine the config file path to use, in order of precedence:
    1. Environment variable PASSKEY_READINESS_CONFIG_PATH
    2. .passkey in project root
    3. .env in project root
    4. None (fallback to environment variables only)

    Returns:
        Optional[str]: Path to config file, or None if not found.
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    passkey_path: Path = PROJECT_ROOT / PASSKEY_FILENAME
    if passkey_path.exists():
        return str(passkey_path)
    env_path_file: Path = PROJECT_ROOT / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=True)


class Settings(BaseSettings):
    """Application settings with environment variable support.
    All fields are loaded from the environment or the .passkey/.env file.
    """

    model_config = SettingsConfigDict(
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",
    )

    # Server configuration
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    DEBUG: bool = True
    ENV: str = "dev"
    APP_NAME: str = "passkey-readiness"

    # Relying party configuration
    RP_ID: str = "localhost"
    RP_NAME: str = "Passkey Readiness Tester"
    EXPECTED_ORIGINS: str = "http://localhost:3000,http://localhost:5173"
    ENABLE_ATTESTATION: bool = False
    WEBAUTHN_TIMEOUT_MS: int = 60000
    VERIFIER_TIMEOUT_SECONDS: float = 10.0

    # MongoDB configuration
    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DATABASE: str = "passkey_readiness"
    MONGODB_CONNECTION_TIMEOUT: int = 10000
    MONGODB_SERVER_SELECTION_TIMEOUT: int = 5000
    MONGODB_USERNAME: Optional[str] = None
    MONGODB_PASSWORD: Optional[SecretStr] = None

    # Collection names
    USERS_COLLECTION: str = "users"
    CREDENTIALS_COLLECTION: str = "credentials"
    CHALLENGES_COLLECTION: str = "challenges"
    SECURITY_EVENTS_COLLECTION: str = "security_events"

    # Redis configuration
    REDIS_URL: str = "redis://127.0.0.1:6379/0"
    ENV_PREFIX: str = "dev"

    # Challenge lifecycle
    CHALLENGE_EXPIRY_MINUTES: int = 5
    CHALLENGE_CLEANUP_INTERVAL: int = 900  # seconds
    CREDENTIAL_ID_MAX_UNWRAP: int = 2

    # OTP fallback
    OTP_CODE_LENGTH: int = 6
    OTP_EXPIRY_SECONDS: int = 300
    OTP_MAX_ATTEMPTS: int = 3
    OTP_TICKET_BACKEND: str = "redis"  # "redis" or "memory"

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_REQUESTS: int = 30
    RATE_LIMIT_PERIOD_SECONDS: int = 60
    BLACKLIST_THRESHOLD: int = 10
    BLACKLIST_DURATION: int = 60 * 60  # 1 hour

    # Security events
    SECURITY_EVENT_RETENTION_DAYS: int = 30
    SECURITY_EVENT_CLEANUP_INTERVAL: int = 24 * 60 * 60  # seconds

    # Logging
    LOG_LEVEL: str = "INFO"
    LOKI_ENABLED: bool = False
    LOKI_URL: str = "http://localhost:3100/loki/api/v1/push"
    LOKI_COMPRESS: bool = True

    @field_validator("MONGODB_URL", "RP_ID", mode="before")
    @classmethod
    def no_empty_values(cls, v, info):
        if not v or not str(v).strip():
            raise ValueError(f"{info.field_name} must be set via environment or config file.")
        return v

    @field_validator(
        "CHALLENGE_EXPIRY_MINUTES",
        "OTP_CODE_LENGTH",
        "OTP_EXPIRY_SECONDS",
        "OTP_MAX_ATTEMPTS",
        "RATE_LIMIT_REQUESTS",
        "RATE_LIMIT_PERIOD_SECONDS",
        "SECURITY_EVENT_RETENTION_DAYS",
        mode="before",
    )
    @classmethod
    def validate_positive_integers(cls, v, info):
        if int(v) <= 0:
            raise ValueError(f"{info.field_name} must be a positive integer")
        return v

    @field_validator("CREDENTIAL_ID_MAX_UNWRAP", mode="before")
    @classmethod
    def validate_unwrap_bound(cls, v):
        if int(v) < 0 or int(v) > 8:
            raise ValueError("CREDENTIAL_ID_MAX_UNWRAP must be between 0 and 8")
        return v

    @field_validator("OTP_TICKET_BACKEND", mode="before")
    @classmethod
    def validate_ticket_backend(cls, v):
        if str(v).lower() not in ("redis", "memory"):
            raise ValueError("OTP_TICKET_BACKEND must be 'redis' or 'memory'")
        return str(v).lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENV.lower() == "production"

    @property
    def expected_origins_list(self) -> List[str]:
        """Expected WebAuthn origins as a list."""
        return [origin.strip() for origin in self.EXPECTED_ORIGINS.split(",") if origin.strip()]


settings = Settings()
