"""Routes package initialization."""

from passkey_readiness.routes.auth import router as auth_router
from passkey_readiness.routes.main import router as main_router
