"""
Pydantic models for the passkey and OTP ceremonies.

Domain records (User, Credential, Challenge, OTPTicket, SecurityEvent) are stored in
MongoDB/Redis via ``model_dump()``; request models validate the HTTP boundary.
"""

from datetime import datetime
from enum import Enum
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.@+\-]{3,254}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_PATTERN = re.compile(r"^\+?[0-9]{6,15}$")


class ChallengeType(str, Enum):
    """Ceremony type a challenge or OTP ticket belongs to."""

    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


class DeviceType(str, Enum):
    PLATFORM = "platform"
    CROSS_PLATFORM = "cross-platform"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DeliveryMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class StoredModel(BaseModel):
    """Base for records loaded from storage; ignores the Mongo ``_id``."""

    model_config = ConfigDict(extra="ignore", use_enum_values=True)


class User(StoredModel):
    id: str
    username: str
    email: Optional[str] = None
    display_name: str
    created_at: datetime
    last_login_at: Optional[datetime] = None
    is_active: bool = True
    passkey_registrations: int = 0
    otp_fallback_usage: int = 0
    successful_authentications: int = 0
    failed_authentications: int = 0


class Credential(StoredModel):
    credential_id: str
    user_id: str
    public_key: bytes
    counter: int = 0
    device_type: DeviceType = DeviceType.CROSS_PLATFORM
    transports: List[str] = Field(default_factory=list)
    created_at: datetime
    last_used_at: Optional[datetime] = None
    use_count: int = 0
    nickname: Optional[str] = None
    backed_up: bool = False


class Challenge(StoredModel):
    id: str
    challenge: str
    user_id: Optional[str] = None
    type: ChallengeType
    created_at: datetime
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None


class OTPTicket(StoredModel):
    id: str
    target: str
    method: DeliveryMethod
    code: str
    type: ChallengeType
    user_id: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 3
    created_at: datetime
    expires_at: datetime
    verified: bool = False


class SecurityEvent(StoredModel):
    id: str
    event_type: str
    event_data: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    severity: Severity = Severity.LOW
    timestamp: datetime


class ClientContext(BaseModel):
    """Source address and agent of the request driving a ceremony."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


# --- Request models ---


def _validate_handle(v: str) -> str:
    v = v.strip()
    if not USERNAME_PATTERN.match(v):
        raise ValueError("Username must be 3-254 characters of letters, digits or . _ - + @")
    return v


class RegistrationStartRequest(BaseModel):
    username: str = Field(..., description="Username or email used as the account handle")
    email: Optional[str] = None
    display_name: Optional[str] = Field(None, alias="displayName", max_length=128)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("username")
    @classmethod
    def validate_username(cls, v):
        return _validate_handle(v)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        if v is None:
            return v
        v = v.strip().lower()
        if not EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email address")
        return v


class RegistrationFinishRequest(BaseModel):
    username: str
    credential: Dict[str, Any]

    @field_validator("username")
    @classmethod
    def validate_username(cls, v):
        return _validate_handle(v)


class AuthenticationStartRequest(BaseModel):
    username: Optional[str] = None

    @field_validator("username")
    @classmethod
    def validate_username(cls, v):
        if v is None or not v.strip():
            return None
        return _validate_handle(v)


class AuthenticationFinishRequest(BaseModel):
    credential: Dict[str, Any]
    username: Optional[str] = None


class OTPSendRequest(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = Field(None, alias="phoneNumber")
    method: DeliveryMethod

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, v):
        if v is None:
            return v
        v = v.replace(" ", "")
        if not PHONE_PATTERN.match(v):
            raise ValueError("Invalid phone number")
        return v


class OTPVerifyRequest(BaseModel):
    otp_id: str = Field(..., alias="otpId", min_length=1, max_length=64)
    otp: str = Field(..., min_length=1, max_length=12)
    username: Optional[str] = None
    email: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def target(self) -> Optional[str]:
        return self.username or self.email
