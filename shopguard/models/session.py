# shopguard/models/session.py

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional
from pydantic import BaseModel, Field


class AuthState(str, Enum):
    UNINITIALIZED = "uninitialized"
    VALIDATING = "validating"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"
    ERROR = "error"


class AuthEventType(str, Enum):
    # Emitted by the auth provider
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    # Local
    INITIALIZE = "INITIALIZE"
    PERIODIC_CHECK = "PERIODIC_CHECK"


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


class AuthEventPayload(BaseModel):
    """
    What the auth provider hands over with an event or a session lookup.
    Fields are optional here because integrity is checked by the controller.
    """
    user_id: Optional[str] = None
    email: Optional[str] = None
    last_sign_in_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    access_token: Optional[str] = Field(default=None, repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)

    REQUIRED_FIELDS: ClassVar[List[str]] = ["user_id", "email", "expires_at"]

    def missing_fields(self) -> List[str]:
        return [name for name in self.REQUIRED_FIELDS if not getattr(self, name)]


class Profile(BaseModel):
    user_id: str
    full_name: Optional[str] = None
    role: Role = Role.USER

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Profile":
        role = record.get("role") or Role.USER.value
        return cls(
            user_id=str(record["id"]),
            full_name=record.get("full_name"),
            role=Role.ADMIN if role == Role.ADMIN.value else Role.USER,
        )


class Session(BaseModel):
    """
    Validated session. ``valid`` implies ``now < expires_at`` and a resolved
    profile; the controller never exposes a Session that breaks this.
    """
    user_id: str
    email: str
    role: Role = Role.USER
    issued_at: datetime
    expires_at: datetime
    last_sign_in_at: Optional[datetime] = None
    valid: bool = True
    access_token: Optional[str] = Field(default=None, repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def seconds_until_expiry(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds()

    def public_view(self) -> Dict[str, Any]:
        """Session fields safe to hand to the UI (no tokens)"""
        return {
            "user_id": self.user_id,
            "email": self.email,
            "role": self.role.value,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "valid": self.valid,
        }
