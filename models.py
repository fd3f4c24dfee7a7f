from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class AuthUser:
    id: str
    email: Optional[str]
    full_name: Optional[str] = None


@dataclass(frozen=True)
class Profile:
    id: str
    email: Optional[str]
    active: Optional[bool]

    @property
    def is_inactive(self) -> bool:
        # NULL means "never deactivated"
        return self.active is False


@dataclass(frozen=True)
class StoredPasskey:
    id: int
    credential_id: str
    user_id: str
    public_key: str
    counter: int
    transports: tuple[str, ...] = field(default_factory=tuple)
    device_name: Optional[str] = None
    created_at: Optional[str] = None
    last_used_at: Optional[str] = None
    revoked_at: Optional[str] = None


@dataclass(frozen=True)
class PasskeySummary:
    id: int
    device_name: Optional[str]
    created_at: str
    last_used_at: Optional[str]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "device_name": self.device_name,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
        }
