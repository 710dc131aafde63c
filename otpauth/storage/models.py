from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import IntEnum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(IntEnum):
    ACTIVE = 1
    DISABLED = 2

    @property
    def label(self) -> str:
        return self.name.capitalize()


class AdminRole(IntEnum):
    """Lower value means more privilege."""

    SUPER = 1
    SUDO = 2
    VISITOR = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def parse(cls, value: str) -> "AdminRole":
        """Parse a display name such as ``Sudo`` (case-insensitive)."""
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"invalid admin role: {value}") from None


@dataclass
class User:
    id: int
    phone_number: str
    first_name: str = ""
    last_name: str = ""
    status: UserStatus = UserStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_disabled(self) -> bool:
        return self.status == UserStatus.DISABLED


@dataclass
class UserOtp:
    id: int
    user_id: int
    code: str
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    @property
    def is_used(self) -> bool:
        return self.used_at is not None


@dataclass
class AppSetting:
    id: int
    secret_key: str
    access_token_expire: int  # minutes


@dataclass
class Admin:
    id: int
    username: str
    hashed_password: str
    role: AdminRole = AdminRole.VISITOR
    password_reset_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


USER_SORT_FIELDS = ("id", "phone_number", "first_name", "last_name", "status")


@dataclass
class UserSearchParams:
    id: Optional[int] = None
    phone_number: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    status: Optional[UserStatus] = None
    limit: int = 10
    offset: int = 0
    sort_by: str = "id"
    sort_order: str = "asc"

    def normalized(self) -> "UserSearchParams":
        """Return a copy with paging and sorting clamped to safe values."""
        return replace(
            self,
            limit=self.limit if 0 < self.limit <= 100 else 10,
            offset=max(self.offset, 0),
            sort_by=self.sort_by if self.sort_by in USER_SORT_FIELDS else "id",
            sort_order=self.sort_order if self.sort_order in ("asc", "desc") else "asc",
        )
