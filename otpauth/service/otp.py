from __future__ import annotations

import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from otpauth.logging import get_logger
from otpauth.service.errors import (
    NotFoundError,
    OtpRateExceededError,
    OtpThrottledError,
)
from otpauth.storage.errors import LockNotAvailable
from otpauth.storage.models import User, UserOtp

logger = get_logger(__name__)

OTP_ALPHABET = string.ascii_uppercase + string.digits
OTP_LENGTH = 6


def generate_otp_code(length: int = OTP_LENGTH) -> str:
    return "".join(secrets.choice(OTP_ALPHABET) for _ in range(length))


class OtpRepository:
    """Issues one-time codes under a per-user cooldown and rolling window cap."""

    def __init__(
        self,
        store,
        *,
        cooldown_seconds: int = 120,
        window_seconds: int = 600,
        max_per_window: int = 3,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.window = timedelta(seconds=window_seconds)
        self.max_per_window = max_per_window
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def create(self, tx, user: User) -> UserOtp:
        """Count-then-insert under a row lock on the user.

        A concurrent request already holding the lock is issuing a code for
        the same user, so it is reported as throttled instead of waiting.
        """
        try:
            self.store.lock_user(tx, user.id)
        except LockNotAvailable:
            logger.info("otp_create_lock_conflict", user_id=user.id)
            raise OtpThrottledError("an OTP request is already in progress")

        now = self._clock()
        recent = self.store.find_recent_unused_otp(tx, user.id, now - self.cooldown)
        if recent is not None:
            retry_after = int(
                (recent.created_at + self.cooldown - now).total_seconds()
            )
            logger.info("otp_throttled", user_id=user.id, otp_id=recent.id)
            raise OtpThrottledError(
                "an unused OTP was issued recently",
                detail={"retry_after": max(retry_after, 1)},
            )

        issued = self.store.count_otps_since(tx, user.id, now - self.window)
        if issued >= self.max_per_window:
            logger.info("otp_rate_exceeded", user_id=user.id, issued=issued)
            raise OtpRateExceededError(
                f"maximum of {self.max_per_window} OTPs per "
                f"{int(self.window.total_seconds())} seconds reached"
            )

        otp = self.store.create_otp(tx, user.id, generate_otp_code())
        logger.info("otp_created", user_id=user.id, otp_id=otp.id)
        return otp

    def get_by_id(self, tx, otp_id: int) -> UserOtp:
        otp = self.store.get_otp(tx, otp_id)
        if otp is None:
            raise NotFoundError("otp not found")
        return otp

    def get_user_by_otp_id(self, tx, otp_id: int) -> User:
        otp = self.get_by_id(tx, otp_id)
        user = self.store.get_user(tx, otp.user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def waste(self, tx, otp: UserOtp) -> bool:
        """Mark ``otp`` used. Returns False if it was already consumed."""
        if otp.used_at is not None:
            logger.warning("otp_already_used", otp_id=otp.id)
            return False
        used_at = self._clock()
        if not self.store.mark_otp_used(tx, otp.id, used_at):
            logger.warning("otp_already_used", otp_id=otp.id)
            return False
        otp.used_at = used_at
        return True
