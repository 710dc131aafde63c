from __future__ import annotations

import asyncio
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from otpauth.logging import get_logger
from otpauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidCodeError,
    NotFoundError,
    UserDisabledError,
)
from otpauth.service.login_session import LoginSessionStore
from otpauth.service.otp import OtpRepository
from otpauth.service.tokens import Audience, TokenClaims, TokenService
from otpauth.storage.errors import ConstraintViolation
from otpauth.storage.models import Admin, AdminRole, User, UserOtp

logger = get_logger(__name__)

_INVALID_CREDENTIALS = "invalid username or password"


class AuthService:
    """Phone/OTP login for users, password login for admins, token checks for both."""

    def __init__(
        self,
        store,
        otps: OtpRepository,
        sessions: LoginSessionStore,
        tokens: TokenService,
    ) -> None:
        self.store = store
        self.otps = otps
        self.sessions = sessions
        self.tokens = tokens
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    # -- passwords ------------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, hashed_password: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(hashed_password, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # -- user login -----------------------------------------------------------

    def _get_or_create_user(self, tx, phone_number: str) -> User:
        user = self.store.get_user_by_phone(tx, phone_number)
        if user is not None:
            return user
        try:
            user = self.store.create_user(tx, phone_number)
        except ConstraintViolation:
            # lost a race with a concurrent first login for the same number
            user = self.store.get_user_by_phone(tx, phone_number)
            if user is None:
                raise
            return user
        logger.info("user_created", user_id=user.id)
        return user

    def _issue_otp(self, tx, phone_number: str) -> UserOtp:
        user = self._get_or_create_user(tx, phone_number)
        if user.is_disabled:
            logger.warning("login_user_disabled", user_id=user.id)
            raise UserDisabledError("user is disabled")
        otp = self.otps.create(tx, user)
        # audit trail; the redaction processor masks the code
        logger.info("otp_issued", user_id=user.id, otp_id=otp.id, otp_code=otp.code)
        return otp

    async def login(self, tx, phone_number: str) -> str:
        """Issue an OTP for ``phone_number`` and open a login session for it.

        Store work runs in a worker thread so the event loop never waits on
        the database.
        """
        otp = await asyncio.to_thread(self._issue_otp, tx, phone_number)
        return await self.sessions.create(otp.id, otp.code)

    async def verify(self, tx, session_token: str, code: str) -> User:
        otp_id = await self.sessions.check_code(session_token, code)
        return await asyncio.to_thread(self._consume_otp, tx, otp_id)

    def _consume_otp(self, tx, otp_id: int) -> User:
        otp = self.otps.get_by_id(tx, otp_id)
        if not self.otps.waste(tx, otp):
            raise InvalidCodeError("code already used")
        user = self.store.get_user(tx, otp.user_id)
        if user is None:
            raise AuthenticationError("user not found")
        if user.is_disabled:
            raise UserDisabledError("user is disabled")
        logger.info("user_login_verified", user_id=user.id, otp_id=otp.id)
        return user

    def issue_user_token(self, user: User) -> str:
        return self.tokens.generate(user.id, Audience.USER)

    # -- admin login ----------------------------------------------------------

    def admin_login(self, tx, username: str, password: str) -> Admin:
        admin = self.store.get_admin_by_username(tx, username)
        if admin is None:
            # keep timing close to the found-admin path
            if self._dummy_hash is None:
                self._dummy_hash = self.hash_password("dummy-password")
            self.verify_password(self._dummy_hash, password)
            logger.warning("admin_login_failed", reason="unknown_username")
            raise AuthenticationError(_INVALID_CREDENTIALS)
        if not self.verify_password(admin.hashed_password, password):
            logger.warning("admin_login_failed", admin_id=admin.id, reason="bad_password")
            raise AuthenticationError(_INVALID_CREDENTIALS)
        logger.info("admin_login", admin_id=admin.id)
        return admin

    def issue_admin_token(self, admin: Admin) -> str:
        return self.tokens.generate(admin.id, Audience.ADMIN)

    # -- bearer checks --------------------------------------------------------

    def _claims_for(self, authorization: Optional[str], audience: Audience) -> TokenClaims:
        claims = self.tokens.parse(authorization)
        if claims.audience != audience:
            raise AuthenticationError("token audience mismatch")
        return claims

    def authenticate_user(self, tx, authorization: Optional[str]) -> User:
        claims = self._claims_for(authorization, Audience.USER)
        user = self.store.get_user(tx, claims.subject_id)
        if user is None:
            raise AuthenticationError("user not found")
        self.tokens.ensure_issued_after(claims, user.created_at)
        if user.is_disabled:
            raise UserDisabledError("user is disabled")
        return user

    def authenticate_admin(self, tx, authorization: Optional[str]) -> Admin:
        claims = self._claims_for(authorization, Audience.ADMIN)
        admin = self.store.get_admin(tx, claims.subject_id)
        if admin is None:
            raise AuthenticationError("admin not found")
        self.tokens.ensure_issued_after(
            claims, admin.created_at, admin.password_reset_at
        )
        return admin

    @staticmethod
    def require_sudo(admin: Admin) -> Admin:
        if admin.role > AdminRole.SUDO:
            raise ForbiddenError("insufficient admin role")
        return admin

    # -- profile --------------------------------------------------------------

    def update_profile(self, tx, user: User, first_name: str, last_name: str) -> User:
        updated = self.store.update_user_profile(tx, user.id, first_name, last_name)
        if updated is None:
            raise NotFoundError("user not found")
        logger.info("user_profile_updated", user_id=user.id)
        return updated
