from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Tuple

from otpauth.logging import get_logger
from otpauth.service.auth import AuthService
from otpauth.service.errors import ConflictError, NotFoundError, ValidationError
from otpauth.service.settings_store import generate_secret_key
from otpauth.storage.errors import ConstraintViolation
from otpauth.storage.models import (
    Admin,
    AdminRole,
    AppSetting,
    User,
    UserSearchParams,
    UserStatus,
)

logger = get_logger(__name__)


class AdminService:
    """User management for admins plus account and settings upkeep for operators."""

    def __init__(self, store, auth: AuthService) -> None:
        self.store = store
        self.auth = auth

    # -- users ----------------------------------------------------------------

    def search_users(self, tx, params: UserSearchParams) -> Tuple[List[User], int]:
        return self.store.search_users(tx, params.normalized())

    def get_user(self, tx, user_id: int) -> User:
        user = self.store.get_user(tx, user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def update_user_status(self, tx, user_id: int, status: int) -> User:
        try:
            new_status = UserStatus(status)
        except ValueError:
            raise ValidationError("invalid user status", detail={"status": status}) from None
        user = self.store.update_user_status(tx, user_id, new_status)
        if user is None:
            raise NotFoundError("user not found")
        logger.info("user_status_updated", user_id=user_id, status=new_status.label)
        return user

    # -- admin accounts -------------------------------------------------------

    def create_admin(
        self, tx, username: str, password: str, role: AdminRole = AdminRole.VISITOR
    ) -> Admin:
        if not username or not password:
            raise ValidationError("username and password are required")
        try:
            admin = self.store.create_admin(
                tx, username, self.auth.hash_password(password), role
            )
        except ConstraintViolation as exc:
            raise ConflictError("admin username already exists", detail=exc.detail) from exc
        logger.info("admin_created", admin_id=admin.id, role=admin.role.label)
        return admin

    def update_admin(
        self,
        tx,
        admin_id: int,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        role: Optional[AdminRole] = None,
    ) -> Admin:
        hashed = self.auth.hash_password(password) if password else None
        try:
            admin = self.store.update_admin(
                tx,
                admin_id,
                username=username or None,
                hashed_password=hashed,
                role=role,
                # tokens issued before a password change stop working
                password_reset_at=datetime.now(timezone.utc) if hashed else None,
            )
        except ConstraintViolation as exc:
            raise ConflictError("admin username already exists", detail=exc.detail) from exc
        if admin is None:
            raise NotFoundError("admin not found")
        logger.info("admin_updated", admin_id=admin_id, password_changed=bool(hashed))
        return admin

    def delete_admin(self, tx, admin_id: int) -> None:
        if not self.store.delete_admin(tx, admin_id):
            raise NotFoundError("admin not found")
        logger.info("admin_deleted", admin_id=admin_id)

    def list_admins(self, tx) -> List[Admin]:
        return self.store.list_admins(tx)

    # -- settings -------------------------------------------------------------

    def show_settings(self, tx) -> AppSetting:
        setting = self.store.get_app_setting(tx)
        if setting is None:
            raise NotFoundError("application settings not initialised")
        return setting

    def set_access_token_expire(self, tx, minutes: int) -> AppSetting:
        if minutes <= 0:
            raise ValidationError("expiry must be a positive number of minutes")
        self.show_settings(tx)
        setting = self.store.update_app_setting(tx, access_token_expire=minutes)
        logger.info("access_token_expire_updated", minutes=minutes)
        return setting

    def rotate_secret(self, tx) -> AppSetting:
        """Replace the signing secret; every outstanding token becomes invalid."""
        self.show_settings(tx)
        setting = self.store.update_app_setting(tx, secret_key=generate_secret_key())
        logger.warning("signing_secret_rotated")
        return setting
