from __future__ import annotations

import copy
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from otpauth.logging import get_logger
from otpauth.storage.errors import (
    ConstraintViolation,
    LockNotAvailable,
    TransactionClosedError,
)
from otpauth.storage.models import (
    Admin,
    AdminRole,
    AppSetting,
    User,
    UserOtp,
    UserSearchParams,
    UserStatus,
)

_TABLES = ("users", "otps", "admins", "settings")

# table -> attribute that must be unique across rows
_UNIQUE = {"users": "phone_number", "admins": "username"}


class MemoryTransaction:
    """Private snapshot of the committed tables, applied back on commit."""

    def __init__(self, store: "MemoryStore", tables: Dict[str, Dict[int, Any]]):
        self._store = store
        self.tables = tables
        self.dirty: Dict[str, Set[int]] = {name: set() for name in _TABLES}
        self.deleted: Dict[str, Set[int]] = {name: set() for name in _TABLES}
        self.locked_users: Set[int] = set()
        self.closed = False

    def commit(self) -> None:
        self._store._commit(self)

    def rollback(self) -> None:
        self._store._rollback(self)

    def _ensure_open(self) -> None:
        if self.closed:
            raise TransactionClosedError("transaction already finished")

    def put(self, table: str, row_id: int, row: Any) -> None:
        self._ensure_open()
        self.tables[table][row_id] = row
        self.dirty[table].add(row_id)
        self.deleted[table].discard(row_id)

    def remove(self, table: str, row_id: int) -> None:
        self._ensure_open()
        self.tables[table].pop(row_id, None)
        self.dirty[table].discard(row_id)
        self.deleted[table].add(row_id)

    def rows(self, table: str) -> Dict[int, Any]:
        self._ensure_open()
        return self.tables[table]


class MemoryStore:
    """In-process store with snapshot transactions, used for tests and local dev."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._tables: Dict[str, Dict[int, Any]] = {name: {} for name in _TABLES}
        self._sequences: Dict[str, int] = {name: 0 for name in _TABLES}
        self._user_claims: Dict[int, MemoryTransaction] = {}
        # RLock for all data operations; commit calls back into helpers
        self._data_lock = threading.RLock()

    # -- transactions ---------------------------------------------------------

    def begin(self) -> MemoryTransaction:
        with self._data_lock:
            return MemoryTransaction(self, copy.deepcopy(self._tables))

    def _next_id(self, table: str) -> int:
        with self._data_lock:
            self._sequences[table] += 1
            return self._sequences[table]

    def _release(self, tx: MemoryTransaction) -> None:
        for user_id in tx.locked_users:
            if self._user_claims.get(user_id) is tx:
                del self._user_claims[user_id]
        tx.locked_users.clear()
        tx.closed = True

    def _commit(self, tx: MemoryTransaction) -> None:
        tx._ensure_open()
        with self._data_lock:
            try:
                merged: Dict[str, Dict[int, Any]] = {}
                for table in _TABLES:
                    view = dict(self._tables[table])
                    for row_id in tx.deleted[table]:
                        view.pop(row_id, None)
                    for row_id in tx.dirty[table]:
                        view[row_id] = tx.tables[table][row_id]
                    merged[table] = view
                for table, attr in _UNIQUE.items():
                    seen: Dict[Any, int] = {}
                    for row_id, row in merged[table].items():
                        value = getattr(row, attr)
                        if value in seen and (
                            row_id in tx.dirty[table]
                            or seen[value] in tx.dirty[table]
                        ):
                            raise ConstraintViolation(
                                f"{table}.{attr} already exists",
                                {"table": table, "field": attr},
                            )
                        seen[value] = row_id
                for table in _TABLES:
                    for row_id in tx.deleted[table]:
                        self._tables[table].pop(row_id, None)
                    for row_id in tx.dirty[table]:
                        self._tables[table][row_id] = copy.deepcopy(
                            tx.tables[table][row_id]
                        )
            finally:
                self._release(tx)

    def _rollback(self, tx: MemoryTransaction) -> None:
        if tx.closed:
            return
        with self._data_lock:
            self._release(tx)

    def close(self) -> None:
        return None

    # -- users ----------------------------------------------------------------

    def create_user(
        self,
        tx: MemoryTransaction,
        phone_number: str,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        for existing in tx.rows("users").values():
            if existing.phone_number == phone_number:
                raise ConstraintViolation(
                    "users.phone_number already exists",
                    {"table": "users", "field": "phone_number"},
                )
        user = User(
            id=self._next_id("users"),
            phone_number=phone_number,
            first_name=first_name,
            last_name=last_name,
        )
        tx.put("users", user.id, user)
        return replace(user)

    def get_user(self, tx: MemoryTransaction, user_id: int) -> Optional[User]:
        user = tx.rows("users").get(user_id)
        return replace(user) if user else None

    def get_user_by_phone(
        self, tx: MemoryTransaction, phone_number: str
    ) -> Optional[User]:
        for user in tx.rows("users").values():
            if user.phone_number == phone_number:
                return replace(user)
        return None

    def update_user_profile(
        self, tx: MemoryTransaction, user_id: int, first_name: str, last_name: str
    ) -> Optional[User]:
        user = tx.rows("users").get(user_id)
        if not user:
            return None
        updated = replace(user, first_name=first_name, last_name=last_name)
        tx.put("users", user_id, updated)
        return replace(updated)

    def update_user_status(
        self, tx: MemoryTransaction, user_id: int, status: UserStatus
    ) -> Optional[User]:
        user = tx.rows("users").get(user_id)
        if not user:
            return None
        updated = replace(user, status=UserStatus(status))
        tx.put("users", user_id, updated)
        return replace(updated)

    def search_users(
        self, tx: MemoryTransaction, params: UserSearchParams
    ) -> Tuple[List[User], int]:
        params = params.normalized()
        matches = []
        for user in tx.rows("users").values():
            if params.id is not None and user.id != params.id:
                continue
            if params.phone_number and params.phone_number not in user.phone_number:
                continue
            if params.first_name and params.first_name not in user.first_name:
                continue
            if params.last_name and params.last_name not in user.last_name:
                continue
            if params.status is not None and user.status != params.status:
                continue
            matches.append(user)
        matches.sort(
            key=lambda u: getattr(u, params.sort_by),
            reverse=params.sort_order == "desc",
        )
        page = matches[params.offset : params.offset + params.limit]
        return [replace(u) for u in page], len(matches)

    def lock_user(self, tx: MemoryTransaction, user_id: int) -> None:
        """Claim ``user_id`` until ``tx`` ends; never waits."""
        tx._ensure_open()
        with self._data_lock:
            holder = self._user_claims.get(user_id)
            if holder is not None and holder is not tx:
                raise LockNotAvailable("users", user_id)
            self._user_claims[user_id] = tx
            tx.locked_users.add(user_id)
            # locked reads see the latest committed rows for this user
            committed_user = self._tables["users"].get(user_id)
            if committed_user and user_id not in tx.dirty["users"]:
                tx.tables["users"][user_id] = copy.deepcopy(committed_user)
            for otp_id, otp in self._tables["otps"].items():
                if otp.user_id == user_id and otp_id not in tx.dirty["otps"]:
                    tx.tables["otps"][otp_id] = copy.deepcopy(otp)

    # -- otps -----------------------------------------------------------------

    def create_otp(self, tx: MemoryTransaction, user_id: int, code: str) -> UserOtp:
        otp = UserOtp(id=self._next_id("otps"), user_id=user_id, code=code)
        tx.put("otps", otp.id, otp)
        return replace(otp)

    def get_otp(self, tx: MemoryTransaction, otp_id: int) -> Optional[UserOtp]:
        otp = tx.rows("otps").get(otp_id)
        return replace(otp) if otp else None

    def find_recent_unused_otp(
        self, tx: MemoryTransaction, user_id: int, since: datetime
    ) -> Optional[UserOtp]:
        candidates = [
            otp
            for otp in tx.rows("otps").values()
            if otp.user_id == user_id and otp.used_at is None and otp.created_at > since
        ]
        if not candidates:
            return None
        return replace(max(candidates, key=lambda o: o.created_at))

    def count_otps_since(
        self, tx: MemoryTransaction, user_id: int, since: datetime
    ) -> int:
        return sum(
            1
            for otp in tx.rows("otps").values()
            if otp.user_id == user_id and otp.created_at > since
        )

    def mark_otp_used(
        self, tx: MemoryTransaction, otp_id: int, used_at: datetime
    ) -> bool:
        otp = tx.rows("otps").get(otp_id)
        if not otp or otp.used_at is not None:
            return False
        tx.put("otps", otp_id, replace(otp, used_at=used_at))
        return True

    # -- admins ---------------------------------------------------------------

    def create_admin(
        self,
        tx: MemoryTransaction,
        username: str,
        hashed_password: str,
        role: AdminRole = AdminRole.VISITOR,
    ) -> Admin:
        for existing in tx.rows("admins").values():
            if existing.username == username:
                raise ConstraintViolation(
                    "admins.username already exists",
                    {"table": "admins", "field": "username"},
                )
        admin = Admin(
            id=self._next_id("admins"),
            username=username,
            hashed_password=hashed_password,
            role=AdminRole(role),
        )
        tx.put("admins", admin.id, admin)
        return replace(admin)

    def get_admin(self, tx: MemoryTransaction, admin_id: int) -> Optional[Admin]:
        admin = tx.rows("admins").get(admin_id)
        return replace(admin) if admin else None

    def get_admin_by_username(
        self, tx: MemoryTransaction, username: str
    ) -> Optional[Admin]:
        for admin in tx.rows("admins").values():
            if admin.username == username:
                return replace(admin)
        return None

    def update_admin(
        self,
        tx: MemoryTransaction,
        admin_id: int,
        *,
        username: Optional[str] = None,
        hashed_password: Optional[str] = None,
        role: Optional[AdminRole] = None,
        password_reset_at: Optional[datetime] = None,
    ) -> Optional[Admin]:
        admin = tx.rows("admins").get(admin_id)
        if not admin:
            return None
        changes: Dict[str, Any] = {}
        if username is not None:
            for other in tx.rows("admins").values():
                if other.id != admin_id and other.username == username:
                    raise ConstraintViolation(
                        "admins.username already exists",
                        {"table": "admins", "field": "username"},
                    )
            changes["username"] = username
        if hashed_password is not None:
            changes["hashed_password"] = hashed_password
        if role is not None:
            changes["role"] = AdminRole(role)
        if password_reset_at is not None:
            changes["password_reset_at"] = password_reset_at
        updated = replace(admin, **changes)
        tx.put("admins", admin_id, updated)
        return replace(updated)

    def delete_admin(self, tx: MemoryTransaction, admin_id: int) -> bool:
        if admin_id not in tx.rows("admins"):
            return False
        tx.remove("admins", admin_id)
        return True

    def list_admins(self, tx: MemoryTransaction) -> List[Admin]:
        return [replace(a) for _, a in sorted(tx.rows("admins").items())]

    # -- settings -------------------------------------------------------------

    def get_app_setting(self, tx: MemoryTransaction) -> Optional[AppSetting]:
        rows = tx.rows("settings")
        if not rows:
            return None
        return replace(rows[min(rows)])

    def create_app_setting(
        self, tx: MemoryTransaction, secret_key: str, access_token_expire: int
    ) -> AppSetting:
        setting = AppSetting(
            id=self._next_id("settings"),
            secret_key=secret_key,
            access_token_expire=access_token_expire,
        )
        tx.put("settings", setting.id, setting)
        return replace(setting)

    def update_app_setting(
        self,
        tx: MemoryTransaction,
        *,
        secret_key: Optional[str] = None,
        access_token_expire: Optional[int] = None,
    ) -> Optional[AppSetting]:
        current = self.get_app_setting(tx)
        if current is None:
            return None
        changes: Dict[str, Any] = {}
        if secret_key is not None:
            changes["secret_key"] = secret_key
        if access_token_expire is not None:
            changes["access_token_expire"] = access_token_expire
        updated = replace(current, **changes)
        tx.put("settings", updated.id, updated)
        return replace(updated)


__all__ = ["MemoryStore", "MemoryTransaction"]
