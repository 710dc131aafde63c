"""Tests for MemoryStore snapshot transactions."""
from datetime import datetime, timezone

import pytest

from otpauth.storage.errors import (
    ConstraintViolation,
    LockNotAvailable,
    TransactionClosedError,
)
from otpauth.storage.memory import MemoryStore
from otpauth.storage.models import AdminRole, UserSearchParams, UserStatus


@pytest.fixture
def store():
    return MemoryStore()


def _seed_users(store, phones):
    tx = store.begin()
    users = [store.create_user(tx, phone) for phone in phones]
    tx.commit()
    return users


class TestIsolation:
    def test_uncommitted_writes_are_private(self, store):
        writer = store.begin()
        store.create_user(writer, "+15550000001")
        reader = store.begin()

        assert store.get_user_by_phone(reader, "+15550000001") is None
        writer.commit()
        assert store.get_user_by_phone(reader, "+15550000001") is None
        reader.rollback()

        fresh = store.begin()
        assert store.get_user_by_phone(fresh, "+15550000001") is not None
        fresh.rollback()

    def test_rollback_discards(self, store):
        tx = store.begin()
        store.create_user(tx, "+15550000001")
        tx.rollback()

        tx = store.begin()
        assert store.get_user_by_phone(tx, "+15550000001") is None
        tx.rollback()

    def test_returned_rows_are_copies(self, store):
        (user,) = _seed_users(store, ["+15550000001"])
        tx = store.begin()
        loaded = store.get_user(tx, user.id)
        loaded.first_name = "mutated"

        assert store.get_user(tx, user.id).first_name == ""
        tx.rollback()

    def test_commit_only_applies_touched_rows(self, store):
        a, b = _seed_users(store, ["+15550000001", "+15550000002"])
        first = store.begin()
        second = store.begin()
        store.update_user_profile(first, a.id, "Ada", "L")
        store.update_user_profile(second, b.id, "Bob", "M")
        first.commit()
        second.commit()

        tx = store.begin()
        assert store.get_user(tx, a.id).first_name == "Ada"
        assert store.get_user(tx, b.id).first_name == "Bob"
        tx.rollback()

    def test_closed_transaction_rejects_use(self, store):
        tx = store.begin()
        tx.commit()

        with pytest.raises(TransactionClosedError):
            store.get_user(tx, 1)
        with pytest.raises(TransactionClosedError):
            tx.commit()
        tx.rollback()  # no-op


class TestConstraints:
    def test_duplicate_phone_in_same_transaction(self, store):
        tx = store.begin()
        store.create_user(tx, "+15550000001")
        with pytest.raises(ConstraintViolation):
            store.create_user(tx, "+15550000001")
        tx.rollback()

    def test_concurrent_duplicate_detected_at_commit(self, store):
        first = store.begin()
        second = store.begin()
        store.create_user(first, "+15550000001")
        store.create_user(second, "+15550000001")
        first.commit()

        with pytest.raises(ConstraintViolation):
            second.commit()
        assert second.closed

    def test_admin_username_unique(self, store):
        tx = store.begin()
        store.create_admin(tx, "root", "hash", AdminRole.SUPER)
        other = store.create_admin(tx, "ops", "hash")
        with pytest.raises(ConstraintViolation):
            store.update_admin(tx, other.id, username="root")
        tx.rollback()


class TestRowLocks:
    def test_second_transaction_cannot_claim(self, store):
        (user,) = _seed_users(store, ["+15550000001"])
        first = store.begin()
        second = store.begin()

        store.lock_user(first, user.id)
        store.lock_user(first, user.id)  # re-entrant for the holder
        with pytest.raises(LockNotAvailable):
            store.lock_user(second, user.id)

        first.commit()
        store.lock_user(second, user.id)
        second.rollback()


class TestSearch:
    def test_filters_sort_and_paging(self, store):
        users = _seed_users(
            store, ["+15550000001", "+15550000002", "+15559990003", "+15550000004"]
        )
        tx = store.begin()
        store.update_user_status(tx, users[1].id, UserStatus.DISABLED)
        store.update_user_profile(tx, users[2].id, "Zed", "Q")

        items, total = store.search_users(tx, UserSearchParams(phone_number="555000"))
        assert total == 3
        assert [u.id for u in items] == [users[0].id, users[1].id, users[3].id]

        items, total = store.search_users(tx, UserSearchParams(status=UserStatus.DISABLED))
        assert [u.id for u in items] == [users[1].id]

        items, total = store.search_users(
            tx, UserSearchParams(sort_by="id", sort_order="desc", limit=2, offset=1)
        )
        assert total == 4
        assert [u.id for u in items] == [users[2].id, users[1].id]

        items, _ = store.search_users(tx, UserSearchParams(first_name="Ze"))
        assert [u.id for u in items] == [users[2].id]
        tx.rollback()

    def test_params_normalized(self):
        params = UserSearchParams(
            limit=500, offset=-3, sort_by="password; DROP", sort_order="sideways"
        ).normalized()

        assert (params.limit, params.offset, params.sort_by, params.sort_order) == (
            10,
            0,
            "id",
            "asc",
        )


class TestOtpsAndSettings:
    def test_mark_used_once(self, store):
        (user,) = _seed_users(store, ["+15550000001"])
        tx = store.begin()
        otp = store.create_otp(tx, user.id, "ABC123")
        now = datetime.now(timezone.utc)

        assert store.mark_otp_used(tx, otp.id, now) is True
        assert store.mark_otp_used(tx, otp.id, now) is False
        assert store.find_recent_unused_otp(tx, user.id, datetime(2000, 1, 1, tzinfo=timezone.utc)) is None
        tx.rollback()

    def test_settings_row(self, store):
        tx = store.begin()
        assert store.get_app_setting(tx) is None
        assert store.update_app_setting(tx, access_token_expire=5) is None
        store.create_app_setting(tx, "secret", 60)
        updated = store.update_app_setting(tx, access_token_expire=5)
        tx.commit()

        assert updated.secret_key == "secret"
        assert updated.access_token_expire == 5

    def test_delete_admin(self, store):
        tx = store.begin()
        admin = store.create_admin(tx, "root", "hash")
        tx.commit()

        tx = store.begin()
        assert store.delete_admin(tx, admin.id) is True
        assert store.delete_admin(tx, admin.id) is False
        tx.commit()

        tx = store.begin()
        assert store.list_admins(tx) == []
        tx.rollback()
