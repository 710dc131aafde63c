"""Tests for the operator CLI in scripts/manage.py."""
import importlib.util
from pathlib import Path

import pytest

from otpauth.service.runtime import get_runtime
from otpauth.storage.models import AdminRole

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "manage.py"


@pytest.fixture(scope="module")
def manage():
    spec = importlib.util.spec_from_file_location("manage", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def admin_password(monkeypatch):
    monkeypatch.setenv("ADMIN_PASSWORD", "Sup3rSecret!")
    return "Sup3rSecret!"


def _admins():
    runtime = get_runtime()
    tx = runtime.store.begin()
    try:
        return runtime.store.list_admins(tx)
    finally:
        tx.rollback()


class TestAdminCommands:
    def test_create_and_list(self, manage, admin_password, capsys):
        assert manage.run(["admin", "create", "-u", "alice", "-r", "Sudo"]) == 0
        assert manage.run(["admin", "list"]) == 0

        out = capsys.readouterr().out
        assert "Created admin alice" in out
        assert "USERNAME" in out and "alice" in out and "Sudo" in out
        (admin,) = _admins()
        assert admin.role == AdminRole.SUDO
        assert get_runtime().auth.verify_password(admin.hashed_password, admin_password)

    def test_duplicate_username_fails(self, manage, admin_password, capsys):
        manage.run(["admin", "create", "-u", "alice"])

        assert manage.run(["admin", "create", "-u", "alice"]) == 1
        assert "Error: admin username already exists" in capsys.readouterr().out
        assert len(_admins()) == 1

    def test_update_password_stamps_reset(self, manage, admin_password):
        manage.run(["admin", "create", "-u", "alice"])
        (admin,) = _admins()

        assert manage.run(
            ["admin", "update", "-i", str(admin.id), "--password", "N3wPassword!", "-r", "Super"]
        ) == 0

        (updated,) = _admins()
        assert updated.role == AdminRole.SUPER
        assert updated.password_reset_at is not None
        assert get_runtime().auth.verify_password(updated.hashed_password, "N3wPassword!")

    def test_role_only_update_keeps_password(self, manage, admin_password):
        manage.run(["admin", "create", "-u", "alice"])
        (admin,) = _admins()

        manage.run(["admin", "update", "-i", str(admin.id), "-u", "alicia"])

        (updated,) = _admins()
        assert updated.username == "alicia"
        assert updated.hashed_password == admin.hashed_password
        assert updated.password_reset_at is None

    def test_delete_missing_admin(self, manage, capsys):
        assert manage.run(["admin", "delete", "--id", "42"]) == 1
        assert "Error: admin not found" in capsys.readouterr().out

    def test_unknown_role_rejected_by_parser(self, manage):
        with pytest.raises(SystemExit):
            manage.run(["admin", "create", "-u", "bob", "-r", "Root"])


class TestSettingsCommands:
    def test_show(self, manage, capsys):
        assert manage.run(["settings", "show"]) == 0

        out = capsys.readouterr().out
        assert "Access token expire: 1440 minutes" in out
        assert "Secret key:" in out

    def test_set_expire(self, manage, capsys):
        assert manage.run(["settings", "set-expire", "30"]) == 0
        assert manage.run(["settings", "set-expire", "0"]) == 1

        runtime = get_runtime()
        assert runtime.reload_settings().access_token_expire == 30
        assert runtime.app_settings.access_token_expire_minutes() == 30

    def test_rotate_secret(self, manage):
        runtime = get_runtime()
        before = runtime.app_settings.secret_key()

        assert manage.run(["settings", "rotate-secret"]) == 0
        runtime.reload_settings()

        assert runtime.app_settings.secret_key() != before
