from __future__ import annotations

import base64
import secrets
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from otpauth.logging import get_logger
from otpauth.service.errors import ServerError
from otpauth.storage.models import AppSetting

logger = get_logger(__name__)

SECRET_KEY_BYTES = 256


def generate_secret_key() -> str:
    return base64.b64encode(secrets.token_bytes(SECRET_KEY_BYTES)).decode("ascii")


class RWLock:
    """Reader/writer lock. Readers share; a writer excludes everyone.

    Waiting writers block new readers so a reload cannot starve.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class SettingsStore:
    """Process-wide signing secret and token TTL, loaded from the settings row."""

    def __init__(self, default_expire_minutes: int = 24 * 60) -> None:
        self._lock = RWLock()
        self._default_expire_minutes = default_expire_minutes
        self._secret_key: Optional[bytes] = None
        self._expire_minutes: Optional[int] = None

    @property
    def loaded(self) -> bool:
        with self._lock.read():
            return self._secret_key is not None

    def init(self, store) -> AppSetting:
        """Load the settings row, creating it with a fresh secret when absent."""
        tx = store.begin()
        try:
            setting = store.get_app_setting(tx)
            if setting is None:
                setting = store.create_app_setting(
                    tx, generate_secret_key(), self._default_expire_minutes
                )
                logger.info("app_setting_created", setting_id=setting.id)
            tx.commit()
        except BaseException:
            tx.rollback()
            raise
        self.update(setting)
        return setting

    def reload(self, store) -> AppSetting:
        tx = store.begin()
        try:
            setting = store.get_app_setting(tx)
            tx.commit()
        except BaseException:
            tx.rollback()
            raise
        if setting is None:
            raise ServerError("application settings row is missing")
        self.update(setting)
        logger.info("app_setting_reloaded", setting_id=setting.id)
        return setting

    def update(self, setting: AppSetting) -> None:
        with self._lock.write():
            self._secret_key = setting.secret_key.encode()
            self._expire_minutes = setting.access_token_expire

    def secret_key(self) -> bytes:
        with self._lock.read():
            if self._secret_key is None:
                raise ServerError("settings not initialised")
            return self._secret_key

    def access_token_expire_minutes(self) -> int:
        with self._lock.read():
            if self._expire_minutes is None:
                raise ServerError("settings not initialised")
            return self._expire_minutes
