from __future__ import annotations

import asyncio
import hmac
import json
import time
import uuid
from dataclasses import asdict, dataclass
from enum import IntEnum
from typing import Callable, Dict, Optional, Tuple

from otpauth.logging import get_logger
from otpauth.service.errors import (
    InvalidCodeError,
    SessionCorruptedError,
    SessionNotFoundError,
)

logger = get_logger(__name__)


class LoginState(IntEnum):
    WAITING = 0
    SUCCESS = 1
    CORRUPTED = 2


@dataclass
class LoginSession:
    tries: int
    otp_id: int
    code: str
    state: LoginState = LoginState.WAITING

    def to_json(self) -> str:
        data = asdict(self)
        data["state"] = int(self.state)
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "LoginSession":
        data = json.loads(raw)
        return cls(
            tries=int(data["tries"]),
            otp_id=int(data["otp_id"]),
            code=str(data["code"]),
            state=LoginState(int(data["state"])),
        )


class LoginSessionStore:
    """Ephemeral OTP challenge state keyed by an opaque session token.

    With Redis, the try increment and the success transition each run as a
    server-side script. Without Redis (TEST_MODE / dev fallback), the same
    transitions run under an ``asyncio.Lock`` on a process-local dict.
    """

    def __init__(
        self,
        cache=None,
        *,
        ttl_seconds: int = 180,
        max_tries: int = 3,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.max_tries = max_tries
        self._clock = clock or time.monotonic
        self._local: Dict[str, Tuple[LoginSession, float]] = {}
        self._local_lock = asyncio.Lock()

    # -- in-process fallback --------------------------------------------------

    def _local_get(self, token: str) -> Optional[LoginSession]:
        entry = self._local.get(token)
        if entry is None:
            return None
        session, expires_at = entry
        if expires_at <= self._clock():
            self._local.pop(token, None)
            return None
        return session

    def _local_put(self, token: str, session: LoginSession) -> None:
        self._local[token] = (session, self._clock() + self.ttl_seconds)

    # -- operations -----------------------------------------------------------

    async def create(self, otp_id: int, code: str) -> str:
        token = uuid.uuid4().hex
        session = LoginSession(tries=0, otp_id=otp_id, code=code)
        if self.cache:
            await self.cache.set_login_session(
                token, session.to_json(), self.ttl_seconds
            )
        else:
            async with self._local_lock:
                self._local_put(token, session)
        logger.info("login_session_created", otp_id=otp_id, session_token=token)
        return token

    async def get(self, token: str) -> Optional[LoginSession]:
        """Read-only peek; does not count as a try or refresh the expiry."""
        if self.cache:
            raw = await self.cache.get_login_session(token)
            return LoginSession.from_json(raw) if raw else None
        async with self._local_lock:
            session = self._local_get(token)
            return LoginSession(**asdict(session)) if session else None

    async def increment_tries(self, token: str) -> LoginSession:
        """Atomically count one try and return the advanced session.

        The write happens even when the session is already resolved; the
        caller is then told the code is invalid.
        """
        if self.cache:
            raw = await self.cache.increment_login_tries(
                token, self.max_tries, self.ttl_seconds
            )
            session = LoginSession.from_json(raw) if raw else None
        else:
            async with self._local_lock:
                session = self._local_get(token)
                if session is not None:
                    session = LoginSession(**asdict(session))
                    session.tries += 1
                    if (
                        session.state == LoginState.WAITING
                        and session.tries > self.max_tries
                    ):
                        session.state = LoginState.CORRUPTED
                    self._local_put(token, session)

        if session is None:
            raise SessionNotFoundError("login session not found or expired")
        if session.state == LoginState.CORRUPTED:
            logger.warning(
                "login_session_corrupted", otp_id=session.otp_id, tries=session.tries
            )
            raise SessionCorruptedError("too many attempts; request a new code")
        if session.state == LoginState.SUCCESS:
            raise InvalidCodeError("login session already used")
        return session

    async def _mark_success(self, token: str) -> int:
        if self.cache:
            return await self.cache.mark_login_success(token, self.ttl_seconds)
        async with self._local_lock:
            session = self._local_get(token)
            if session is None:
                return -1
            if session.state != LoginState.WAITING:
                return 0
            updated = LoginSession(**asdict(session))
            updated.state = LoginState.SUCCESS
            self._local_put(token, updated)
            return 1

    async def check_code(self, token: str, code: str) -> int:
        """Count the attempt, then compare; returns the OTP id on a match."""
        session = await self.increment_tries(token)
        if not hmac.compare_digest(session.code.encode(), code.encode()):
            logger.info("login_code_mismatch", otp_id=session.otp_id, tries=session.tries)
            raise InvalidCodeError("invalid code")
        outcome = await self._mark_success(token)
        if outcome == -1:
            raise SessionNotFoundError("login session not found or expired")
        if outcome == 0:
            # another attempt resolved the session between increment and compare
            raise InvalidCodeError("login session already used")
        logger.info("login_session_succeeded", otp_id=session.otp_id, tries=session.tries)
        return session.otp_id


__all__ = ["LoginSession", "LoginSessionStore", "LoginState"]
