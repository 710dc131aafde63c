from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from otpauth.logging import get_logger
from otpauth.service.errors import AuthenticationError
from otpauth.service.settings_store import SettingsStore

logger = get_logger(__name__)


class Audience(str, Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True)
class TokenClaims:
    subject_id: int
    audience: Audience
    issued_at: int
    expires_at: int


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _truncate_to_second(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


class TokenService:
    """Issues and validates HS256 bearer tokens signed with the settings secret.

    The secret and TTL are read from the ``SettingsStore`` on every call, so
    a settings reload applies to the next token issued or parsed.
    """

    def __init__(
        self,
        settings: SettingsStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(
                self.settings.secret_key(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def generate(self, subject_id: int, audience: Audience) -> str:
        now = self._clock()
        ttl = timedelta(minutes=self.settings.access_token_expire_minutes())
        payload: dict[str, Any] = {
            "id": subject_id,
            "aud": Audience(audience).value,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> TokenClaims:
        # base64url segments are ASCII; anything else cannot be a token we signed
        if not token.isascii():
            raise AuthenticationError("malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise AuthenticationError("malformed token") from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise AuthenticationError("malformed token") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise AuthenticationError("invalid token")

        if not hmac.compare_digest(
            self._sign(f"{header_b64}.{payload_b64}").encode(), sig_b64.encode()
        ):
            raise AuthenticationError("invalid token")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise AuthenticationError("malformed token") from None
        if not isinstance(payload, dict):
            raise AuthenticationError("malformed token")

        try:
            audience = Audience(payload.get("aud"))
        except ValueError:
            raise AuthenticationError("invalid token audience") from None

        subject_id = payload.get("id")
        exp = payload.get("exp")
        iat = payload.get("iat")
        if (
            not isinstance(subject_id, int)
            or isinstance(subject_id, bool)
            or not isinstance(exp, (int, float))
            or not isinstance(iat, (int, float))
        ):
            raise AuthenticationError("malformed token claims")
        if exp <= self._clock().timestamp():
            raise AuthenticationError("token expired")
        return TokenClaims(
            subject_id=subject_id,
            audience=audience,
            issued_at=int(iat),
            expires_at=int(exp),
        )

    def parse(self, authorization: Optional[str]) -> TokenClaims:
        """Validate the ``Authorization`` header value; fails closed."""
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        return self.decode(token)

    @staticmethod
    def ensure_issued_after(claims: TokenClaims, *moments: Optional[datetime]) -> None:
        """Reject tokens issued before any of ``moments``.

        ``iat`` is whole seconds, so moments are truncated before comparing.
        """
        for moment in moments:
            if moment is None:
                continue
            if claims.issued_at < _truncate_to_second(moment):
                raise AuthenticationError("token issued before credential change")


__all__ = ["Audience", "TokenClaims", "TokenService", "extract_bearer"]
