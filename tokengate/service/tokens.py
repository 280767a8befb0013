from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from tokengate.config import Settings
from tokengate.logging import get_logger
from tokengate.service.errors import MalformedCredential
from tokengate.storage.models import User

logger = get_logger(__name__)

Clock = Callable[[], datetime]

_ALGORITHM = "HS256"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


def system_clock() -> datetime:
    return datetime.now(timezone.utc)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Mints and verifies HS256 bearer tokens.

    The signing key, issuer and lifetimes come from ``Settings``. ``clock``
    is the only source of "now"; tests pin it to make expiry deterministic.
    All timestamps are whole seconds since the epoch.
    """

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self.clock: Clock = clock or system_clock
        self._key = settings.jwt_secret.encode()

    def now(self) -> datetime:
        return self.clock().replace(microsecond=0)

    def ttl(self, kind: TokenKind) -> timedelta:
        if kind is TokenKind.ACCESS:
            return timedelta(minutes=self.settings.access_token_ttl_minutes)
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def mint(
        self,
        identity: User,
        kind: TokenKind,
        issued_at: Optional[datetime] = None,
    ) -> str:
        issued = (issued_at or self.now()).replace(microsecond=0)
        iat = int(issued.timestamp())
        payload = {
            "iss": self.settings.jwt_issuer,
            "sub": identity.username,
            "user_id": identity.id,
            "token_type": kind.value,
            # two tokens minted in the same second must still differ
            "jti": uuid.uuid4().hex,
            "iat": iat,
            "exp": iat + int(self.ttl(kind).total_seconds()),
        }
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _check(self, token: str, kind: Optional[TokenKind]) -> Optional[str]:
        """Return the rejection reason for ``token`` or ``None`` when it is valid."""

        # base64url and dots only; anything else cannot be a token we minted
        if not isinstance(token, str) or not token.isascii():
            return "malformed"
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return "malformed"
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, RecursionError):
            return "malformed"
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            return "bad_algorithm"
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return "bad_signature"
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, RecursionError):
            return "malformed"
        if not isinstance(payload, dict):
            return "malformed"
        if payload.get("iss") != self.settings.jwt_issuer:
            return "bad_issuer"
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            return "malformed"
        if exp <= self.clock().timestamp():
            return "expired"
        if kind is not None and payload.get("token_type") != kind.value:
            return "wrong_kind"
        return None

    def verify(self, token: str, kind: Optional[TokenKind] = None) -> bool:
        """True only for a well-formed, correctly signed, unexpired token.

        Never raises. The reason for a rejection is logged, not returned.
        """
        reason = self._check(token, kind)
        if reason is not None:
            logger.info(
                "token_rejected",
                reason=reason,
                expected_kind=kind.value if kind else None,
            )
            return False
        return True

    # claim extraction; callers are expected to have verified first
    def _claims(self, token: str) -> dict[str, Any]:
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(_decode_segment(payload_b64))
        except (AttributeError, ValueError, RecursionError) as exc:
            raise MalformedCredential("token is not a signed JWT") from exc
        if not isinstance(payload, dict):
            raise MalformedCredential("token payload is not an object")
        return payload

    def _claim(self, token: str, name: str, expected: type | tuple[type, ...]) -> Any:
        value = self._claims(token).get(name)
        if not isinstance(value, expected) or isinstance(value, bool):
            raise MalformedCredential(f"token claim '{name}' missing or invalid")
        return value

    def subject_of(self, token: str) -> str:
        return self._claim(token, "sub", str)

    def identity_id_of(self, token: str) -> int:
        return self._claim(token, "user_id", int)

    def _instant(self, token: str, name: str) -> datetime:
        value = self._claim(token, name, (int, float))
        try:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedCredential(f"token claim '{name}' out of range") from exc

    def expiry_of(self, token: str) -> datetime:
        return self._instant(token, "exp")

    def issued_at_of(self, token: str) -> datetime:
        return self._instant(token, "iat")

    def kind_of(self, token: str) -> TokenKind:
        raw = self._claim(token, "token_type", str)
        try:
            return TokenKind(raw)
        except ValueError as exc:
            raise MalformedCredential(f"unknown token type '{raw}'") from exc


__all__ = ["Clock", "TokenCodec", "TokenKind", "system_clock"]
