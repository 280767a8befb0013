from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Protocol

from tokengate.logging import get_logger
from tokengate.service.errors import (
    AuthenticationError,
    InvalidCredentialError,
    RecordNotFoundError,
    RefreshExpiredError,
)
from tokengate.service.tokens import TokenCodec, TokenKind
from tokengate.service.users import IdentityStore
from tokengate.storage.errors import ConstraintViolation
from tokengate.storage.models import TokenRecord, User

logger = get_logger(__name__)


class TokenStore(Protocol):
    def find_by_access_token(self, access_token: str) -> Optional[TokenRecord]: ...

    def find_by_refresh_token(self, refresh_token: str) -> Optional[TokenRecord]: ...

    def all_active_for(
        self, user_id: int, *, now: Optional[datetime] = None
    ) -> List[TokenRecord]: ...

    def save(self, record: TokenRecord) -> TokenRecord: ...

    def delete(self, record: TokenRecord) -> None: ...

    def delete_all_for(self, user_id: int) -> int: ...


@dataclass(frozen=True)
class CredentialPair:
    access_token: str
    refresh_token: str
    id: int
    username: str
    email: str
    token_type: str = "Bearer"


class TokenFailure(str, Enum):
    INVALID_CREDENTIAL = "invalid_credential"
    RECORD_NOT_FOUND = "record_not_found"
    REFRESH_EXPIRED = "refresh_expired"
    IDENTITY_NOT_FOUND = "identity_not_found"


_FAILURE_ERRORS = {
    TokenFailure.INVALID_CREDENTIAL: (InvalidCredentialError, "Invalid refresh token"),
    TokenFailure.RECORD_NOT_FOUND: (RecordNotFoundError, "Refresh token not found"),
    TokenFailure.REFRESH_EXPIRED: (RefreshExpiredError, "Refresh token has expired"),
    TokenFailure.IDENTITY_NOT_FOUND: (AuthenticationError, "Refresh token owner not found"),
}


@dataclass(frozen=True)
class RefreshOutcome:
    """Result of a rotation attempt: a new pair, or the reason there is none."""

    pair: Optional[CredentialPair] = None
    failure: Optional[TokenFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.pair is not None

    @classmethod
    def failed(cls, failure: TokenFailure) -> "RefreshOutcome":
        return cls(failure=failure)

    def raise_for_failure(self) -> CredentialPair:
        if self.ok:
            return self.pair  # type: ignore[return-value]
        error_cls, message = _FAILURE_ERRORS[self.failure]  # type: ignore[index]
        raise error_cls(message, detail={"reason": self.failure.value})  # type: ignore[union-attr]


class TokenService:
    """Issues, rotates and revokes credential pairs backed by a ``TokenStore``.

    This service is the only writer of token records. Rotation is not atomic
    across calls: two concurrent refreshes with the same token may both pass
    the lookup, and whichever saves last owns the record.
    """

    def __init__(
        self,
        tokens: TokenStore,
        identities: IdentityStore,
        codec: TokenCodec,
        *,
        single_session: bool = True,
    ) -> None:
        self.tokens = tokens
        self.identities = identities
        self.codec = codec
        self.single_session = single_session
        self.logger = logger

    def _mint_pair(self, identity: User) -> tuple[CredentialPair, datetime, datetime]:
        issued_at = self.codec.now()
        access = self.codec.mint(identity, TokenKind.ACCESS, issued_at)
        refresh = self.codec.mint(identity, TokenKind.REFRESH, issued_at)
        pair = CredentialPair(
            access_token=access,
            refresh_token=refresh,
            id=identity.id,
            username=identity.username,
            email=identity.email,
        )
        return pair, self.codec.expiry_of(access), self.codec.expiry_of(refresh)

    def generate_tokens(self, identity: User) -> CredentialPair:
        pair, access_exp, refresh_exp = self._mint_pair(identity)
        record: Optional[TokenRecord] = None
        if self.single_session:
            existing = sorted(
                self.tokens.all_active_for(identity.id, now=self.codec.clock()),
                key=lambda r: r.id or 0,
            )
            if existing:
                record = existing[0]
                for extra in existing[1:]:
                    self.tokens.delete(extra)
        if record is not None:
            record.access_token = pair.access_token
            record.refresh_token = pair.refresh_token
            record.access_token_expires_at = access_exp
            record.refresh_token_expires_at = refresh_exp
            try:
                saved = self.tokens.save(record)
            except ConstraintViolation:
                # record vanished between lookup and write; start a fresh one
                record = None
        if record is None:
            if self.single_session:
                # expired records never reach the refresh path's cleanup
                purged = self.tokens.delete_all_for(identity.id)
                if purged:
                    self.logger.info(
                        "stale_tokens_purged", user_id=identity.id, removed=purged
                    )
            saved = self.tokens.save(
                TokenRecord(
                    user_id=identity.id,
                    access_token=pair.access_token,
                    refresh_token=pair.refresh_token,
                    access_token_expires_at=access_exp,
                    refresh_token_expires_at=refresh_exp,
                    created_at=self.codec.now(),
                )
            )
        self.logger.info(
            "tokens_issued",
            user_id=identity.id,
            record_id=saved.id,
            single_session=self.single_session,
        )
        return pair

    def refresh_token(self, refresh_token: str) -> RefreshOutcome:
        if not self.codec.verify(refresh_token, TokenKind.REFRESH):
            return self._fail(TokenFailure.INVALID_CREDENTIAL)
        record = self.tokens.find_by_refresh_token(refresh_token)
        if record is None:
            return self._fail(TokenFailure.RECORD_NOT_FOUND)
        if record.refresh_expired(self.codec.clock()):
            self.tokens.delete(record)
            return self._fail(TokenFailure.REFRESH_EXPIRED, record=record)
        owner = self.identities.get_user(record.user_id)
        if owner is None or not owner.is_active:
            self.tokens.delete(record)
            return self._fail(TokenFailure.IDENTITY_NOT_FOUND, record=record)

        pair, access_exp, refresh_exp = self._mint_pair(owner)
        record.access_token = pair.access_token
        record.refresh_token = pair.refresh_token
        record.access_token_expires_at = access_exp
        record.refresh_token_expires_at = refresh_exp
        try:
            self.tokens.save(record)
        except ConstraintViolation:
            # invalidated while we were rotating
            return self._fail(TokenFailure.RECORD_NOT_FOUND, record=record)
        self.logger.info("tokens_rotated", user_id=owner.id, record_id=record.id)
        return RefreshOutcome(pair=pair)

    def _fail(
        self, failure: TokenFailure, *, record: Optional[TokenRecord] = None
    ) -> RefreshOutcome:
        self.logger.warning(
            "token_refresh_failed",
            reason=failure.value,
            record_id=record.id if record else None,
            user_id=record.user_id if record else None,
        )
        return RefreshOutcome.failed(failure)

    def invalidate_all_user_tokens(self, identity: User) -> None:
        removed = self.tokens.delete_all_for(identity.id)
        self.logger.info("tokens_invalidated", user_id=identity.id, removed=removed)

    def active_sessions(self, identity: User) -> List[TokenRecord]:
        return self.tokens.all_active_for(identity.id, now=self.codec.clock())


__all__ = [
    "CredentialPair",
    "RefreshOutcome",
    "TokenFailure",
    "TokenService",
    "TokenStore",
]
