from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional, Sequence

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from tokengate.api.schemas import Envelope, ErrorBody
from tokengate.logging import get_logger, sanitize_error_message
from tokengate.service.errors import NotAuthenticatedError
from tokengate.service.tokens import TokenKind

logger = get_logger(__name__)

BEARER_PREFIX = "Bearer "
UNAUTHENTICATED_MESSAGE = "Full authentication is required to access this resource"


@dataclass(frozen=True)
class AuthContext:
    user_id: int
    username: str
    email: str
    authorities: tuple[str, ...] = ("user",)


def _ant_to_regex(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("/**", i):
            parts.append("(?:/.*)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(parts) + "$")


@lru_cache(maxsize=32)
def _compile_patterns(patterns: tuple[str, ...]) -> tuple[re.Pattern[str], ...]:
    return tuple(_ant_to_regex(p) for p in patterns)


def is_public_path(path: str, patterns: Sequence[str]) -> bool:
    """Match ``path`` against Ant-style globs (``*`` within a segment, ``**`` across)."""
    return any(rx.match(path) for rx in _compile_patterns(tuple(patterns)))


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header or not header.startswith(BEARER_PREFIX):
        return None
    token = header[len(BEARER_PREFIX):].strip()
    return token or None


def unauthenticated_response() -> JSONResponse:
    """401 envelope for protected routes reached without a valid principal.

    The body is identical whatever the cause, so callers cannot tell a missing
    header from a forged, expired or revoked token.
    """
    envelope = Envelope(
        success=False,
        message=UNAUTHENTICATED_MESSAGE,
        error=ErrorBody(code="unauthorized", message=UNAUTHENTICATED_MESSAGE),
    )
    return JSONResponse(
        status_code=401,
        content=jsonable_encoder(envelope.model_dump()),
        headers={"WWW-Authenticate": "Bearer"},
    )


def resolve_principal(runtime, token: str) -> Optional[AuthContext]:
    codec = runtime.codec
    if not codec.verify(token, TokenKind.ACCESS):
        return None
    user = runtime.store.get_user_by_username(codec.subject_of(token))
    if user is None or not user.is_active:
        return None
    if user.id != codec.identity_id_of(token):
        # username was reassigned after the token was minted
        return None
    return AuthContext(
        user_id=user.id,
        username=user.username,
        email=user.email,
        authorities=user.authorities,
    )


class RequestAuthenticationFilter(BaseHTTPMiddleware):
    """Attach an ``AuthContext`` to ``request.state.principal`` when the bearer is valid.

    The filter never rejects a request itself: failures leave the principal
    unset and route dependencies decide whether that is acceptable.
    """

    def __init__(self, app, *, runtime_provider: Callable) -> None:
        super().__init__(app)
        self.runtime_provider = runtime_provider

    async def dispatch(self, request: Request, call_next):
        request.state.principal = None
        try:
            runtime = self.runtime_provider()
            if not is_public_path(request.url.path, runtime.settings.public_paths):
                token = extract_bearer(request.headers.get("authorization"))
                if token:
                    request.state.principal = await asyncio.to_thread(
                        resolve_principal, runtime, token
                    )
        except Exception as exc:
            logger.warning(
                "request_authentication_failed",
                path=request.url.path,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            request.state.principal = None
        return await call_next(request)


def require_principal(request: Request) -> AuthContext:
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise NotAuthenticatedError("not authenticated")
    return principal


__all__ = [
    "AuthContext",
    "RequestAuthenticationFilter",
    "extract_bearer",
    "is_public_path",
    "require_principal",
    "resolve_principal",
    "unauthenticated_response",
]
