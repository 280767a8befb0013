from __future__ import annotations

from fastapi import APIRouter, Depends

from tokengate.api.schemas import (
    Envelope,
    LoginRequest,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    UserResponse,
)
from tokengate.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotAuthenticatedError,
)
from tokengate.service.filter import AuthContext, require_principal
from tokengate.service.lifecycle import CredentialPair
from tokengate.service.runtime import get_runtime
from tokengate.storage.models import User

router = APIRouter(prefix="/api")


def _pair_response(pair: CredentialPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        id=pair.id,
        username=pair.username,
        email=pair.email,
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        role=user.role,
        created_at=user.created_at,
    )


def get_current_user(principal: AuthContext = Depends(require_principal)) -> User:
    user = get_runtime().users.get_user(principal.user_id)
    if user is None or not user.is_active:
        raise NotAuthenticatedError("principal no longer exists")
    return user


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
def register(body: RegisterRequest):
    """Create a user account.

    Raises:
        403: If signup is disabled in settings
        409: If the username or email is taken
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise ForbiddenError("signup disabled")
    user = runtime.users.register(body.username, body.email, body.password)
    return Envelope(
        success=True, message="User registered", data=_user_response(user)
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest):
    """Exchange a username and password for an access and refresh token pair."""
    runtime = get_runtime()
    user = runtime.users.authenticate(body.username, body.password)
    if user is None:
        raise AuthenticationError("invalid username or password")
    pair = runtime.tokens.generate_tokens(user)
    return Envelope(success=True, message="Login successful", data=_pair_response(pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
def refresh(body: TokenRefreshRequest):
    """Rotate a refresh token; the presented pair stops working immediately."""
    outcome = get_runtime().tokens.refresh_token(body.refresh_token)
    pair = outcome.raise_for_failure()
    return Envelope(success=True, message="Token refreshed", data=_pair_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(user: User = Depends(get_current_user)):
    get_runtime().tokens.invalidate_all_user_tokens(user)
    return Envelope(success=True, message="All sessions revoked")


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
def list_sessions(user: User = Depends(get_current_user)):
    records = get_runtime().tokens.active_sessions(user)
    items = [
        SessionResponse(
            id=record.id,
            created_at=record.created_at,
            access_token_expires_at=record.access_token_expires_at,
            refresh_token_expires_at=record.refresh_token_expires_at,
        )
        for record in sorted(records, key=lambda r: r.id or 0)
    ]
    return Envelope(success=True, data=SessionListResponse(items=items))


@router.get("/users/me", response_model=Envelope, tags=["users"])
def me(user: User = Depends(get_current_user)):
    return Envelope(success=True, data=_user_response(user))
