import base64
import json
from datetime import timedelta

import pytest

from tokengate.config import Settings
from tokengate.service.errors import MalformedCredential
from tokengate.service.tokens import TokenCodec, TokenKind
from tokengate.storage.models import User


@pytest.fixture
def alice():
    return User(id=1, username="alice", email="alice@example.com")


@pytest.fixture
def codec(settings, clock):
    return TokenCodec(settings, clock=clock)


def _segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def test_minted_tokens_verify_and_carry_identity(codec, alice, clock):
    access = codec.mint(alice, TokenKind.ACCESS)
    refresh = codec.mint(alice, TokenKind.REFRESH)

    assert codec.verify(access)
    assert codec.verify(refresh)
    assert codec.subject_of(access) == "alice"
    assert codec.identity_id_of(refresh) == 1
    assert codec.kind_of(access) is TokenKind.ACCESS
    assert codec.kind_of(refresh) is TokenKind.REFRESH
    assert codec.issued_at_of(access) == clock()
    assert codec.expiry_of(access) == clock() + timedelta(hours=1)
    assert codec.expiry_of(refresh) == clock() + timedelta(hours=24)


def test_access_expiry_never_exceeds_refresh_expiry(codec, alice, clock):
    for _ in range(3):
        access = codec.mint(alice, TokenKind.ACCESS)
        refresh = codec.mint(alice, TokenKind.REFRESH)
        assert codec.expiry_of(access) <= codec.expiry_of(refresh)
        clock.advance(minutes=17, seconds=3)


def test_tokens_minted_in_same_second_differ(codec, alice):
    first = codec.mint(alice, TokenKind.ACCESS)
    second = codec.mint(alice, TokenKind.ACCESS)
    assert first != second


def test_expiry_equal_to_now_is_expired(codec, alice, clock):
    access = codec.mint(alice, TokenKind.ACCESS)
    clock.advance(minutes=59, seconds=59)
    assert codec.verify(access)
    clock.advance(seconds=1)
    assert clock() == codec.expiry_of(access)
    assert not codec.verify(access)


def test_kind_is_enforced_when_requested(codec, alice):
    access = codec.mint(alice, TokenKind.ACCESS)
    refresh = codec.mint(alice, TokenKind.REFRESH)

    assert codec.verify(access, TokenKind.ACCESS)
    assert not codec.verify(access, TokenKind.REFRESH)
    assert codec.verify(refresh, TokenKind.REFRESH)
    assert not codec.verify(refresh, TokenKind.ACCESS)


def test_tampered_payload_fails_signature(codec, alice):
    token = codec.mint(alice, TokenKind.ACCESS)
    header, _, signature = token.split(".")
    forged_payload = _segment(
        {
            "iss": "tokengate-tests",
            "sub": "mallory",
            "user_id": 2,
            "token_type": "access",
            "jti": "x",
            "iat": 0,
            "exp": 9999999999,
        }
    )
    assert not codec.verify(f"{header}.{forged_payload}.{signature}")


def test_unsigned_algorithm_is_rejected(codec, alice):
    token = codec.mint(alice, TokenKind.ACCESS)
    _, payload, _ = token.split(".")
    none_header = _segment({"alg": "none", "typ": "JWT"})
    assert not codec.verify(f"{none_header}.{payload}.")


def test_other_secret_or_issuer_is_rejected(codec, alice, clock):
    token = codec.mint(alice, TokenKind.ACCESS)
    other_key = TokenCodec(
        Settings(jwt_secret="another-secret-that-is-long-enough-000000", jwt_issuer="tokengate-tests"),
        clock=clock,
    )
    other_issuer = TokenCodec(
        Settings(jwt_secret=codec.settings.jwt_secret, jwt_issuer="someone-else"),
        clock=clock,
    )
    assert not other_key.verify(token)
    assert not other_issuer.verify(token)


@pytest.mark.parametrize(
    "garbage",
    ["", "not-a-token", "a.b", "a.b.c.d", "!!!.???.###", "eyJ.eyJ.sig", "a.b.sig\u00e9", None, 12345],
)
def test_verify_never_raises_on_garbage(codec, garbage):
    assert codec.verify(garbage) is False


def _raw_segment(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def test_verify_rejects_non_ascii_and_deeply_nested_input(codec):
    header = _segment({"alg": "HS256", "typ": "JWT"})
    payload = _segment({"exp": 1})
    nested = _raw_segment(b"[" * 3000)
    signed_nested = f"{header}.{nested}"

    assert codec.verify(f"{header}.{payload}.sig\u00e9") is False
    assert codec.verify(f"{header}.{payload}.\u0441ig") is False
    assert codec.verify(f"{nested}.{payload}.sig") is False
    assert codec.verify(f"{signed_nested}.{codec._sign(signed_nested)}") is False
    with pytest.raises(MalformedCredential):
        codec.subject_of(f"{header}.{nested}.sig")


def test_out_of_range_timestamps_are_malformed(codec):
    header = _segment({"alg": "HS256", "typ": "JWT"})
    payload = _segment({"exp": 10**20, "iat": -(10**20)})
    with pytest.raises(MalformedCredential):
        codec.expiry_of(f"{header}.{payload}.sig")
    with pytest.raises(MalformedCredential):
        codec.issued_at_of(f"{header}.{payload}.sig")


@pytest.mark.parametrize("garbage", ["", "no-dots-here", "a.!!!.c", "a.bnVsbA.c"])
def test_claim_extraction_raises_malformed(codec, garbage):
    with pytest.raises(MalformedCredential):
        codec.subject_of(garbage)


def test_claim_extraction_rejects_wrong_claim_types(codec):
    header = _segment({"alg": "HS256", "typ": "JWT"})
    payload = _segment({"sub": 42, "user_id": "one", "token_type": "bogus"})
    token = f"{header}.{payload}.sig"
    with pytest.raises(MalformedCredential):
        codec.subject_of(token)
    with pytest.raises(MalformedCredential):
        codec.identity_id_of(token)
    with pytest.raises(MalformedCredential):
        codec.kind_of(token)
    with pytest.raises(MalformedCredential):
        codec.expiry_of(token)


def test_ttl_follows_settings(clock):
    codec = TokenCodec(
        Settings(
            jwt_secret="ttl-secret-0123456789abcdef0123456789",
            access_token_ttl_minutes=5,
            refresh_token_ttl_minutes=30,
        ),
        clock=clock,
    )
    assert codec.ttl(TokenKind.ACCESS) == timedelta(minutes=5)
    assert codec.ttl(TokenKind.REFRESH) == timedelta(minutes=30)
