from __future__ import annotations

import logging
from datetime import timedelta

import fakeredis
import jwt
import pytest

from koepon.errors import ValidationError
from koepon.security.audit import (
    SecurityEvent, SecurityLogger, Severity, redact,
)
from koepon.security.bruteforce import (
    BruteForceProtection, MemoryAttemptStore, RedisAttemptStore,
)
from koepon.security.encryption import (
    DecryptionError, EncryptedPayload, EncryptionUtils,
)
from koepon.security.passwords import PasswordSecurity
from koepon.security.sessions import (
    MemorySessionStore, RedisSessionStore, SessionSecurity,
)
from koepon.security.tokens import TokenError, TokenErrorKind, TokenManager


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ----------------------------
# passwords
# ----------------------------
def test_hash_and_verify_password() -> None:
    hashed = PasswordSecurity.hash_password("fanpass123", rounds=4)
    assert hashed != "fanpass123"
    assert PasswordSecurity.verify_password("fanpass123", hashed)
    assert not PasswordSecurity.verify_password("wrong", hashed)
    assert not PasswordSecurity.verify_password("fanpass123", "not-a-hash")


def test_overlong_password_rejected() -> None:
    with pytest.raises(ValidationError):
        PasswordSecurity.hash_password("x" * 73, rounds=4)


def test_password_strength() -> None:
    assert PasswordSecurity.password_issues("abcdef12") == []
    assert len(PasswordSecurity.password_issues("short")) == 2
    with pytest.raises(ValidationError) as exc:
        PasswordSecurity.validate_password_strength("onlyletters")
    assert exc.value.details["issues"] == ["数字を含めてください"]


def test_secure_tokens_are_random() -> None:
    a = PasswordSecurity.generate_secure_token(16)
    assert len(a) == 32
    assert a != PasswordSecurity.generate_secure_token(16)
    assert PasswordSecurity.generate_csrf_token()


# ----------------------------
# tokens
# ----------------------------
def test_access_token_roundtrip() -> None:
    tm = TokenManager("secret")
    token = tm.generate_access_token("u1", "a@b.c", "admin", session_id="s1")

    claims = tm.verify_token(token, expected_type="access")

    assert (claims["sub"], claims["role"], claims["sid"]) == (
        "u1", "admin", "s1")


def test_token_error_kinds() -> None:
    tm = TokenManager("secret")
    refresh = tm.generate_refresh_token("u1")

    with pytest.raises(TokenError) as exc:
        tm.verify_token(refresh, expected_type="access")
    assert exc.value.kind is TokenErrorKind.WRONG_TYPE

    other = TokenManager("other-secret")
    assert (other.token_error_kind(refresh)
            is TokenErrorKind.INVALID_SIGNATURE)
    assert tm.token_error_kind("not.a.jwt") is TokenErrorKind.MALFORMED

    foreign = TokenManager("secret", audience="someone-else")
    assert (tm.token_error_kind(foreign.generate_refresh_token("u1"))
            is TokenErrorKind.INVALID_CLAIMS)


def test_expired_token() -> None:
    tm = TokenManager("secret", access_ttl=timedelta(seconds=-10))
    token = tm.generate_access_token("u1", "a@b.c", "user")
    assert tm.is_token_expired(token)
    # tampered is invalid, not expired
    assert not TokenManager("secret").is_token_expired(token + "x")


def test_token_missing_subject_is_invalid() -> None:
    token = jwt.encode({"iss": "koepon-app", "aud": "koepon-users",
                        "iat": 1, "exp": 9_999_999_999}, "secret",
                       algorithm="HS256")
    assert (TokenManager("secret").token_error_kind(token)
            is TokenErrorKind.INVALID_CLAIMS)


def test_empty_secret_rejected() -> None:
    with pytest.raises(ValueError):
        TokenManager("")


# ----------------------------
# sessions
# ----------------------------
@pytest.fixture(params=["memory", "redis"])
async def session_store(request):
    if request.param == "memory":
        yield MemorySessionStore()
    else:
        r = fakeredis.FakeAsyncRedis(decode_responses=True)
        yield RedisSessionStore(r)
        await r.aclose()


async def test_session_lifecycle(session_store):
    clock = FakeClock()
    sessions = SessionSecurity(session_store, clock=clock)
    await sessions.create_session("s1", "u1", "ua", "1.1.1.1")

    clock.advance(60)
    rec = await sessions.validate_session("s1", "ua", "1.1.1.1")
    assert rec.last_activity == clock.now

    await sessions.destroy_session("s1")
    assert await sessions.validate_session("s1", "ua", "1.1.1.1") is None


async def test_session_binding_mismatch_destroys(session_store):
    sessions = SessionSecurity(session_store, clock=FakeClock())
    await sessions.create_session("s1", "u1", "ua", "1.1.1.1")

    assert await sessions.validate_session("s1", "ua", "2.2.2.2") is None
    assert await sessions.validate_session("s1", "ua", "1.1.1.1") is None


async def test_session_timeouts(session_store):
    clock = FakeClock()
    sessions = SessionSecurity(session_store, clock=clock,
                               inactivity_timeout=100, absolute_timeout=250)
    await sessions.create_session("idle", "u1", "ua", "ip")
    await sessions.create_session("busy", "u1", "ua", "ip")

    for _ in range(2):
        clock.advance(90)
        assert await sessions.validate_session("busy", "ua", "ip")
    assert await sessions.validate_session("idle", "ua", "ip") is None

    # absolute timeout despite activity
    clock.advance(90)
    assert await sessions.validate_session("busy", "ua", "ip") is None


async def test_oldest_session_evicted(session_store):
    clock = FakeClock()
    sessions = SessionSecurity(session_store, clock=clock, max_sessions=2)
    for sid in ("a", "b", "c"):
        await sessions.create_session(sid, "u1", "ua", "ip")
        clock.advance(1)

    assert sorted(await sessions.active_sessions("u1")) == ["b", "c"]


async def test_cleanup_expired_sessions() -> None:
    clock = FakeClock()
    sessions = SessionSecurity(MemorySessionStore(), clock=clock,
                               inactivity_timeout=10)
    await sessions.create_session("old", "u1", "ua", "ip")
    clock.advance(20)
    await sessions.create_session("new", "u2", "ua", "ip")

    assert await sessions.cleanup_expired_sessions() == 1
    assert await sessions.active_sessions("u2") == ["new"]


# ----------------------------
# brute force
# ----------------------------
@pytest.fixture(params=["memory", "redis"])
async def attempt_store(request):
    if request.param == "memory":
        yield MemoryAttemptStore()
    else:
        r = fakeredis.FakeAsyncRedis(decode_responses=True)
        yield RedisAttemptStore(r)
        await r.aclose()


async def test_lockout_after_max_attempts(attempt_store):
    clock = FakeClock()
    bf = BruteForceProtection(attempt_store, clock=clock, max_attempts=3,
                              window=600, lock_duration=900)
    for _ in range(2):
        await bf.record_failed_attempt("fan@koepon.example")
    assert not await bf.is_locked("fan@koepon.example")

    rec = await bf.record_failed_attempt("fan@koepon.example")

    assert rec.count == 3
    assert await bf.is_locked("fan@koepon.example")
    assert await bf.get_remaining_lock_time("fan@koepon.example") == 900
    clock.advance(901)
    assert not await bf.is_locked("fan@koepon.example")


async def test_window_resets_counter(attempt_store):
    clock = FakeClock()
    bf = BruteForceProtection(attempt_store, clock=clock, max_attempts=3,
                              window=60)
    await bf.record_failed_attempt("k")
    await bf.record_failed_attempt("k")
    clock.advance(61)

    rec = await bf.record_failed_attempt("k")

    assert rec.count == 1
    assert not await bf.is_locked("k")


async def test_clear_attempts(attempt_store):
    bf = BruteForceProtection(attempt_store, max_attempts=1)
    await bf.record_failed_attempt("k")
    assert await bf.is_locked("k")
    await bf.clear_attempts("k")
    assert await bf.get_remaining_lock_time("k") == 0


# ----------------------------
# encryption
# ----------------------------
def test_encrypt_decrypt_with_associated_data() -> None:
    enc = EncryptionUtils.from_key_string("00" * 32)
    payload = enc.encrypt("fan@koepon.example", associated_data=b"ctx")

    assert payload.encrypted != "fan@koepon.example"
    assert len(bytes.fromhex(payload.iv)) == 12
    assert enc.decrypt(payload, associated_data=b"ctx") == (
        "fan@koepon.example")
    with pytest.raises(DecryptionError):
        enc.decrypt(payload, associated_data=b"other")


def test_tampered_ciphertext_fails() -> None:
    enc = EncryptionUtils.from_key_string("11" * 32)
    payload = enc.encrypt("secret")
    flipped = format(int(payload.encrypted[:2], 16) ^ 1, "02x")
    tampered = EncryptedPayload(flipped + payload.encrypted[2:],
                                payload.iv, payload.tag)
    with pytest.raises(DecryptionError):
        enc.decrypt(tampered)


def test_nonce_is_fresh_per_message() -> None:
    enc = EncryptionUtils.from_key_string(None)
    assert enc.encrypt("x").iv != enc.encrypt("x").iv


def test_bad_keys_rejected() -> None:
    with pytest.raises(ValueError):
        EncryptionUtils.from_key_string("abcd")
    with pytest.raises(ValueError):
        EncryptionUtils(b"short")


# ----------------------------
# audit
# ----------------------------
def test_redact_nested_secrets() -> None:
    out = redact({"password": "p", "nested": {"token": "t", "ok": 1}})
    assert out == {"password": "[REDACTED]",
                   "nested": {"token": "[REDACTED]", "ok": 1}}


def test_security_event_seals_email(caplog) -> None:
    enc = EncryptionUtils.from_key_string("22" * 32)
    audit = SecurityLogger(enc)

    with caplog.at_level(logging.INFO, logger="koepon.security"):
        entry = audit.log_security_event(
            SecurityEvent.LOGIN_FAILURE, Severity.HIGH,
            ip_address="1.1.1.1", email="fan@koepon.example",
            details={"password": "oops"},
        )

    assert entry["details"] == {"password": "[REDACTED]"}
    assert "fan@koepon.example" not in caplog.text
    sealed = EncryptedPayload(**entry["email"])
    assert enc.decrypt(sealed, associated_data=b"security-log") == (
        "fan@koepon.example")
    assert caplog.records[-1].levelno == logging.WARNING
