"""
Tests for time-bounded sessions.
"""
import json
from datetime import timedelta

import pytest

from quicknote_auth.core.config import BASIC_SESSION_KEY, ENHANCED_SESSION_KEY, KEY_CACHE_SIZE
from quicknote_auth.core.session_manager import SessionManager
from quicknote_auth.schemas.records import AuthSession
from quicknote_auth.services.crypto import EncryptedStore, KeyDeriver


@pytest.fixture
def enhanced_sessions(durable_store, volatile_store, fingerprint, clock):
    deriver = KeyDeriver(durable_store, fingerprint)
    return SessionManager(volatile_store, EncryptedStore(volatile_store, deriver), clock=clock)


@pytest.fixture
def basic_sessions(volatile_store, clock):
    return SessionManager(volatile_store, clock=clock)


class TestBasicSession:

    def test_no_session(self, basic_sessions):
        assert basic_sessions.get_session() is None
        assert not basic_sessions.is_authenticated()

    def test_valid_just_before_expiry(self, basic_sessions, clock):
        basic_sessions.save_session("0123456789abcdef")
        clock.advance(hours=23, minutes=59)
        assert basic_sessions.get_session() == "0123456789abcdef"

    def test_expired_after_24_hours(self, basic_sessions, volatile_store, clock):
        basic_sessions.save_session("0123456789abcdef")
        clock.advance(hours=24, minutes=1)
        assert basic_sessions.get_session() is None
        assert volatile_store.get(BASIC_SESSION_KEY) is None

    def test_remaining(self, basic_sessions, clock):
        basic_sessions.save_session("0123456789abcdef")
        clock.advance(hours=4)
        assert basic_sessions.remaining() == timedelta(hours=20)

    def test_corrupt_record_is_cleared(self, basic_sessions, volatile_store):
        volatile_store.set(BASIC_SESSION_KEY, "{broken")
        assert basic_sessions.get_session() is None
        assert volatile_store.get(BASIC_SESSION_KEY) is None

    @pytest.mark.parametrize("issued_at", ["not-a-date", "2026-03-01T11:00:00", None])
    def test_bad_timestamp_is_cleared(self, basic_sessions, volatile_store, issued_at):
        volatile_store.set(BASIC_SESSION_KEY, json.dumps({"subject_id": "0123456789abcdef", "issued_at": issued_at}))
        assert basic_sessions.get_session() is None
        assert not basic_sessions.is_authenticated()
        assert volatile_store.get(BASIC_SESSION_KEY) is None

    def test_record_contents(self, basic_sessions, volatile_store, clock):
        basic_sessions.save_session("0123456789abcdef")
        record = json.loads(volatile_store.get(BASIC_SESSION_KEY))
        assert record["subject_id"] == "0123456789abcdef"
        assert AuthSession.model_validate(record).issued_at == clock()

    def test_clear_is_idempotent(self, basic_sessions):
        basic_sessions.save_session("0123456789abcdef")
        basic_sessions.clear_session()
        basic_sessions.clear_session()
        assert basic_sessions.get_session() is None


class TestEnhancedSession:

    def test_encrypted_at_rest(self, enhanced_sessions, volatile_store, identity):
        enhanced_sessions.save_session("0123456789abcdef", identity)
        raw = volatile_store.get(ENHANCED_SESSION_KEY)
        assert raw is not None
        assert "0123456789abcdef" not in raw
        assert volatile_store.get(BASIC_SESSION_KEY) is None

    def test_round_trip(self, enhanced_sessions, identity):
        enhanced_sessions.save_session("0123456789abcdef", identity)
        assert enhanced_sessions.get_session(identity) == "0123456789abcdef"
        assert enhanced_sessions.is_authenticated(identity)

    def test_expiry(self, enhanced_sessions, volatile_store, identity, clock):
        enhanced_sessions.save_session("0123456789abcdef", identity)
        clock.advance(hours=23, minutes=59)
        assert enhanced_sessions.is_authenticated(identity)
        clock.advance(minutes=2)
        assert not enhanced_sessions.is_authenticated(identity)
        assert volatile_store.get(ENHANCED_SESSION_KEY) is None

    def test_other_identity_gets_nothing(self, enhanced_sessions, identity, other_identity):
        enhanced_sessions.save_session("0123456789abcdef", identity)
        assert enhanced_sessions.get_session(other_identity) is None

    def test_binding_mismatch_is_cleared(self, durable_store, volatile_store, fingerprint, clock,
                                         identity, other_identity):
        deriver = KeyDeriver(durable_store, fingerprint)
        encrypted = EncryptedStore(volatile_store, deriver)
        sessions = SessionManager(volatile_store, encrypted, clock=clock)
        # record encrypted for identity but claiming a different binding
        payload = json.dumps({
            "subject_id": "0123456789abcdef",
            "identity_binding_id": other_identity.subject_id,
            "issued_at": clock().isoformat(),
        })
        encrypted.encrypt_and_store(ENHANCED_SESSION_KEY, payload, identity)

        assert sessions.get_session(identity) is None
        assert volatile_store.get(ENHANCED_SESSION_KEY) is None

    def test_repeated_saves_keep_key_cache_bounded(self, durable_store, volatile_store, fingerprint, clock, identity):
        deriver = KeyDeriver(durable_store, fingerprint)
        sessions = SessionManager(volatile_store, EncryptedStore(volatile_store, deriver), clock=clock)
        for _ in range(KEY_CACHE_SIZE + 5):
            sessions.save_session("0123456789abcdef", identity)
        assert len(deriver._cache) == KEY_CACHE_SIZE
        assert sessions.get_session(identity) == "0123456789abcdef"
