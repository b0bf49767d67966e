from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Callable, Optional

from pydantic import ValidationError

from quicknote_auth.core.config import SESSION_EXPIRY, ENHANCED_SESSION_KEY, BASIC_SESSION_KEY
from quicknote_auth.core.exceptions import AuthError
from quicknote_auth.core.logging_config import short_id
from quicknote_auth.schemas.identity import IdentityProfile
from quicknote_auth.schemas.records import AuthSession
from quicknote_auth.storage.stores import KeyValueStore

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Time-bounded sessions in volatile storage.

    With an identity and an encrypted store the record is itself encrypted
    under the identity-bound key (enhanced flow); otherwise it is plain JSON
    (basic flow).
    """

    def __init__(self, volatile_store: KeyValueStore, encrypted_store=None,
                 clock: Callable[[], datetime] = utc_now, session_expiry: timedelta = SESSION_EXPIRY):
        self.store = volatile_store
        self.encrypted_store = encrypted_store
        self.clock = clock
        self.session_expiry = session_expiry

    def save_session(self, subject_id: str, identity: Optional[IdentityProfile] = None) -> None:
        """Persist a session record issued now"""
        session = AuthSession(
            subject_id=subject_id,
            identity_binding_id=identity.subject_id if identity else None,
            issued_at=self.clock(),
        )
        if identity is not None and self.encrypted_store is not None:
            self.encrypted_store.encrypt_and_store(ENHANCED_SESSION_KEY, session.model_dump_json(), identity)
        else:
            self.store.set(BASIC_SESSION_KEY, session.model_dump_json())
        logger.info(f"Session saved for {short_id(subject_id)}")

    def _load(self, identity: Optional[IdentityProfile]) -> Optional[AuthSession]:
        if identity is not None and self.encrypted_store is not None:
            data = self.encrypted_store.decrypt_and_get(ENHANCED_SESSION_KEY, identity)
        else:
            data = self.store.get(BASIC_SESSION_KEY)
        if not data:
            return None
        return AuthSession.model_validate(json.loads(data))

    def get_session(self, identity: Optional[IdentityProfile] = None) -> Optional[str]:
        """Subject id of a live session, or None"""
        try:
            session = self._load(identity)
        except (ValueError, ValidationError) as e:
            logger.error(f"Session retrieval failed: {e}")
            self.clear_session()
            return None
        if session is None:
            return None

        if self.clock() - session.issued_at > self.session_expiry:
            self.clear_session()
            logger.info("Session expired")
            return None

        if identity is not None and session.identity_binding_id != identity.subject_id:
            self.clear_session()
            logger.warning("Identity mismatch - session cleared")
            return None

        return session.subject_id

    def remaining(self, identity: Optional[IdentityProfile] = None) -> Optional[timedelta]:
        if self.get_session(identity) is None:
            return None
        session = self._load(identity)
        return self.session_expiry - (self.clock() - session.issued_at)

    def is_authenticated(self, identity: Optional[IdentityProfile] = None) -> bool:
        return self.get_session(identity) is not None

    def clear_session(self) -> None:
        for key in (ENHANCED_SESSION_KEY, BASIC_SESSION_KEY):
            try:
                self.store.remove(key)
            except AuthError as e:
                logger.error(f"Failed to clear session: {e}")
        logger.debug("Session cleared")
