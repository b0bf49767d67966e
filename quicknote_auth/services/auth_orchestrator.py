"""Sign-in state machine: identity login -> TOTP setup/verify -> device check -> session.

All per-attempt state lives in an ``AuthContext`` owned by the orchestrator;
nothing durable is written before the attempt reaches AUTHENTICATED, except
fail-safe deletion of undecryptable records and the discarding of legacy
data once the user picks a migration option.
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from quicknote_auth.core.config import DEVICE_BOUND_KEYS, LEGACY_KEYS, TOTP_DEFAULT_LABEL
from quicknote_auth.core.exceptions import (
    AuthError, InvalidSecretError, InvalidTransitionError, RateLimitedError, StorageUnavailableError,
)
from quicknote_auth.core.logging_config import short_id
from quicknote_auth.core.rate_limiter import MemoryRateLimiter
from quicknote_auth.core.session_manager import SessionManager, utc_now
from quicknote_auth.schemas.auth import AuthStateResponse
from quicknote_auth.schemas.devices import DeviceInfo
from quicknote_auth.schemas.identity import IdentityProfile
from quicknote_auth.services import totp_service
from quicknote_auth.services.crypto import EncryptedStore, KeyDeriver, detect_legacy_data, migrate_from_legacy_storage
from quicknote_auth.services.device_registry import DeviceRegistry
from quicknote_auth.services.fingerprint import DeviceIdentity, FingerprintSource
from quicknote_auth.storage.stores import KeyValueStore

logger = logging.getLogger(__name__)

WRONG_CODE_MESSAGE = "The code is incorrect. Check that your device clock is in sync."


class AuthState(str, Enum):
    IDENTITY_SIGNIN = "identity_signin"
    TOTP_SETUP = "totp_setup"
    TOTP_VERIFY = "totp_verify"
    DEVICE_REGISTRATION = "device_registration"
    MIGRATION = "migration"
    AUTHENTICATED = "authenticated"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class DeviceOwner:
    """Devices are authorized for the (TOTP user, external identity) pair, never either alone."""
    totp_user_id: str
    subject_id: str

    @property
    def registry_key(self) -> str:
        return f"{self.totp_user_id}_{self.subject_id}"


@dataclass
class AuthContext:
    state: AuthState = AuthState.IDENTITY_SIGNIN
    identity: Optional[IdentityProfile] = None
    secret: Optional[str] = None
    pending_secret: Optional[totp_service.TOTPSecret] = None
    totp_user_id: Optional[str] = None
    device_name: Optional[str] = None
    error: Optional[str] = None

    @property
    def owner(self) -> Optional[DeviceOwner]:
        if not self.totp_user_id or self.identity is None:
            return None
        return DeviceOwner(self.totp_user_id, self.identity.subject_id)


class AuthOrchestrator:
    def __init__(self, durable: KeyValueStore, volatile: KeyValueStore, fingerprint_source: FingerprintSource,
                 user_agent: Optional[str] = None, clock: Callable[[], datetime] = utc_now,
                 rate_limiter: Optional[MemoryRateLimiter] = None):
        self.durable = durable
        self.clock = clock
        self.device = DeviceIdentity(durable, fingerprint_source, user_agent)
        self.deriver = KeyDeriver(durable, fingerprint_source)
        self.encrypted = EncryptedStore(durable, self.deriver)
        self.registry = DeviceRegistry(durable, self.device, clock=lambda: int(self.clock().timestamp() * 1000))
        self.sessions = SessionManager(volatile, EncryptedStore(volatile, self.deriver), clock=clock)
        self.rate_limiter = rate_limiter or MemoryRateLimiter()
        self.context = AuthContext()
        self._in_flight = threading.Lock()

    # helpers

    @contextmanager
    def _exclusive(self):
        """Yield False when another step is already running (duplicate click)."""
        acquired = self._in_flight.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._in_flight.release()

    def _require(self, *states: AuthState) -> None:
        if self.context.state not in states:
            raise InvalidTransitionError(
                f"{self.context.state.value} -> expected one of {[s.value for s in states]}"
            )

    def _move(self, state: AuthState) -> None:
        logger.info(f"Auth state {self.context.state.value} -> {state.value}")
        self.context.state = state

    def _fail(self, e: AuthError) -> None:
        """Turn a core failure into a retryable message or the unavailable state."""
        if isinstance(e, InvalidTransitionError):
            raise e
        if isinstance(e, StorageUnavailableError):
            logger.error(f"Authentication unavailable: {e}")
            self._move(AuthState.UNAVAILABLE)
        else:
            logger.warning(f"Auth step failed: {type(e).__name__}: {e}")
        self.context.error = e.user_message

    def _check_code(self, code: str, secret: str) -> bool:
        subject = self.context.identity.subject_id
        if self.rate_limiter.is_rate_limited(subject, "totp"):
            raise RateLimitedError(f"TOTP attempts exhausted for {short_id(subject)}")
        if totp_service.verify_code(code, secret, at_time=self.clock()):
            self.rate_limiter.reset_user_limits(subject, "totp")
            return True
        self.rate_limiter.record_attempt(subject, "totp")
        logger.warning("TOTP token verification failed")
        self.context.error = WRONG_CODE_MESSAGE
        return False

    def _new_pending_secret(self) -> None:
        label = self.context.identity.display_name or TOTP_DEFAULT_LABEL
        self.context.pending_secret = totp_service.generate_secret(label)
        self.context.secret = None

    def _persist_and_authenticate(self, secret: str, user_id: str) -> None:
        identity = self.context.identity
        self.encrypted.set_totp_secret(secret, identity)
        self.encrypted.set_totp_user_id(user_id, identity)
        self.encrypted.set_identity_profile(identity)
        self.sessions.save_session(user_id, identity)
        self.context.secret = secret
        self.context.totp_user_id = user_id
        self.context.pending_secret = None
        self.context.device_name = None
        self.context.error = None
        self._move(AuthState.AUTHENTICATED)
        logger.info(f"Authentication successful for {short_id(user_id)}")

    # transitions

    def sign_in(self, identity: IdentityProfile) -> AuthContext:
        """Entry point after the external identity provider asserted who the user is."""
        with self._exclusive() as acquired:
            if not acquired:
                return self.context
            self._require(AuthState.IDENTITY_SIGNIN, AuthState.UNAVAILABLE)
            self.context = AuthContext(state=self.context.state, identity=identity)
            try:
                if detect_legacy_data(self.durable):
                    self._move(AuthState.MIGRATION)
                    return self.context

                secret = self.encrypted.get_totp_secret(identity)
                user_id = self.encrypted.get_totp_user_id(identity)
                if secret and user_id:
                    self.context.secret = secret
                    self.context.totp_user_id = user_id
                    if self.sessions.is_authenticated(identity):
                        logger.info("Valid session found, skipping TOTP")
                        self._move(AuthState.AUTHENTICATED)
                    else:
                        self._move(AuthState.TOTP_VERIFY)
                else:
                    self._new_pending_secret()
                    self._move(AuthState.TOTP_SETUP)
            except AuthError as e:
                self._fail(e)
            return self.context

    def identity_failed(self, message: str = "Sign-in failed. Please try again.") -> AuthContext:
        """Provider unreachable or user cancelled the consent flow; nothing is stored."""
        with self._exclusive() as acquired:
            if not acquired:
                return self.context
            self._require(AuthState.IDENTITY_SIGNIN, AuthState.UNAVAILABLE)
            self.context.error = message
            return self.context

    def regenerate_secret(self) -> AuthContext:
        with self._exclusive() as acquired:
            if not acquired:
                return self.context
            self._require(AuthState.TOTP_SETUP)
            self._new_pending_secret()
            self.context.error = None
            return self.context

    def provisioning_image(self) -> bytes:
        self._require(AuthState.TOTP_SETUP)
        return totp_service.generate_provisioning_image(self.context.pending_secret)

    def confirm_setup(self, code: str) -> AuthContext:
        """One correct code enrolls the pending secret; before that nothing is written."""
        with self._exclusive() as acquired:
            if not acquired:
                return self.context
            self._require(AuthState.TOTP_SETUP)
            secret = self.context.pending_secret.base32
            try:
                if not self._check_code(code, secret):
                    return self.context
                user_id = totp_service.user_id_from_secret(secret)
                self.context.totp_user_id = user_id
                if not self.registry.register_current_device(self.context.owner):
                    raise StorageUnavailableError("Device registration failed")
                self._persist_and_authenticate(secret, user_id)
            except AuthError as e:
                self._fail(e)
            return self.context

    def verify(self, code: str) -> AuthContext:
        with self._exclusive() as acquired:
            if not acquired:
                return self.context
            self._require(AuthState.TOTP_VERIFY)
            secret = self.context.secret
            try:
                if not self._check_code(code, secret):
                    return self.context
                user_id = totp_service.user_id_from_secret(secret)
                self.context.totp_user_id = user_id
                result = self.registry.verify(self.context.owner)
                if result.is_valid:
                    self._persist_and_authenticate(secret, user_id)
                elif result.is_new_device:
                    self.context.device_name = result.device_name
                    self.context.error = None
                    self._move(AuthState.DEVICE_REGISTRATION)
                else:
                    raise StorageUnavailableError("Device authentication failed")
            except AuthError as e:
                self._fail(e)
            return self.context

    def confirm_device_registration(self) -> AuthContext:
        """Explicit consent for an unrecognized device."""
        with self._exclusive() as acquired:
            if not acquired:
                logger.info("Device registration already in progress, ignoring duplicate request")
                return self.context
            self._require(AuthState.DEVICE_REGISTRATION)
            try:
                if not self.registry.register_current_device(self.context.owner):
                    raise StorageUnavailableError("Device registration failed")
                self._persist_and_authenticate(self.context.secret, self.context.totp_user_id)
            except AuthError as e:
                self._fail(e)
            return self.context

    def cancel_device_registration(self) -> AuthContext:
        with self._exclusive() as acquired:
            if not acquired:
                return self.context
            self._require(AuthState.DEVICE_REGISTRATION)
            self.context.device_name = None
            self._move(AuthState.TOTP_VERIFY)
            return self.context

    def start_new_enrollment(self) -> AuthContext:
        with self._exclusive() as acquired:
            if not acquired:
                return self.context
            self._require(AuthState.MIGRATION)
            try:
                migrate_from_legacy_storage(self.durable)
                self._new_pending_secret()
                self._move(AuthState.TOTP_SETUP)
            except AuthError as e:
                self._fail(e)
            return self.context

    def use_existing_secret(self, text: str) -> AuthContext:
        with self._exclusive() as acquired:
            if not acquired:
                return self.context
            self._require(AuthState.MIGRATION)
            try:
                secret = totp_service.parse_secret(text)
            except InvalidSecretError as e:
                self.context.error = e.user_message
                return self.context
            try:
                migrate_from_legacy_storage(self.durable)
                self.context.secret = secret
                self.context.error = None
                self._move(AuthState.TOTP_VERIFY)
            except AuthError as e:
                self._fail(e)
            return self.context

    def cancel(self) -> AuthContext:
        """Abandon the attempt; durable stores stay untouched."""
        with self._exclusive() as acquired:
            if not acquired:
                return self.context
            if self.context.state is not AuthState.AUTHENTICATED:
                logger.info("Sign-in attempt abandoned")
                self.context = AuthContext()
            return self.context

    def _end_session(self) -> None:
        self.sessions.clear_session()
        self.deriver.clear_cache()
        self.context = AuthContext()

    def logout(self) -> AuthContext:
        """Clear the session only; the encrypted secret stays for the next sign-in."""
        with self._exclusive() as acquired:
            if not acquired:
                return self.context
            self._end_session()
            logger.info("Logout completed")
            return self.context

    def reset(self) -> AuthContext:
        """Forget everything: enhanced data, legacy and device-bound entries and the session."""
        with self._exclusive() as acquired:
            if not acquired:
                return self.context
            try:
                self.encrypted.clear_enhanced_data()
                for key in LEGACY_KEYS + DEVICE_BOUND_KEYS:
                    self.durable.remove(key)
            except AuthError as e:
                self._fail(e)
                return self.context
            self._end_session()
            logger.info("Local authentication data reset")
            return self.context

    # authenticated operations

    def list_devices(self) -> List[DeviceInfo]:
        self._require(AuthState.AUTHENTICATED)
        return self.registry.list_devices(self.context.owner)

    def remove_device(self, device_id: str) -> bool:
        self._require(AuthState.AUTHENTICATED)
        return self.registry.remove_device(self.context.owner, device_id)

    @property
    def partition_key(self) -> Optional[str]:
        """Pseudonymous user id handed to downstream data stores."""
        if self.context.state is AuthState.AUTHENTICATED:
            return self.context.totp_user_id
        return None

    def snapshot(self) -> AuthStateResponse:
        ctx = self.context
        pending = ctx.pending_secret if ctx.state is AuthState.TOTP_SETUP else None
        return AuthStateResponse(
            state=ctx.state.value,
            error=ctx.error,
            device_name=ctx.device_name,
            provisioning_uri=pending.provisioning_uri if pending else None,
            formatted_secret=totp_service.format_secret(pending.base32) if pending else None,
            partition_key=self.partition_key,
            display_name=ctx.identity.display_name if ctx.identity else None,
        )
