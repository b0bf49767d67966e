import logging
from dataclasses import dataclass
from typing import Optional

from quicknote_auth.core.exceptions import AuthError, InvalidSecretError
from quicknote_auth.core.logging_config import short_id
from quicknote_auth.core.session_manager import SessionManager
from quicknote_auth.services import totp_service
from quicknote_auth.services.crypto import DeviceBoundStore, KeyDeriver
from quicknote_auth.services.device_registry import DeviceRegistry
from quicknote_auth.services.fingerprint import DeviceIdentity, FingerprintSource
from quicknote_auth.storage.stores import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class LoginResult:
    success: bool
    requires_device_registration: bool = False
    device_name: Optional[str] = None
    error: Optional[str] = None


class BasicAuthenticator:
    """TOTP-only login without an external identity.

    The secret is encrypted under the device fingerprint alone and the session
    is a plain record, so this mode protects against casual inspection only.
    """

    def __init__(self, durable: KeyValueStore, volatile: KeyValueStore, fingerprint_source: FingerprintSource,
                 user_agent: Optional[str] = None):
        self.device = DeviceIdentity(durable, fingerprint_source, user_agent)
        self.store = DeviceBoundStore(durable, KeyDeriver(durable, fingerprint_source))
        self.registry = DeviceRegistry(durable, self.device)
        self.sessions = SessionManager(volatile)

    def _check(self, secret: str, code: str) -> Optional[str]:
        secret = totp_service.parse_secret(secret)
        if not totp_service.verify_code(code, secret):
            return None
        return secret

    def login(self, secret: str, code: str) -> LoginResult:
        try:
            secret = self._check(secret, code)
            if secret is None:
                return LoginResult(success=False, error="Invalid TOTP code")

            user_id = totp_service.user_id_from_secret(secret)
            result = self.registry.verify(user_id)
            if not result.is_valid:
                if result.is_new_device:
                    return LoginResult(success=False, requires_device_registration=True,
                                       device_name=result.device_name, error="Device not registered")
                return LoginResult(success=False, error="Device authentication failed")

            self.store.set_totp_secret(secret)
            self.store.set_totp_user_id(user_id)
            self.sessions.save_session(user_id)
            logger.info(f"Basic login successful for {short_id(user_id)}")
            return LoginResult(success=True)
        except InvalidSecretError as e:
            return LoginResult(success=False, error=e.user_message)
        except AuthError as e:
            logger.error(f"Basic login failed: {e}")
            return LoginResult(success=False, error=e.user_message)

    def register_device_and_login(self, secret: str, code: str) -> LoginResult:
        try:
            secret = self._check(secret, code)
            if secret is None:
                return LoginResult(success=False, error="Invalid TOTP code")
            user_id = totp_service.user_id_from_secret(secret)
            if not self.registry.register_current_device(user_id):
                return LoginResult(success=False, error="Failed to register device")
        except AuthError as e:
            return LoginResult(success=False, error=e.user_message)
        return self.login(secret, code)

    def stored_user_id(self) -> Optional[str]:
        return self.store.get_totp_user_id()

    def is_authenticated(self) -> bool:
        return self.sessions.is_authenticated()

    def logout(self) -> None:
        self.sessions.clear_session()
        self.store.deriver.clear_cache()
        logger.info("Basic logout completed")
