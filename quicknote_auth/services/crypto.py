"""Identity-bound key derivation and the encrypted key-value store.

Key material = PBKDF2-HMAC-SHA512(passphrase, salt, 100000 iterations, 512 bits)
where passphrase = SHA-512(identity secrets | device fingerprint | stable
session element). The first 256 bits key AES-CBC (PKCS7), the last 256 bits
key an HMAC-SHA256 over the whole record (encrypt-then-MAC).

Iterations, digest and key length are code constants and are not stored in
the record; changing them makes every existing record undecryptable.
"""
import base64
import hashlib
import hmac
import json
import logging
import os
import threading
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError

from quicknote_auth.core.config import (
    PBKDF2_ITERATIONS, PBKDF2_KEY_BYTES, SALT_BYTES, STABLE_ELEMENT_BYTES, STABLE_ELEMENT_KEY,
    SECRET_KEY_NAME, USER_ID_KEY_NAME, PROFILE_KEY_NAME, DEVICE_SECRET_KEY_NAME, DEVICE_USER_ID_KEY_NAME,
    DEVICE_BOUND_KEYS, LEGACY_KEYS, KEY_CACHE_SIZE,
)
from quicknote_auth.core.exceptions import CryptoError, IdentityRequiredError
from quicknote_auth.schemas.identity import IdentityProfile
from quicknote_auth.schemas.records import EncryptedRecord, EncryptionScheme, MigrationAction
from quicknote_auth.services.fingerprint import FingerprintSource
from quicknote_auth.storage.stores import KeyValueStore

logger = logging.getLogger(__name__)

_IV_BYTES = 16
_ENHANCED_KEYS = (SECRET_KEY_NAME, USER_ID_KEY_NAME, PROFILE_KEY_NAME)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str) -> bytes:
    data = base64.b64decode(text.encode("ascii"), validate=True)
    # reject non-canonical encodings so every character of a stored record is significant
    if _b64(data) != text:
        raise ValueError("Non-canonical base64")
    return data


def pbkdf2_sha512(passphrase: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=PBKDF2_KEY_BYTES,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


class KeyDeriver:
    """Owns the derivation algorithm and the persisted stable session element.

    Derived keys are kept in a small LRU so a record written and read back
    in the same step is derived once; ``clear_cache`` drops them all.
    """

    def __init__(self, store: KeyValueStore, fingerprint_source: FingerprintSource,
                 cache_size: int = KEY_CACHE_SIZE):
        self.store = store
        self.fingerprint_source = fingerprint_source
        self.cache_size = cache_size
        self._cache: "OrderedDict[Tuple[str, bytes], bytes]" = OrderedDict()
        self._lock = threading.Lock()

    def stable_session_element(self) -> str:
        element = self.store.get(STABLE_ELEMENT_KEY)
        if not element:
            element = os.urandom(STABLE_ELEMENT_BYTES).hex()
            self.store.set(STABLE_ELEMENT_KEY, element)
            logger.info("Stable session element generated")
        return hashlib.sha256(f"{element}|stable".encode("utf-8")).hexdigest()

    def _derive(self, passphrase: str, salt: bytes) -> bytes:
        cache_key = (hashlib.sha256(passphrase.encode("utf-8")).hexdigest(), salt)
        with self._lock:
            cached = self._cache.get(cache_key)
            if cached is not None:
                self._cache.move_to_end(cache_key)
                return cached
        try:
            key = pbkdf2_sha512(passphrase, salt)
        except (ValueError, TypeError, InvalidKey) as e:
            raise CryptoError(f"Key derivation failed: {e}") from e
        with self._lock:
            self._cache[cache_key] = key
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return key

    def identity_passphrase(self, identity: Optional[IdentityProfile]) -> str:
        if identity is None:
            raise IdentityRequiredError("Identity assertion required for enhanced encryption")
        identity_secrets = "|".join([identity.subject_id, identity.email])
        material = "|".join([
            identity_secrets,
            self.fingerprint_source.digest(),
            self.stable_session_element(),
        ])
        return hashlib.sha512(material.encode("utf-8")).hexdigest()

    def device_passphrase(self) -> str:
        return hashlib.sha512(self.fingerprint_source.digest().encode("utf-8")).hexdigest()

    def derive_identity_key(self, identity: Optional[IdentityProfile], salt: bytes) -> bytes:
        return self._derive(self.identity_passphrase(identity), salt)

    def derive_device_key(self, salt: bytes) -> bytes:
        return self._derive(self.device_passphrase(), salt)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()


def _mac(key: bytes, scheme: EncryptionScheme, salt: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    message = b"|".join([scheme.value.encode("ascii"), salt, iv, ciphertext])
    return hmac.new(key, message, hashlib.sha256).digest()


def encrypt(plaintext: str, key: bytes, salt: bytes, scheme: EncryptionScheme) -> EncryptedRecord:
    enc_key, mac_key = key[:32], key[32:]
    iv = os.urandom(_IV_BYTES)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return EncryptedRecord(
        scheme=scheme,
        salt=_b64(salt),
        iv=_b64(iv),
        ciphertext=_b64(ciphertext),
        mac=_b64(_mac(mac_key, scheme, salt, iv, ciphertext)),
    )


def decrypt(record: EncryptedRecord, key: bytes) -> str:
    """Verify the MAC, then decrypt. Any failure raises CryptoError."""
    enc_key, mac_key = key[:32], key[32:]
    try:
        salt, iv = _unb64(record.salt), _unb64(record.iv)
        ciphertext, tag = _unb64(record.ciphertext), _unb64(record.mac)
        if not hmac.compare_digest(tag, _mac(mac_key, record.scheme, salt, iv, ciphertext)):
            raise CryptoError("Record integrity check failed")
        decryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        return plaintext.decode("utf-8")
    except CryptoError:
        raise
    except (ValueError, TypeError, UnicodeDecodeError) as e:
        raise CryptoError(f"Decryption failed: {type(e).__name__}") from e


def parse_record(raw: str) -> EncryptedRecord:
    try:
        return EncryptedRecord.model_validate_json(raw)
    except ValidationError as e:
        raise CryptoError("Stored record is malformed") from e


def migration_action(scheme: EncryptionScheme) -> MigrationAction:
    """Older schemes are deleted and re-enrolled, never re-encrypted."""
    if scheme is EncryptionScheme.IDENTITY_BOUND:
        return MigrationAction.KEEP
    if scheme in (EncryptionScheme.LEGACY, EncryptionScheme.DEVICE_BOUND):
        return MigrationAction.DELETE_AND_REENROLL
    raise ValueError(f"Unknown encryption scheme: {scheme}")


def stored_schemes(store: KeyValueStore) -> Dict[str, EncryptionScheme]:
    """Scheme of every credential entry present in the store.

    Legacy keys hold plaintext or pre-record formats and count as LEGACY.
    Device-bound keys that no longer parse still count as DEVICE_BOUND;
    unparseable enhanced entries are left to fail-safe deletion on read.
    """
    schemes: Dict[str, EncryptionScheme] = {}
    for key in LEGACY_KEYS + DEVICE_BOUND_KEYS + _ENHANCED_KEYS:
        raw = store.get(key)
        if raw is None:
            continue
        if key in LEGACY_KEYS:
            schemes[key] = EncryptionScheme.LEGACY
            continue
        try:
            schemes[key] = parse_record(raw).scheme
        except CryptoError:
            if key in DEVICE_BOUND_KEYS:
                schemes[key] = EncryptionScheme.DEVICE_BOUND
    return schemes


def _entries_to_discard(store: KeyValueStore) -> List[str]:
    return [
        key for key, scheme in stored_schemes(store).items()
        if migration_action(scheme) is MigrationAction.DELETE_AND_REENROLL
    ]


def detect_legacy_data(store: KeyValueStore) -> bool:
    return bool(_entries_to_discard(store))


def migrate_from_legacy_storage(store: KeyValueStore) -> bool:
    """Delete legacy and device-bound entries. True if there was anything to migrate."""
    keys = _entries_to_discard(store)
    if not keys:
        return False
    logger.info(f"Weak credential data found ({len(keys)} entries) - discarding it, re-enrollment required")
    for key in keys:
        store.remove(key)
    return True


class EncryptedStore:
    """Identity-bound encrypted entries with fail-safe deletion."""

    scheme = EncryptionScheme.IDENTITY_BOUND

    def __init__(self, backend: KeyValueStore, deriver: KeyDeriver):
        self.backend = backend
        self.deriver = deriver

    def _key_for(self, salt: bytes, identity: Optional[IdentityProfile]) -> bytes:
        return self.deriver.derive_identity_key(identity, salt)

    def encrypt_and_store(self, key: str, plaintext: str, identity: Optional[IdentityProfile] = None) -> None:
        if identity is None and self.scheme is EncryptionScheme.IDENTITY_BOUND:
            raise IdentityRequiredError("Identity assertion required for enhanced encryption")
        salt = os.urandom(SALT_BYTES)
        derived = self._key_for(salt, identity)
        try:
            record = encrypt(plaintext, derived, salt, self.scheme)
        except (ValueError, TypeError) as e:
            logger.error(f"Encryption failed for {key}: {type(e).__name__}")
            raise CryptoError("Encryption failed") from e
        self.backend.set(key, record.model_dump_json())
        logger.debug(f"Encrypted entry stored: {key}")

    def decrypt_and_get(self, key: str, identity: Optional[IdentityProfile] = None) -> Optional[str]:
        if identity is None and self.scheme is EncryptionScheme.IDENTITY_BOUND:
            logger.warning("Identity assertion required for decryption")
            return None

        raw = self.backend.get(key)
        if raw is None:
            return None

        try:
            record = parse_record(raw)
            if record.scheme is not self.scheme:
                raise CryptoError(f"Unexpected scheme {record.scheme.value}")
            return decrypt(record, self._key_for(_unb64(record.salt), identity))
        except (CryptoError, ValueError) as e:
            # An undecryptable entry is removed so the user re-registers instead of looping
            self.backend.remove(key)
            logger.warning(f"Decryption failed - data removed: {key} ({e})")
            return None

    def contains(self, key: str) -> bool:
        return self.backend.contains(key)

    # TOTP-specific helpers

    def set_totp_secret(self, secret: str, identity: Optional[IdentityProfile] = None) -> None:
        self.encrypt_and_store(SECRET_KEY_NAME, secret, identity)

    def get_totp_secret(self, identity: Optional[IdentityProfile] = None) -> Optional[str]:
        return self.decrypt_and_get(SECRET_KEY_NAME, identity)

    def set_totp_user_id(self, user_id: str, identity: Optional[IdentityProfile] = None) -> None:
        self.encrypt_and_store(USER_ID_KEY_NAME, user_id, identity)

    def get_totp_user_id(self, identity: Optional[IdentityProfile] = None) -> Optional[str]:
        return self.decrypt_and_get(USER_ID_KEY_NAME, identity)

    def set_identity_profile(self, identity: IdentityProfile) -> None:
        self.encrypt_and_store(PROFILE_KEY_NAME, identity.model_dump_json(), identity)

    def get_identity_profile(self, identity: IdentityProfile) -> Optional[IdentityProfile]:
        data = self.decrypt_and_get(PROFILE_KEY_NAME, identity)
        if data is None:
            return None
        return IdentityProfile.model_validate(json.loads(data))

    def clear_enhanced_data(self) -> None:
        for key in (SECRET_KEY_NAME, USER_ID_KEY_NAME, PROFILE_KEY_NAME, STABLE_ELEMENT_KEY):
            self.backend.remove(key)
        self.deriver.clear_cache()
        logger.info("Enhanced encrypted data completely cleared")

    def clear_corrupted_data(self) -> None:
        for key in (SECRET_KEY_NAME, USER_ID_KEY_NAME, PROFILE_KEY_NAME) + LEGACY_KEYS:
            self.backend.remove(key)
        logger.info("Old encrypted data cleared - re-registration required")


class DeviceBoundStore(EncryptedStore):
    """Weaker basic-mode variant keyed on the device fingerprint alone."""

    scheme = EncryptionScheme.DEVICE_BOUND

    def _key_for(self, salt: bytes, identity: Optional[IdentityProfile]) -> bytes:
        return self.deriver.derive_device_key(salt)

    def set_totp_secret(self, secret: str, identity: Optional[IdentityProfile] = None) -> None:
        self.encrypt_and_store(DEVICE_SECRET_KEY_NAME, secret)

    def get_totp_secret(self, identity: Optional[IdentityProfile] = None) -> Optional[str]:
        return self.decrypt_and_get(DEVICE_SECRET_KEY_NAME)

    def set_totp_user_id(self, user_id: str, identity: Optional[IdentityProfile] = None) -> None:
        self.encrypt_and_store(DEVICE_USER_ID_KEY_NAME, user_id)

    def get_totp_user_id(self, identity: Optional[IdentityProfile] = None) -> Optional[str]:
        return self.decrypt_and_get(DEVICE_USER_ID_KEY_NAME)
