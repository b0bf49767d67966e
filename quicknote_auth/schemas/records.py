from enum import Enum
from pydantic import AwareDatetime, BaseModel
from typing import Optional


class EncryptionScheme(str, Enum):
    LEGACY = "legacy"                  # plaintext or fingerprint-only ciphertext of old releases
    DEVICE_BOUND = "device_bound"      # fingerprint-only key, basic mode
    IDENTITY_BOUND = "identity_bound"  # identity + fingerprint + stable element


class MigrationAction(str, Enum):
    KEEP = "keep"
    DELETE_AND_REENROLL = "delete_and_reenroll"


class EncryptedRecord(BaseModel):
    scheme: EncryptionScheme
    salt: str          # base64
    iv: str            # base64
    ciphertext: str    # base64
    mac: str           # base64 HMAC-SHA256 over scheme|salt|iv|ciphertext


class AuthSession(BaseModel):
    subject_id: str
    identity_binding_id: Optional[str] = None
    issued_at: AwareDatetime   # ISO-8601 with offset; naive timestamps are rejected
