import base64
import binascii
import hashlib
import io
import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Final, List, Optional, Union

import pyotp
import qrcode

from quicknote_auth.core.config import (
    TOTP_ISSUER, TOTP_DIGITS, TOTP_STEP, TOTP_WINDOW, TOTP_ALGORITHM,
    TOTP_DEFAULT_LABEL, BACKUP_CODE_COUNT,
)
from quicknote_auth.core.exceptions import EncodingError, InvalidSecretError

logger = logging.getLogger(__name__)

_STEP:   Final[int] = TOTP_STEP
_DIGITS: Final[int] = TOTP_DIGITS
_WINDOW: Final[int] = TOTP_WINDOW

# Returned by generate_code for unusable secrets; fails the digit check in verify_code
INVALID_CODE: Final[str] = "-" * _DIGITS

_CODE_PATTERN = re.compile(r"^[0-9]{6}$")
_BASE32_PATTERN = re.compile(r"^[A-Z2-7]+=*$")

Timestamp = Union[int, float, datetime]


@dataclass(frozen=True)
class TOTPSecret:
    base32: str
    provisioning_uri: Optional[str] = None

    @property
    def raw(self) -> bytes:
        return pyotp.TOTP(self.base32).byte_secret()

    @property
    def hex(self) -> str:
        return self.raw.hex()


def _totp(secret: str) -> pyotp.TOTP:
    return pyotp.TOTP(secret, digits=_DIGITS, interval=_STEP)


def provisioning_uri(secret: str, label: str, issuer: str = TOTP_ISSUER) -> str:
    uri = _totp(secret).provisioning_uri(name=label, issuer_name=issuer)
    # pyotp leaves out default parameters; some authenticator apps want them spelled out
    return f"{uri}&algorithm={TOTP_ALGORITHM}&digits={_DIGITS}&period={_STEP}"


def generate_secret(label: str = TOTP_DEFAULT_LABEL) -> TOTPSecret:
    """New 160-bit secret plus its otpauth:// URI. Nothing is persisted."""
    seed = pyotp.random_base32()
    return TOTPSecret(base32=seed, provisioning_uri=provisioning_uri(seed, label or TOTP_DEFAULT_LABEL))


def generate_provisioning_image(secret: TOTPSecret) -> bytes:
    """Render the provisioning URI as a PNG QR code."""
    if not secret.provisioning_uri:
        raise EncodingError("Provisioning URI is required for QR code generation")

    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(secret.provisioning_uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def generate_provisioning_data_url(secret: TOTPSecret) -> str:
    png = generate_provisioning_image(secret)
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


def generate_code(secret: str, at_time: Optional[Timestamp] = None) -> str:
    try:
        totp = _totp(secret)
        return totp.now() if at_time is None else totp.at(at_time)
    except (ValueError, TypeError) as e:
        logger.warning(f"TOTP code generation failed: {type(e).__name__}")
        return INVALID_CODE


def verify_code(candidate: str, secret: str, at_time: Optional[Timestamp] = None) -> bool:
    """Return True if candidate is valid for the current step ±1."""
    if not isinstance(candidate, str):
        return False
    candidate = "".join(candidate.split())
    if not _CODE_PATTERN.match(candidate):
        return False

    try:
        # pyotp compares each window with hmac.compare_digest
        return _totp(secret).verify(candidate, for_time=at_time, valid_window=_WINDOW)
    except (ValueError, TypeError, binascii.Error) as e:
        logger.warning(f"TOTP verification failed closed: {type(e).__name__}")
        return False


def self_test(secret: str) -> bool:
    """Generate and verify the current code; False for unusable secrets."""
    return verify_code(generate_code(secret), secret)


def user_id_from_secret(secret: str) -> str:
    """Pseudonymous id so the secret itself is never a lookup key."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]


def normalize_secret(text: str) -> str:
    return "".join(text.split()).upper()


def is_valid_secret(text: str) -> bool:
    secret = normalize_secret(text or "")
    if len(secret) < 16 or not _BASE32_PATTERN.match(secret):
        return False
    return generate_code(secret) != INVALID_CODE


def parse_secret(text: str) -> str:
    """Validate a manually entered secret, returning its canonical form."""
    if not is_valid_secret(text):
        raise InvalidSecretError("Secret is not valid base32")
    return normalize_secret(text)


def format_secret(secret: str) -> str:
    return " ".join(secret[i:i + 4] for i in range(0, len(secret), 4))


def time_remaining(at_time: Optional[float] = None) -> int:
    now = int(time.time() if at_time is None else at_time)
    return _STEP - (now % _STEP)


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    return [secrets.token_hex(4).upper() for _ in range(count)]
