import os
from datetime import timedelta
from dotenv import load_dotenv
from typing import List, Dict, Tuple

# Load environment variables from .env file
load_dotenv()

# Server settings
PROJECT_NAME: str = os.getenv("PROJECT_NAME", "QuickNote Auth")
HOST: str = os.getenv("HOST", "127.0.0.1")   # device-local service
PORT: int = int(os.getenv("PORT", 3010))
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Database URL (durable key-value storage)
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./quicknote_auth.db")

# Redis URL (volatile storage). Empty -> process memory.
REDIS_URL: str = os.getenv("REDIS_URL", "")

# TOTP settings. Changing these breaks every enrolled authenticator app.
TOTP_ISSUER: str = os.getenv("TOTP_ISSUER", "QuickNote Solo")
TOTP_DIGITS: int = 6
TOTP_STEP: int = 30        # RFC default
TOTP_WINDOW: int = 1       # ±30 s drift
TOTP_ALGORITHM: str = "SHA1"
TOTP_DEFAULT_LABEL: str = "QuickNote User"
BACKUP_CODE_COUNT: int = 10

# Key derivation. Not stored per record; changing them invalidates all ciphertext.
PBKDF2_ITERATIONS: int = 100000
PBKDF2_KEY_BYTES: int = 64          # 512-bit key material
SALT_BYTES: int = 16
STABLE_ELEMENT_BYTES: int = 32
KEY_CACHE_SIZE: int = 16            # derived keys kept in memory

# Device registry
MAX_DEVICES: int = 10

# Session settings
SESSION_EXPIRY: timedelta = timedelta(hours=24)

# Durable/volatile storage key names
DEVICE_ID_KEY: str = "device_id_persistent"
DEVICES_KEY: str = "registered_devices_encrypted"
STABLE_ELEMENT_KEY: str = "enhanced_stable_session_id"
SECRET_KEY_NAME: str = "totp_secret_google_encrypted"
USER_ID_KEY_NAME: str = "totp_user_id_google_encrypted"
PROFILE_KEY_NAME: str = "google_profile_encrypted"
DEVICE_SECRET_KEY_NAME: str = "totp_secret_device_encrypted"
DEVICE_USER_ID_KEY_NAME: str = "totp_user_id_device_encrypted"
DEVICE_BOUND_KEYS: Tuple[str, ...] = (DEVICE_SECRET_KEY_NAME, DEVICE_USER_ID_KEY_NAME)
ENHANCED_SESSION_KEY: str = "enhanced_auth_session"
BASIC_SESSION_KEY: str = "auth_session"

# Entries written by older releases; their presence forces migration
LEGACY_KEYS: Tuple[str, ...] = (
    "totp_secret",
    "totp_user_id",
    "totp_secret_encrypted",
    "totp_user_id_encrypted",
    "qns_salt",
)

# Rate limiting configuration - (max_attempts, window_seconds)
RATE_LIMITS: Dict[str, Tuple[int, int]] = {
    "totp": (5, 300),       # 5 wrong codes per 5 minutes
}

# Default rate limit for unknown actions - (max_attempts, window_seconds)
DEFAULT_RATE_LIMIT: Tuple[int, int] = (10, 600)  # 10 attempts per 10 minutes

# CORS settings
if ENVIRONMENT == "production":
    ALLOW_ORIGINS: List[str] = [
        origin.strip()
        for origin in os.getenv("ALLOW_ORIGINS", "").split(",")
        if origin.strip()
    ]
else:
    ALLOW_ORIGINS = [
        "http://localhost:3000",              # Local frontend
        "http://127.0.0.1:3000",
    ]

# Validate required production settings
if ENVIRONMENT == "production":
    required_vars = ['DATABASE_URL']
    missing_vars = [var for var in required_vars if not os.getenv(var)]
    if missing_vars:
        raise ValueError(f"Missing required environment variables for production: {missing_vars}")
