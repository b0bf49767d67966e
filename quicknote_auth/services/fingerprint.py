"""Device fingerprint and persistent device id.

The fingerprint is best-effort entropy for key derivation and may drift
after OS or interpreter updates. The device id is random, persisted at first
use and is what the device registry keys on.
"""
import hashlib
import locale
import logging
import os
import platform
import secrets
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional

from user_agents import parse

from quicknote_auth.core.config import DEVICE_ID_KEY
from quicknote_auth.core.logging_config import short_id
from quicknote_auth.storage.stores import KeyValueStore

logger = logging.getLogger(__name__)


class FingerprintSource(ABC):
    @abstractmethod
    def digest(self) -> str:
        """Irreversible digest of the environment signals."""


class StaticFingerprintSource(FingerprintSource):
    def __init__(self, value: str):
        self.value = value

    def digest(self) -> str:
        return self.value


class EnvironmentFingerprintSource(FingerprintSource):
    """Fingerprint from platform, locale, timezone and CPU signals.

    ``extra_signals`` lets a local frontend contribute what only it can see
    (user agent, screen geometry, touch points). They are sorted by name so
    ordering of the mapping does not matter.
    """

    def __init__(self, extra_signals: Optional[Dict[str, str]] = None):
        self.extra_signals = dict(extra_signals or {})
        self._cached: Optional[str] = None

    def signals(self) -> list:
        uname = platform.uname()
        lang, encoding = locale.getlocale()
        return [
            uname.system,
            uname.release,
            uname.machine,
            uname.processor,
            str(os.cpu_count() or 0),
            lang or "",
            encoding or "",
            "/".join(time.tzname),
            str(time.timezone),
            platform.python_implementation(),
        ] + [f"{k}={v}" for k, v in sorted(self.extra_signals.items())]

    def digest(self) -> str:
        # Stable for the lifetime of this source
        if self._cached is None:
            self._cached = hashlib.sha512("|".join(self.signals()).encode("utf-8")).hexdigest()
        return self._cached


_OS_NAMES = {"Mac OS X": "macOS", "Other": "Unknown OS"}


def describe_user_agent(user_agent: str) -> str:
    """'<OS> - <Browser>' from the parsed user agent"""
    ua = parse(user_agent or "")
    os_name = _OS_NAMES.get(ua.os.family, ua.os.family)
    # "Chrome Mobile" / "Mobile Safari" name the same browser as on desktop
    browser = ua.browser.family.replace("Mobile", "").strip()
    if not browser or browser == "Other":
        browser = "Unknown Browser"
    return f"{os_name} - {browser}"


class DeviceIdentity:
    def __init__(self, store: KeyValueStore, source: FingerprintSource, user_agent: Optional[str] = None):
        self.store = store
        self.source = source
        self.user_agent = user_agent

    def current_fingerprint(self) -> str:
        return self.source.digest()

    def current_device_id(self) -> str:
        device_id = self.store.get(DEVICE_ID_KEY)
        if not device_id:
            material = f"{self.current_fingerprint()}|{time.time_ns()}|{secrets.token_hex(16)}"
            device_id = hashlib.sha256(material.encode("utf-8")).hexdigest()
            self.store.set(DEVICE_ID_KEY, device_id)
            logger.info(f"New device ID generated: {short_id(device_id)}")
        return device_id

    def display_name(self) -> str:
        if self.user_agent:
            return describe_user_agent(self.user_agent)
        system = platform.system()
        os_name = {"Darwin": "macOS"}.get(system, system or "Unknown OS")
        return f"{os_name} - Python"
