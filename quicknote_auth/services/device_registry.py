import json
import logging
import threading
import time
from typing import Callable, List, Optional, Union

from pydantic import ValidationError

from quicknote_auth.core.config import DEVICES_KEY, MAX_DEVICES
from quicknote_auth.core.exceptions import StorageUnavailableError
from quicknote_auth.core.logging_config import short_id
from quicknote_auth.schemas.devices import DeviceInfo, DeviceVerification, RegisteredDevices
from quicknote_auth.services.fingerprint import DeviceIdentity
from quicknote_auth.storage.stores import KeyValueStore

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def registry_key(owner) -> str:
    """Accept a plain string key or anything exposing ``registry_key``."""
    return owner if isinstance(owner, str) else owner.registry_key


class DeviceRegistry:
    """Bounded per-user list of authorized devices with LRU eviction."""

    def __init__(self, store: KeyValueStore, identity: DeviceIdentity, max_devices: int = MAX_DEVICES,
                 clock: Callable[[], int] = _now_ms):
        self.store = store
        self.identity = identity
        self.max_devices = max_devices
        self.clock = clock
        self.lock = threading.RLock()

    def _load(self) -> RegisteredDevices:
        raw = self.store.get(DEVICES_KEY)
        if not raw:
            return RegisteredDevices()
        try:
            return RegisteredDevices(users=json.loads(raw))
        except (ValueError, ValidationError):
            logger.warning("Device registry document is invalid - starting from empty registry")
            return RegisteredDevices()

    def _save(self, registry: RegisteredDevices) -> None:
        payload = {
            user: [d.model_dump(exclude={"is_current_device"}) for d in devices]
            for user, devices in registry.users.items()
        }
        self.store.set(DEVICES_KEY, json.dumps(payload))

    def is_registered(self, owner: Union[str, object]) -> bool:
        current_id = self.identity.current_device_id()
        with self.lock:
            devices = self._load().users.get(registry_key(owner), [])
        return any(d.id == current_id for d in devices)

    def register_current_device(self, owner: Union[str, object]) -> bool:
        key = registry_key(owner)
        try:
            current_id = self.identity.current_device_id()
            with self.lock:
                registry = self._load()
                devices = registry.users.setdefault(key, [])

                if any(d.id == current_id for d in devices):
                    logger.warning(f"Device already registered: {short_id(current_id)}")
                    return True

                if len(devices) >= self.max_devices:
                    # keep the most recently used, leaving exactly one free slot
                    devices.sort(key=lambda d: d.last_used_at, reverse=True)
                    evicted = devices[self.max_devices - 1:]
                    del devices[self.max_devices - 1:]
                    for d in evicted:
                        logger.info(f"Evicted least recently used device {d.name} ({short_id(d.id)})")

                now = self.clock()
                name = self.identity.display_name()
                devices.append(DeviceInfo(
                    id=current_id,
                    name=name,
                    registered_at=now,
                    last_used_at=now,
                    fingerprint=self.identity.current_fingerprint(),
                ))
                self._save(registry)

            logger.info(f"Device registered successfully: {name} ({short_id(current_id)})")
            return True
        except StorageUnavailableError as e:
            logger.error(f"Failed to register device: {e}")
            return False

    def update_last_used(self, owner: Union[str, object]) -> None:
        current_id = self.identity.current_device_id()
        with self.lock:
            registry = self._load()
            for device in registry.users.get(registry_key(owner), []):
                if device.id == current_id:
                    device.last_used_at = self.clock()
                    self._save(registry)
                    return

    def list_devices(self, owner: Union[str, object]) -> List[DeviceInfo]:
        current_id = self.identity.current_device_id()
        with self.lock:
            devices = self._load().users.get(registry_key(owner), [])
        return [d.model_copy(update={"is_current_device": d.id == current_id}) for d in devices]

    def remove_device(self, owner: Union[str, object], device_id: str) -> bool:
        key = registry_key(owner)
        with self.lock:
            registry = self._load()
            devices = registry.users.get(key, [])
            remaining = [d for d in devices if d.id != device_id]
            if len(remaining) == len(devices):
                return False
            registry.users[key] = remaining
            self._save(registry)
        logger.info(f"Device removed successfully: {short_id(device_id)}")
        return True

    def clear_all_devices(self, owner: Union[str, object]) -> bool:
        with self.lock:
            registry = self._load()
            if registry.users.pop(registry_key(owner), None) is None:
                return False
            self._save(registry)
        logger.info("All devices cleared")
        return True

    def verify(self, owner: Union[str, object]) -> DeviceVerification:
        """Access decision for the current device; unknown devices are never auto-registered."""
        try:
            if self.is_registered(owner):
                self.update_last_used(owner)
                return DeviceVerification(is_valid=True, is_new_device=False)

            device_name = self.identity.display_name()
            logger.warning(
                f"Unauthorized device access attempt: {device_name} "
                f"({short_id(self.identity.current_device_id())})"
            )
            return DeviceVerification(is_valid=False, is_new_device=True, device_name=device_name)
        except StorageUnavailableError as e:
            logger.error(f"Device auth verification failed: {e}")
            return DeviceVerification(is_valid=False, is_new_device=False)
