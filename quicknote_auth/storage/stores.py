"""Key-value storage backends consumed by the authentication core.

Durable storage survives restarts on the same device (SQL). Volatile storage
lives for one browsing session: process memory, or redis keys that expire
with the session TTL.
"""
import logging
import threading
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Callable, Dict, Optional

import redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from quicknote_auth.core.config import SESSION_EXPIRY
from quicknote_auth.core.exceptions import StorageUnavailableError
from quicknote_auth.db import crud

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def remove(self, key: str) -> None:
        ...

    def contains(self, key: str) -> bool:
        return self.get(key) is not None


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class SQLKeyValueStore(KeyValueStore):
    """Durable store on the kv_entries table, one short session per call."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _run(self, operation, *args):
        db = self.session_factory()
        try:
            return operation(db, *args)
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageUnavailableError(f"Durable storage failure: {e}") from e
        finally:
            db.close()

    def get(self, key: str) -> Optional[str]:
        return self._run(crud.get_value, key)

    def set(self, key: str, value: str) -> None:
        self._run(crud.set_value, key, value)

    def remove(self, key: str) -> None:
        self._run(crud.remove_value, key)


class RedisKeyValueStore(KeyValueStore):
    """Volatile store; every key expires after the session TTL."""

    def __init__(self, redis_url: str = "redis://localhost:6379/0", expiry: timedelta = SESSION_EXPIRY,
                 prefix: str = "quicknote:", client=None):
        self.redis = client or redis.from_url(redis_url)
        self.expiry = expiry
        self.prefix = prefix

    def get(self, key: str) -> Optional[str]:
        try:
            value = self.redis.get(f"{self.prefix}{key}")
        except redis.RedisError as e:
            raise StorageUnavailableError(f"Volatile storage failure: {e}") from e
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else value

    def set(self, key: str, value: str) -> None:
        try:
            self.redis.setex(f"{self.prefix}{key}", int(self.expiry.total_seconds()), value)
        except redis.RedisError as e:
            raise StorageUnavailableError(f"Volatile storage failure: {e}") from e

    def remove(self, key: str) -> None:
        try:
            self.redis.delete(f"{self.prefix}{key}")
        except redis.RedisError as e:
            raise StorageUnavailableError(f"Volatile storage failure: {e}") from e


def create_volatile_store(redis_url: str = "") -> KeyValueStore:
    if redis_url:
        logger.info("Using redis for volatile session storage")
        return RedisKeyValueStore(redis_url)
    return MemoryKeyValueStore()
