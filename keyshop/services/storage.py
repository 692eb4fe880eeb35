"""
Key-value storage backends.

All backends expose the same small contract: ``get(key)`` returning a string
or None, ``set(key, value)`` returning True on success, and ``keys(pattern)``
for enumerating the purchase ledger. Values are always strings; callers own
the JSON encoding.

Failures never propagate: they are logged and reported as None / False / [].
"""

import fnmatch
import logging
import threading
from typing import List, Optional
from urllib.parse import quote

import redis
import requests

logger = logging.getLogger(__name__)


class StorageBackend:
    """Base backend. Also serves as the 'nothing configured' fallback."""

    name = 'none'

    def get(self, key: str) -> Optional[str]:
        return None

    def set(self, key: str, value: str) -> bool:
        return False

    def keys(self, pattern: str) -> List[str]:
        return []

    @property
    def is_configured(self) -> bool:
        return False


class NullBackend(StorageBackend):
    """No key-value store configured: every read misses, every write fails."""


class RestKVBackend(StorageBackend):
    """REST key-value service (Upstash / Vercel KV compatible)."""

    name = 'rest'

    def __init__(self, base_url: str, token: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return True

    def _headers(self):
        return {'Authorization': f'Bearer {self.token}'}

    def _url(self, command: str, key: str) -> str:
        return f"{self.base_url}/{command}/{quote(key, safe='')}"

    def get(self, key: str) -> Optional[str]:
        try:
            response = requests.get(self._url('get', key), headers=self._headers(), timeout=self.timeout)
            if not response.ok:
                logger.warning(f"KV get {key}: HTTP {response.status_code}")
                return None
            result = response.json().get('result')
            if result is None or isinstance(result, str):
                return result
            return str(result)
        except requests.exceptions.RequestException as e:
            logger.error(f"KV get error: {e}")
            return None
        except ValueError as e:
            logger.error(f"KV get {key}: invalid JSON response: {e}")
            return None

    def set(self, key: str, value: str) -> bool:
        try:
            response = requests.post(
                self._url('set', key),
                headers=self._headers(),
                data=value.encode('utf-8'),
                timeout=self.timeout
            )
            if not response.ok:
                logger.warning(f"KV set {key}: HTTP {response.status_code}")
            return response.ok
        except requests.exceptions.RequestException as e:
            logger.error(f"KV set error: {e}")
            return False

    def keys(self, pattern: str) -> List[str]:
        try:
            response = requests.get(self._url('keys', pattern), headers=self._headers(), timeout=self.timeout)
            if not response.ok:
                logger.warning(f"KV keys {pattern}: HTTP {response.status_code}")
                return []
            result = response.json().get('result') or []
            return [str(k) for k in result]
        except requests.exceptions.RequestException as e:
            logger.error(f"KV keys error: {e}")
            return []
        except ValueError as e:
            logger.error(f"KV keys {pattern}: invalid JSON response: {e}")
            return []


class RedisBackend(StorageBackend):
    """Direct Redis connection.

    The client is created on first use and shared afterwards. Concurrent
    first callers wait on the same connect attempt instead of opening their
    own connections. A failed connect is not cached, so the next call retries.
    """

    name = 'redis'

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout
        self._client = None
        self._connect_lock = threading.Lock()

    @property
    def is_configured(self) -> bool:
        return True

    def get_client(self):
        """Return the shared client, connecting if needed. None when unreachable."""
        if self._client is not None:
            return self._client

        with self._connect_lock:
            if self._client is not None:
                return self._client
            try:
                client = redis.Redis.from_url(
                    self.url,
                    decode_responses=True,
                    socket_timeout=self.timeout,
                    socket_connect_timeout=self.timeout,
                )
                client.ping()
            except redis.RedisError as e:
                logger.error(f"Redis connect error: {e}")
                return None
            logger.info("Redis connection established")
            self._client = client
            return client

    def get(self, key: str) -> Optional[str]:
        client = self.get_client()
        if client is None:
            return None
        try:
            return client.get(key)
        except redis.RedisError as e:
            logger.error(f"Redis get error: {e}")
            return None

    def set(self, key: str, value: str) -> bool:
        client = self.get_client()
        if client is None:
            return False
        try:
            client.set(key, value)
            return True
        except redis.RedisError as e:
            logger.error(f"Redis set error: {e}")
            return False

    def keys(self, pattern: str) -> List[str]:
        client = self.get_client()
        if client is None:
            return []
        try:
            return list(client.scan_iter(match=pattern))
        except redis.RedisError as e:
            logger.error(f"Redis keys error: {e}")
            return []


class MemoryBackend(StorageBackend):
    """Process-local dict store. Used for development and in tests."""

    name = 'memory'

    def __init__(self):
        self.data = {}
        self._lock = threading.Lock()

    @property
    def is_configured(self) -> bool:
        return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self.data.get(key)

    def set(self, key: str, value: str) -> bool:
        with self._lock:
            self.data[key] = value
        return True

    def keys(self, pattern: str) -> List[str]:
        with self._lock:
            return [k for k in self.data if fnmatch.fnmatchcase(k, pattern)]


def select_backend(config) -> StorageBackend:
    """Pick the storage backend from configuration.

    Priority: REST key-value service (URL and token both set), then a
    direct Redis connection, then no backend at all.
    """
    url = config.get('KV_REST_API_URL')
    token = config.get('KV_REST_API_TOKEN')
    timeout = config.get('KV_TIMEOUT', 5.0)

    if url and token:
        logger.info("Storage: using REST key-value service")
        return RestKVBackend(url, token, timeout=timeout)

    if config.get('REDIS_URL'):
        logger.info("Storage: using direct Redis connection")
        return RedisBackend(config['REDIS_URL'], timeout=timeout)

    logger.warning("Storage: no key-value store configured, ledger falls back to local records")
    return NullBackend()
