"""
License key pool.

The pool is a closed, externally provisioned list of valid keys. It is read
from a local JSON document when one exists, otherwise fetched from a remote
URL. Both a bare JSON array and an object with a ``keys`` array are
accepted; the shape is decided once in ``parse_pool_document``.
"""

import json
import logging
import os
import uuid
from typing import Any, Iterable, List, Optional, Set

import requests

from keyshop.errors import MalformedPoolDocument
from keyshop.models import PoolDocument, normalize_key

logger = logging.getLogger(__name__)


def parse_pool_document(payload: Any) -> PoolDocument:
    """Turn a decoded pool payload into a PoolDocument.

    Raises:
        MalformedPoolDocument: payload is neither a list nor ``{"keys": [...]}``
    """
    if isinstance(payload, list):
        fmt, raw_keys = 'list', payload
    elif isinstance(payload, dict) and isinstance(payload.get('keys'), list):
        fmt, raw_keys = 'wrapped', payload['keys']
    else:
        raise MalformedPoolDocument(
            f"Expected a list of keys or an object with 'keys', got {type(payload).__name__}"
        )

    keys = [normalize_key(k) for k in raw_keys if k is not None]
    return PoolDocument(format=fmt, keys=[k for k in keys if k])


def next_unissued(pool: Iterable[str], issued: Set[str]) -> Optional[str]:
    """First key of ``pool`` (in pool order) that is not in ``issued``."""
    for key in pool:
        candidate = normalize_key(key)
        if candidate and candidate not in issued:
            return candidate
    return None


def generate_offline_key() -> str:
    """Random XXXX-XXXX-XXXX-XXXX key for offline/development pools only."""
    raw = uuid.uuid4().hex.upper()
    return f"{raw[0:4]}-{raw[4:8]}-{raw[8:12]}-{raw[12:16]}"


class KeyPool:
    """Loads the pool and answers which keys are still free."""

    def __init__(self, local_path: Optional[str] = None, remote_url: Optional[str] = None,
                 ledger=None, timeout: float = 10.0):
        self.local_path = local_path
        self.remote_url = remote_url
        self.ledger = ledger
        self.timeout = timeout

    def _read_local(self) -> Optional[Any]:
        if not self.local_path or not os.path.exists(self.local_path):
            return None
        try:
            with open(self.local_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"KeyPool: error reading {self.local_path}: {e}")
            return None

    def _fetch_remote(self) -> Optional[Any]:
        if not self.remote_url:
            return None
        try:
            response = requests.get(self.remote_url, timeout=self.timeout)
            if not response.ok:
                logger.warning(f"KeyPool: remote pool returned HTTP {response.status_code}")
                return None
            return response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"KeyPool: error fetching remote pool: {e}")
            return None
        except ValueError as e:
            logger.error(f"KeyPool: remote pool is not valid JSON: {e}")
            return None

    def load_document(self) -> Optional[PoolDocument]:
        """Load the pool document, local file first. None if absent or malformed."""
        payload = self._read_local()
        if payload is None:
            payload = self._fetch_remote()
        if payload is None:
            return None

        try:
            return parse_pool_document(payload)
        except MalformedPoolDocument as e:
            logger.error(f"KeyPool: {e}")
            return None

    def load_pool(self) -> List[str]:
        document = self.load_document()
        return document.keys if document else []

    def contains(self, key: str) -> bool:
        return normalize_key(key) in set(self.load_pool())

    def issued_keys(self) -> Set[str]:
        """Every key known to be issued.

        Union of the backend issued-key index and the keys found in the local
        record file.
        """
        issued = set()
        if self.ledger is None:
            return issued
        issued.update(self.ledger.issued.members())
        if self.ledger.local_file is not None:
            issued.update(self.ledger.local_file.license_keys())
        return issued

    def next_unissued(self, issued: Optional[Set[str]] = None) -> Optional[str]:
        """Next free key against ``issued`` (defaults to ``issued_keys()``)."""
        pool = self.load_pool()
        if not pool:
            logger.warning("KeyPool: pool is empty or unreachable")
            return None
        if issued is None:
            issued = self.issued_keys()
        key = next_unissued(pool, issued)
        if key is None:
            logger.warning(f"KeyPool: all {len(pool)} keys are issued")
        return key
