"""
Purchase ledger.

Purchases are stored per buyer as one JSON list under ``purchases:<email>``
(email lower-cased and trimmed). Issued and deactivated keys are kept as
JSON lists under ``issued_keys`` and ``deactivated_keys``.

Every write is a read-modify-write of a whole blob. Two writers touching the
same blob at the same time can lose an update; callers that need stronger
guarantees hold AllocationService's locks around the read and the write.

A local JSON file mirrors every appended record for offline and development
use. It lags the key-value store and is never authoritative.
"""

import json
import logging
import os
import threading
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Set

from keyshop.models import PurchaseRecord, normalize_email, normalize_key

logger = logging.getLogger(__name__)

PURCHASES_PREFIX = 'purchases:'
ISSUED_KEYS = 'issued_keys'
DEACTIVATED_KEYS = 'deactivated_keys'


def _decode_list(raw: Optional[str], what: str) -> list:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.error(f"Ledger: stored {what} is not valid JSON: {e}")
        return []
    if not isinstance(value, list):
        logger.error(f"Ledger: stored {what} is not a list")
        return []
    return value


class KeySetIndex:
    """A set of upper-cased keys stored as one JSON list."""

    def __init__(self, backend, storage_key: str):
        self.backend = backend
        self.storage_key = storage_key

    def members(self) -> List[str]:
        raw = self.backend.get(self.storage_key)
        keys = [normalize_key(k) for k in _decode_list(raw, self.storage_key)]
        return [k for k in keys if k]

    def contains(self, key: str) -> bool:
        return normalize_key(key) in self.members()

    def add(self, key: str) -> bool:
        """Add ``key`` unless already present. True when stored (or already there)."""
        key = normalize_key(key)
        current = self.members()
        if key in current:
            return True
        current.append(key)
        return self.backend.set(self.storage_key, json.dumps(current))

    def replace(self, keys: Iterable[str]) -> bool:
        return self.backend.set(self.storage_key, json.dumps([normalize_key(k) for k in keys]))


class LocalRecordFile:
    """JSON list of purchase records on local disk."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _ensure(self):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if not os.path.exists(self.path):
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump([], f, indent=2)

    def _read(self) -> list:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"LocalRecordFile: error reading {self.path}: {e}")
            return []
        return data if isinstance(data, list) else []

    def _write(self, records: list):
        self._ensure()
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(records, f, indent=2)

    def records(self) -> List[PurchaseRecord]:
        return [PurchaseRecord.from_dict(r) for r in self._read() if isinstance(r, dict)]

    def license_keys(self) -> Set[str]:
        return {r.license_key for r in self.records() if r.license_key}

    def append(self, record: PurchaseRecord) -> bool:
        with self._lock:
            try:
                existing = self._read()
                existing.append(record.to_dict())
                self._write(existing)
                return True
            except OSError as e:
                logger.warning(f"LocalRecordFile: could not save record: {e}")
                return False

    def replace_keys(self, mapping: Dict[str, str], refresh_created_at: Optional[str] = None) -> int:
        """Swap license keys per ``mapping`` (old -> new). Returns records changed."""
        with self._lock:
            existing = self._read()
            changed = 0
            for row in existing:
                if not isinstance(row, dict):
                    continue
                old = normalize_key(row.get('licenseKey'))
                if old in mapping:
                    row['licenseKey'] = mapping[old]
                    if refresh_created_at:
                        row['createdAt'] = refresh_created_at
                    changed += 1
            if changed:
                try:
                    self._write(existing)
                except OSError as e:
                    logger.warning(f"LocalRecordFile: could not rewrite records: {e}")
                    return 0
            return changed


class PurchaseLedger:
    """Per-email purchase records plus the issued/deactivated key indexes."""

    def __init__(self, backend, local_file: Optional[LocalRecordFile] = None):
        self.backend = backend
        self.local_file = local_file
        self.issued = KeySetIndex(backend, ISSUED_KEYS)
        self.deactivated = KeySetIndex(backend, DEACTIVATED_KEYS)

    @staticmethod
    def storage_key(email: str) -> str:
        return f"{PURCHASES_PREFIX}{normalize_email(email)}"

    def _load(self, email: str) -> List[PurchaseRecord]:
        raw = self.backend.get(self.storage_key(email))
        rows = _decode_list(raw, self.storage_key(email))
        return [PurchaseRecord.from_dict(r, email=normalize_email(email)) for r in rows if isinstance(r, dict)]

    def append(self, record: PurchaseRecord) -> bool:
        """Append a purchase to its owner's list.

        Returns True when the record was confirmed by the key-value store or
        the local record file. A record without an email is refused: it could
        never be looked up again.
        """
        if not record.email or not normalize_email(record.email):
            logger.warning("Ledger: no email in record, skipping storage")
            return False

        record.license_key = normalize_key(record.license_key)
        email = normalize_email(record.email)
        record.email = email
        logger.info(f"Ledger: saving purchase for {email}: key={record.license_key} "
                    f"product={record.product} order={record.order_id}")

        purchases = self._load(email)
        purchases.append(record)
        stored = self.backend.set(self.storage_key(email), json.dumps([p.to_dict() for p in purchases]))
        if stored:
            logger.info(f"Ledger: purchase saved for {email}")
        elif self.backend.is_configured:
            logger.error(f"Ledger: could not write purchases for {email} to the key-value store")

        # Advisory index; failure here does not undo the purchase write.
        if self.backend.is_configured and not self.issued.add(record.license_key):
            logger.error(f"Ledger: could not mark {record.license_key} as issued")

        saved_locally = False
        if self.local_file is not None:
            saved_locally = self.local_file.append(record)

        return stored or saved_locally

    def list_for(self, email: str) -> List[PurchaseRecord]:
        """Records owned by ``email``; falls back to the local record file."""
        email = normalize_email(email)
        if not email:
            return []
        purchases = self._load(email)
        if purchases or self.local_file is None:
            return purchases
        return [r for r in self.local_file.records() if normalize_email(r.email) == email]

    def find(self, email: str, license_key: str) -> Optional[PurchaseRecord]:
        key = normalize_key(license_key)
        for record in self.list_for(email):
            if record.license_key == key:
                return record
        return None

    def find_by_key(self, license_key: str) -> Optional[PurchaseRecord]:
        """Owner record of ``license_key`` from the local record file, if any."""
        if self.local_file is None:
            return None
        key = normalize_key(license_key)
        for record in self.local_file.records():
            if record.license_key == key:
                return record
        return None

    def replace_records(self, email: str, records: List[PurchaseRecord]) -> bool:
        return self.backend.set(self.storage_key(email), json.dumps([r.to_dict() for r in records]))

    def emails(self) -> List[str]:
        return sorted(k[len(PURCHASES_PREFIX):] for k in self.backend.keys(f"{PURCHASES_PREFIX}*"))

    def all_records(self) -> Dict[str, List[PurchaseRecord]]:
        """Every buyer's records, emails sorted, records in insertion order."""
        result = OrderedDict()
        for email in self.emails():
            records = self._load(email)
            if records:
                result[email] = records
        return result
