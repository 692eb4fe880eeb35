"""
Operator-driven key lifecycle: deactivation, reissue, bulk rotation,
validation and reporting.

Lifecycle changes never email the buyer on their own. Notification is a
separate, explicit operator action (or the ``send_notifications`` flag of a
rotation).
"""

import logging
import time
from collections import OrderedDict
from typing import Dict, List, Optional

import requests

from keyshop.errors import PoolExhausted, RotationCapacityError
from keyshop.models import (
    PurchaseRecord,
    RotationResult,
    ValidationResult,
    normalize_email,
    normalize_key,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

REISSUE_ORDER_PREFIX = 'MANUAL-REISSUE-'


class KeyLifecycleManager:
    """Deactivates, reissues and rotates keys on behalf of an operator."""

    def __init__(self, allocation, pool, ledger, notifier=None,
                 validate_url: Optional[str] = None, timeout: float = 10.0,
                 default_product: str = 'BudgetXT'):
        self.allocation = allocation
        self.pool = pool
        self.ledger = ledger
        self.notifier = notifier
        self.validate_url = validate_url
        self.timeout = timeout
        self.default_product = default_product

    # ------------------------------------------------------------------
    # Deactivation
    # ------------------------------------------------------------------

    def deactivate_key(self, key: str) -> bool:
        """Revoke ``key``. Idempotent; returns False if the store write failed."""
        key = normalize_key(key)
        stored = self.ledger.deactivated.add(key)
        if stored:
            logger.info(f"Lifecycle: key {key} deactivated")
        else:
            logger.error(f"Lifecycle: could not store deactivation of {key}")
        return stored

    def deactivate_and_reissue(self, email: str, old_key: str, product: str) -> Dict[str, object]:
        """Revoke ``old_key`` and give ``email`` a fresh key in its place.

        The matching purchase record gets the new key and a fresh timestamp.
        With no matching record a synthetic one is appended instead.

        Raises:
            PoolExhausted: no fresh key available
        """
        old_key = normalize_key(old_key)
        owner = normalize_email(email)

        with self.allocation.exclusive():
            new_key = self.allocation.claim_next_key()
            if new_key is None:
                raise PoolExhausted()

            deactivated = self.deactivate_key(old_key)

            now = utc_now_iso()
            records = self.ledger.list_for(owner)
            replaced = False
            for record in records:
                if record.license_key == old_key:
                    record.license_key = new_key
                    record.created_at = now
                    replaced = True

            if replaced:
                stored = self.ledger.replace_records(owner, records)
                if self.ledger.local_file is not None:
                    changed = self.ledger.local_file.replace_keys({old_key: new_key}, refresh_created_at=now)
                    stored = stored or changed > 0
            else:
                logger.warning(f"Lifecycle: no record of {old_key} for {owner}, appending a reissue record")
                stored = self.ledger.append(PurchaseRecord(
                    email=email.strip(),
                    license_key=new_key,
                    product=product,
                    order_id=f"{REISSUE_ORDER_PREFIX}{int(time.time() * 1000)}",
                    created_at=now,
                ))

        if not stored:
            logger.error(f"Lifecycle: reissued key {new_key} for {owner} but the ledger write failed")

        return {'new_key': new_key, 'replaced': replaced, 'recorded': bool(stored),
                'deactivated': deactivated}

    # ------------------------------------------------------------------
    # Bulk rotation
    # ------------------------------------------------------------------

    def rotate_all(self, send_notifications: bool = False) -> RotationResult:
        """Give every outstanding purchase a fresh, never-issued key.

        All or nothing: when the pool cannot cover every record, nothing is
        written and RotationCapacityError is raised. On success the issued
        key index holds exactly the new keys; old keys are orphaned unless
        deactivated separately. An email whose rewrite fails keeps its old
        keys, which stay in the issued index and the local record file.
        """
        result = RotationResult()

        with self.allocation.exclusive():
            all_records = self.ledger.all_records()
            total = sum(len(records) for records in all_records.values())
            if total == 0:
                logger.info("Lifecycle: no purchases found to rotate")
                return result

            pool = self.pool.load_pool()
            previously_issued = self.pool.issued_keys() | self.allocation.handed_out()
            for records in all_records.values():
                previously_issued.update(r.license_key for r in records)
            available = [k for k in pool if k not in previously_issued]

            if len(available) < total:
                logger.error(f"Lifecycle: rotation aborted, need {total} keys, have {len(available)}")
                raise RotationCapacityError(total, len(available))

            remaining = iter(available)
            updated: Dict[str, List[PurchaseRecord]] = OrderedDict()
            new_issued = []
            for email, records in all_records.items():
                updated[email] = []
                for record in records:
                    new_key = next(remaining)
                    result.assignments[record.license_key] = new_key
                    new_issued.append(new_key)
                    updated[email].append(PurchaseRecord(
                        email=record.email or email,
                        license_key=new_key,
                        product=record.product,
                        order_id=record.order_id,
                        created_at=record.created_at,
                    ))

            for email, records in updated.items():
                if not self.ledger.replace_records(email, records):
                    logger.error(f"Lifecycle: could not write rotated records for {email}")
                    result.failed_emails.append(email)

            # Emails whose rewrite failed still hold their old keys.
            kept_old = [r.license_key for email in result.failed_emails for r in all_records[email]]
            for email in result.failed_emails:
                updated.pop(email)
            applied = {
                r.license_key: assigned.license_key
                for email, records in updated.items()
                for r, assigned in zip(all_records[email], records)
            }
            result.assignments = applied

            if not self.ledger.issued.replace(new_issued + kept_old):
                logger.error("Lifecycle: could not replace the issued key index after rotation")
            self.allocation.remember(new_issued)

            if self.ledger.local_file is not None:
                self.ledger.local_file.replace_keys(applied)

            result.rotated = sum(len(records) for records in updated.values())

        if send_notifications:
            for email, records in updated.items():
                for record in records:
                    if self.allocation.notify(email, record.license_key, record.product):
                        result.emails_sent += 1

        logger.info(f"Lifecycle: rotated {result.rotated} keys, {result.emails_sent} emails sent")
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_active_keys(self) -> List[Dict[str, object]]:
        deactivated = set(self.ledger.deactivated.members())
        items = []
        for email, records in self.ledger.all_records().items():
            for record in records:
                items.append({
                    'email': email,
                    'product': record.product or 'Unknown',
                    'licenseKey': record.license_key,
                    'date': record.created_at or None,
                    'orderId': record.order_id,
                    'deactivated': record.license_key in deactivated,
                })
        return items

    def _remote_accepts(self, key: str) -> bool:
        if not self.validate_url:
            return False
        try:
            response = requests.post(self.validate_url, json={'key': key}, timeout=self.timeout)
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            return bool(response.ok and isinstance(payload, dict) and payload.get('valid'))
        except requests.exceptions.RequestException as e:
            logger.error(f"Lifecycle: remote key validation error: {e}")
            return False

    def validate_key(self, key: str) -> ValidationResult:
        """Is ``key`` a live license key?

        Deactivated keys are rejected first. Keys found in the ledger report
        their owner; otherwise the remote validator and then the pool decide.
        """
        key = normalize_key(key)
        if not key:
            return ValidationResult(valid=False, reason='License key is required')

        if key in self.ledger.deactivated.members():
            return ValidationResult(valid=False, reason='License key deactivated')

        record = self.ledger.find_by_key(key)
        if record is not None:
            return ValidationResult(valid=True, email=record.email, product=record.product,
                                    created_at=record.created_at)

        if key in self.ledger.issued.members() or key in self.allocation.handed_out():
            return ValidationResult(valid=True, product=self.default_product)

        if self._remote_accepts(key) or self.pool.contains(key):
            return ValidationResult(valid=True, product=self.default_product)

        return ValidationResult(valid=False, reason='License key not found')

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def notify(self, email: str, license_key: str, product: str) -> bool:
        return self.allocation.notify(email, normalize_key(license_key), product)

    def send_key_report(self, to_address: str) -> int:
        """Email the active-key table to ``to_address``. Returns the row count.

        Raises whatever the notifier raises; a skipped send raises RuntimeError.
        """
        rows = self.list_active_keys()
        body = "\n".join(
            f"{r['email']} | {r['product']} | {r['licenseKey']} | {r['date'] or ''}"
            + (" | DEACTIVATED" if r['deactivated'] else '')
            for r in rows
        )
        if self.notifier is None:
            raise RuntimeError('SMTP not configured')
        result = self.notifier.send_generic_email(to_address, 'Active License Keys Report',
                                                  body or 'No active keys found.')
        if result.get('skipped'):
            raise RuntimeError('SMTP not configured')
        return len(rows)
