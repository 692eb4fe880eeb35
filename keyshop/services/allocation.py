"""
Allocation service: turns a captured payment into an issued license key.

Per purchase:

    CAPTURED -> KEY_ALLOCATED -> RECORDED -> NOTIFIED
                 |                |
                 FAILED_NO_KEY    FAILED_PERSIST

A key, once chosen, is never offered to another purchase, even when the
ledger write could not be confirmed. Issuing the same key twice is worse
than a missing ledger row. An unrecorded purchase is still emailed to the
buyer; the outcome keeps the FAILED_PERSIST state.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Optional, Set

from keyshop.errors import PoolExhausted
from keyshop.models import (
    AllocationOutcome,
    AllocationState,
    CaptureEvent,
    PurchaseRecord,
    normalize_email,
    normalize_key,
    utc_now_iso,
)
from keyshop.utils.audit_log import log_action

logger = logging.getLogger(__name__)


class AllocationService:
    """Owns the issuance locks and the keys handed out by this process."""

    def __init__(self, pool, ledger, pricing, notifier=None):
        self.pool = pool
        self.ledger = ledger
        self.pricing = pricing
        self.notifier = notifier
        # Serializes pool scan + mark-issued.
        self._allocation_lock = threading.RLock()
        # Held by bulk rotation for its whole run.
        self._rotation_lock = threading.Lock()
        self._handed_out: Set[str] = set()

    @contextmanager
    def exclusive(self):
        """Exclusive ownership of the issued-key set (used by rotation)."""
        with self._rotation_lock:
            with self._allocation_lock:
                yield

    def handed_out(self) -> Set[str]:
        with self._allocation_lock:
            return set(self._handed_out)

    def remember(self, keys):
        with self._allocation_lock:
            self._handed_out.update(normalize_key(k) for k in keys)

    def claim_next_key(self) -> Optional[str]:
        """Pick the next unissued key and mark it issued. None when the pool is exhausted."""
        with self._allocation_lock:
            issued = self.pool.issued_keys() | self._handed_out
            key = self.pool.next_unissued(issued)
            if key is None:
                return None
            self._handed_out.add(key)
            if self.ledger.backend.is_configured and not self.ledger.issued.add(key):
                logger.error(f"Allocation: could not mark {key} as issued in the key-value store")
            return key

    def _existing_for_order(self, email: str, order_id: str) -> Optional[PurchaseRecord]:
        if not email or not order_id:
            return None
        for record in self.ledger.list_for(email):
            if record.order_id == order_id:
                return record
        return None

    def allocate(self, event: CaptureEvent, notify: bool = True) -> AllocationOutcome:
        """Allocate, record and announce a key for one captured payment.

        Raises:
            PoolExhausted: no unissued key left
        """
        email = (event.buyer_email or '').strip()
        product = event.product or 'App License'
        outcome = AllocationOutcome(
            state=AllocationState.CAPTURED,
            order_id=event.order_id,
            email=email,
            product=product,
        )

        pricing = self.pricing.snapshot()
        outcome.price = pricing['currentPrice']
        outcome.tier = pricing['currentTier']

        # The record is written under the same lock so a rotation cannot
        # interleave between choosing the key and storing it.
        with self._allocation_lock:
            existing = self._existing_for_order(normalize_email(email), event.order_id)
            if existing is not None:
                logger.info(f"Allocation: order {event.order_id} already recorded, returning its key")
                outcome.state = AllocationState.RECORDED
                outcome.license_key = existing.license_key
                outcome.recorded = True
                outcome.duplicate = True
                return outcome

            key = self.claim_next_key()
            if key is None:
                outcome.state = AllocationState.FAILED_NO_KEY
                logger.error(f"Allocation: pool exhausted for order {event.order_id}")
                log_action('POOL_EXHAUSTED', f"No key available for order {event.order_id}",
                           additional_info={'order_id': event.order_id, 'email': email}, success=False)
                raise PoolExhausted()

            outcome.state = AllocationState.KEY_ALLOCATED
            outcome.license_key = key

            record = PurchaseRecord(
                email=email,
                license_key=key,
                product=product,
                order_id=event.order_id,
                created_at=utc_now_iso(),
            )
            outcome.recorded = self.ledger.append(record)
            self.pricing.increment_counter()

        if not outcome.recorded:
            outcome.state = AllocationState.FAILED_PERSIST
            logger.error(f"Allocation: key {key} issued for order {event.order_id} but not recorded")
            log_action('KEY_UNRECORDED', f"Key issued but ledger write not confirmed for order {event.order_id}",
                       additional_info={'order_id': event.order_id, 'email': email, 'license_key': key},
                       success=False)
            # The buyer still has to receive the key they paid for.
            if notify:
                outcome.email_sent = self.notify(email, key, product)
            return outcome

        outcome.state = AllocationState.RECORDED
        log_action('KEY_ISSUED', f"Key issued for order {event.order_id}",
                   additional_info={'order_id': event.order_id, 'email': email,
                                    'product': product, 'price': outcome.price})

        if notify:
            outcome.email_sent = self.notify(email, key, product)
            outcome.state = AllocationState.NOTIFIED

        return outcome

    def notify(self, email: str, license_key: str, product: str) -> bool:
        """Best-effort receipt email. True when a message was actually sent."""
        if self.notifier is None:
            return False
        try:
            result = self.notifier.send_key(email, license_key, product) or {}
        except Exception as e:
            logger.error(f"Allocation: notification to {email} failed: {e}")
            return False
        if result.get('skipped'):
            logger.info(f"Allocation: notification to {email} skipped (mail not configured)")
            return False
        return True
