"""
Tiered pricing driven by a cumulative sales counter.

The tier document is a JSON file::

    {"salesCount": 12, "pricingTiers": [{"name": "Early Bird", "maxCopies": 50, "price": 4.99}, ...]}

Tiers are walked in order; each covers ``maxCopies`` sales after the tiers
before it. Past the last tier the last price stays in effect.
"""

import json
import logging
import os
import threading
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Sequence

from keyshop.errors import MalformedPoolDocument
from keyshop.models import PricingTier

logger = logging.getLogger(__name__)

DEFAULT_TIER_LABEL = 'Full Price'


def format_price(value: Any) -> str:
    """Two-decimal price string. Unparseable values are returned unchanged."""
    try:
        return str(Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError):
        return str(value)


def _tier_for(counter: int, tiers: Sequence[PricingTier]) -> Optional[PricingTier]:
    if not tiers:
        return None
    copies_so_far = 0
    for tier in tiers:
        if counter < copies_so_far + tier.max_copies:
            return tier
        copies_so_far += tier.max_copies
    return tiers[-1]


def current_price(counter: int, tiers: Sequence[PricingTier], base_price: str = '9.99') -> str:
    tier = _tier_for(counter, tiers)
    if tier is None:
        return format_price(base_price)
    return format_price(tier.price)


def current_tier_label(counter: int, tiers: Sequence[PricingTier]) -> str:
    tier = _tier_for(counter, tiers)
    if tier is None or not tier.name:
        return DEFAULT_TIER_LABEL
    return tier.name


def parse_tier_document(payload: Any) -> Dict[str, Any]:
    """Validate a decoded tier document.

    Returns ``{"salesCount": int, "pricingTiers": [PricingTier, ...]}``.

    Raises:
        MalformedPoolDocument: not an object, or tiers/count of the wrong type
    """
    if not isinstance(payload, dict):
        raise MalformedPoolDocument("Tier document must be a JSON object")
    raw_tiers = payload.get('pricingTiers') or []
    if not isinstance(raw_tiers, list):
        raise MalformedPoolDocument("pricingTiers must be a list")
    try:
        sales_count = int(payload.get('salesCount') or 0)
        tiers = [PricingTier.from_dict(t) for t in raw_tiers if isinstance(t, dict)]
    except (TypeError, ValueError) as e:
        raise MalformedPoolDocument(f"Invalid tier document: {e}")
    return {'salesCount': sales_count, 'pricingTiers': tiers}


class PricingTierEngine:
    """Owns the tier document and its sales counter."""

    def __init__(self, tiers_path: Optional[str], base_price: str = '9.99'):
        self.tiers_path = tiers_path
        self.base_price = base_price
        self._lock = threading.Lock()

    def _read_raw(self) -> Optional[Dict[str, Any]]:
        if not self.tiers_path or not os.path.exists(self.tiers_path):
            return None
        with open(self.tiers_path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def load(self) -> Dict[str, Any]:
        """Current counter and tiers; configured defaults when missing or malformed."""
        try:
            raw = self._read_raw()
            if raw is None:
                return {'salesCount': 0, 'pricingTiers': []}
            return parse_tier_document(raw)
        except (OSError, ValueError, MalformedPoolDocument) as e:
            logger.error(f"Pricing: error reading tier document: {e}")
            return {'salesCount': 0, 'pricingTiers': []}

    def price(self) -> str:
        doc = self.load()
        return current_price(doc['salesCount'], doc['pricingTiers'], self.base_price)

    def tier_label(self) -> str:
        doc = self.load()
        return current_tier_label(doc['salesCount'], doc['pricingTiers'])

    def snapshot(self) -> Dict[str, Any]:
        doc = self.load()
        tiers: List[PricingTier] = doc['pricingTiers']
        return {
            'currentPrice': current_price(doc['salesCount'], tiers, self.base_price),
            'currentTier': current_tier_label(doc['salesCount'], tiers),
            'salesCount': doc['salesCount'],
            'tiers': [t.to_dict() for t in tiers],
        }

    def increment_counter(self) -> Optional[int]:
        """Add one completed sale to the counter, in place.

        Call once per completed capture, never per order creation. Returns
        the new count, or None when there is no tier document to update.
        """
        with self._lock:
            try:
                raw = self._read_raw()
                if raw is None:
                    logger.debug("Pricing: no tier document, sales count not tracked")
                    return None
                if not isinstance(raw, dict):
                    logger.error("Pricing: tier document is not an object, sales count not updated")
                    return None
                raw['salesCount'] = int(raw.get('salesCount') or 0) + 1
                with open(self.tiers_path, 'w', encoding='utf-8') as f:
                    json.dump(raw, f, indent=2)
                return raw['salesCount']
            except (OSError, ValueError, TypeError) as e:
                logger.error(f"Pricing: error incrementing sales count: {e}")
                return None
