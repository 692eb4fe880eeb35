"""
License-key storefront services.

Storage backend selection happens once here; every service receives its
collaborators explicitly.
"""

from dataclasses import dataclass
from typing import Optional

from keyshop.services.storage import StorageBackend, select_backend
from keyshop.services.key_pool import KeyPool
from keyshop.services.ledger import LocalRecordFile, PurchaseLedger
from keyshop.services.pricing import PricingTierEngine
from keyshop.services.allocation import AllocationService
from keyshop.services.lifecycle import KeyLifecycleManager
from keyshop.utils.mailer import KeyMailer


@dataclass
class Services:
    backend: StorageBackend
    pool: KeyPool
    ledger: PurchaseLedger
    pricing: PricingTierEngine
    notifier: KeyMailer
    allocation: AllocationService
    lifecycle: KeyLifecycleManager


def build_services(config, backend: Optional[StorageBackend] = None, notifier=None) -> Services:
    """Wire the services from a config mapping (``app.config`` or a dict)."""
    backend = backend or select_backend(config)

    local_file = None
    if config.get('LOCAL_RECORDS_ENABLED') and config.get('RECORDS_FILE'):
        local_file = LocalRecordFile(config['RECORDS_FILE'])

    ledger = PurchaseLedger(backend, local_file=local_file)
    pool = KeyPool(
        local_path=config.get('KEYS_LOCAL_PATH'),
        remote_url=config.get('KEYS_REMOTE_URL'),
        ledger=ledger,
        timeout=config.get('POOL_FETCH_TIMEOUT', 10.0),
    )
    pricing = PricingTierEngine(config.get('TIERS_PATH'), base_price=config.get('PRODUCT_PRICE', '9.99'))
    notifier = notifier or KeyMailer(config)
    allocation = AllocationService(pool, ledger, pricing, notifier=notifier)
    lifecycle = KeyLifecycleManager(
        allocation,
        pool,
        ledger,
        notifier=notifier,
        validate_url=config.get('KEYS_VALIDATE_URL'),
        timeout=config.get('POOL_FETCH_TIMEOUT', 10.0),
    )
    return Services(
        backend=backend,
        pool=pool,
        ledger=ledger,
        pricing=pricing,
        notifier=notifier,
        allocation=allocation,
        lifecycle=lifecycle,
    )


__all__ = [
    'Services',
    'build_services',
    'KeyPool',
    'PurchaseLedger',
    'PricingTierEngine',
    'AllocationService',
    'KeyLifecycleManager',
]
