import json
import threading

import pytest

from keyshop.errors import PoolExhausted
from keyshop.models import AllocationState, CaptureEvent
from keyshop.services import build_services
from keyshop.services.storage import NullBackend

from conftest import POOL_KEYS, FlakyBackend, write_pool


def _event(n=1, email='buyer@example.com'):
    return CaptureEvent(buyer_email=email, product='BudgetXT', order_id=f'ORDER-{n}')


def test_allocate_issues_records_and_notifies(services, notifier, settings):
    outcome = services.allocation.allocate(_event())

    assert outcome.state == AllocationState.NOTIFIED
    assert outcome.license_key == POOL_KEYS[0]
    assert outcome.recorded is True
    assert outcome.email_sent is True
    assert outcome.price == '5.00'
    assert outcome.tier == 'Launch'
    assert notifier.sent == [('buyer@example.com', POOL_KEYS[0], 'BudgetXT')]

    assert services.ledger.find('buyer@example.com', POOL_KEYS[0]) is not None
    assert services.ledger.issued.contains(POOL_KEYS[0])
    with open(settings.TIERS_PATH) as f:
        assert json.load(f)['salesCount'] == 1


def test_sequential_allocations_never_repeat(services):
    keys = [services.allocation.allocate(_event(n)).license_key for n in range(len(POOL_KEYS))]
    assert keys == POOL_KEYS

    with pytest.raises(PoolExhausted):
        services.allocation.allocate(_event(99))


def test_concurrent_allocations_get_distinct_keys(services):
    results = []
    errors = []

    def buy(n):
        try:
            results.append(services.allocation.allocate(_event(n, email=f'user{n}@example.com')).license_key)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=buy, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(results) == 8
    assert len(set(results)) == 8
    assert set(results) <= set(POOL_KEYS)


def test_exhausted_pool_records_nothing(services, backend, settings):
    write_pool(settings.KEYS_LOCAL_PATH, [])

    with pytest.raises(PoolExhausted):
        services.allocation.allocate(_event())

    assert services.ledger.list_for('buyer@example.com') == []
    with open(settings.TIERS_PATH) as f:
        assert json.load(f)['salesCount'] == 0


def test_unrecorded_key_is_returned_but_never_reused(settings, notifier):
    config = settings.model_dump()
    config['LOCAL_RECORDS_ENABLED'] = False
    services = build_services(config, backend=NullBackend(), notifier=notifier)

    first = services.allocation.allocate(_event(1))
    second = services.allocation.allocate(_event(2))

    assert first.state == AllocationState.FAILED_PERSIST
    assert first.license_key == POOL_KEYS[0]
    assert first.recorded is False
    assert second.license_key == POOL_KEYS[1]
    # The buyer still receives every key that was handed out
    assert first.email_sent is True
    assert [key for _, key, _ in notifier.sent] == [POOL_KEYS[0], POOL_KEYS[1]]


def test_failed_purchase_write_still_emails_the_buyer(settings, notifier):
    config = settings.model_dump()
    config['LOCAL_RECORDS_ENABLED'] = False
    backend = FlakyBackend(failing={'purchases:buyer@example.com'})
    services = build_services(config, backend=backend, notifier=notifier)

    outcome = services.allocation.allocate(_event(1))

    assert outcome.state == AllocationState.FAILED_PERSIST
    assert outcome.recorded is False
    assert outcome.email_sent is True
    assert notifier.sent == [('buyer@example.com', outcome.license_key, 'BudgetXT')]
    # Still counted as issued so it is never handed out again
    assert services.ledger.issued.contains(outcome.license_key)


def test_stored_record_email_is_normalized(services):
    services.allocation.allocate(_event(1, email='  Buyer@Example.COM '))

    record = services.ledger.list_for('buyer@example.com')[0]
    assert record.email == 'buyer@example.com'
    assert services.ledger.local_file.records()[0].email == 'buyer@example.com'


def test_notification_failure_is_not_fatal(services, notifier):
    notifier.fail = True
    outcome = services.allocation.allocate(_event())
    assert outcome.state == AllocationState.NOTIFIED
    assert outcome.recorded is True
    assert outcome.email_sent is False

    notifier.fail = False
    notifier.skip = True
    outcome = services.allocation.allocate(_event(2))
    assert outcome.email_sent is False
    assert outcome.license_key == POOL_KEYS[1]


def test_replayed_order_returns_the_same_key(services, notifier, settings):
    first = services.allocation.allocate(_event(7))
    replay = services.allocation.allocate(_event(7))

    assert replay.duplicate is True
    assert replay.license_key == first.license_key
    assert replay.state == AllocationState.RECORDED
    assert len(services.ledger.list_for('buyer@example.com')) == 1
    assert len(notifier.sent) == 1
    with open(settings.TIERS_PATH) as f:
        assert json.load(f)['salesCount'] == 1


def test_allocate_without_notification(services, notifier):
    outcome = services.allocation.allocate(_event(), notify=False)
    assert outcome.state == AllocationState.RECORDED
    assert notifier.sent == []
