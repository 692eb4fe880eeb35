import json

from conftest import ADMIN_TOKEN, POOL_KEYS, sign, write_pool

OPERATOR = {'X-Admin-Token': ADMIN_TOKEN}


def _capture(client, order_id='ORDER-1', email='buyer@example.com', product='BudgetXT', signature=None):
    body = json.dumps({'buyerEmail': email, 'product': product, 'orderId': order_id}).encode()
    headers = {'X-Capture-Signature': signature if signature is not None else sign(body)}
    return client.post('/api/purchases/capture', data=body, content_type='application/json', headers=headers)


def test_health(client):
    response = client.get('/api/health')
    assert response.status_code == 200
    assert response.get_json() == {'ok': True}


def test_pricing_and_public_config(client):
    pricing = client.get('/api/pricing').get_json()
    assert pricing['currentPrice'] == '5.00'
    assert pricing['currentTier'] == 'Launch'
    assert pricing['salesCount'] == 0

    config = client.get('/api/config').get_json()
    assert config == {'currency': 'USD', 'productPrice': '5.00'}


def test_capture_requires_valid_signature(client):
    assert _capture(client, signature='').status_code == 401
    assert _capture(client, signature='deadbeef').status_code == 401


def test_capture_issues_key(client, notifier):
    response = _capture(client)

    assert response.status_code == 200
    data = response.get_json()
    assert data['licenseKey'] == POOL_KEYS[0]
    assert data['recorded'] is True
    assert data['emailSent'] is True
    assert data['state'] == 'NOTIFIED'
    assert notifier.sent[0][1] == POOL_KEYS[0]

    # Sales counter moved on
    assert client.get('/api/pricing').get_json()['salesCount'] == 1


def test_capture_replay_is_idempotent(client):
    first = _capture(client, order_id='ORDER-9').get_json()
    again = _capture(client, order_id='ORDER-9').get_json()
    assert again['licenseKey'] == first['licenseKey']
    assert again['duplicate'] is True


def test_capture_without_order_id(client):
    body = json.dumps({'buyerEmail': 'buyer@example.com'}).encode()
    response = client.post('/api/purchases/capture', data=body, content_type='application/json',
                           headers={'X-Capture-Signature': sign(body)})
    assert response.status_code == 400


def test_capture_with_exhausted_pool(client, settings):
    write_pool(settings.KEYS_LOCAL_PATH, [])
    response = _capture(client)
    assert response.status_code == 503
    assert response.get_json()['error'] == 'pool_exhausted'


def test_lookup_purchases(client):
    response = client.post('/api/lookup-purchases', json={'email': 'buyer@example.com'})
    assert response.status_code == 404
    assert response.get_json()['found'] is False

    _capture(client)
    response = client.post('/api/lookup-purchases', json={'email': ' BUYER@example.com '})
    data = response.get_json()
    assert response.status_code == 200
    assert data['found'] is True
    assert data['purchases'][0]['licenseKey'] == POOL_KEYS[0]

    assert client.post('/api/lookup-purchases', json={}).status_code == 400


def test_verify_key(client):
    key = _capture(client).get_json()['licenseKey']

    ok = client.post('/api/verify-key', json={'key': key.lower()})
    assert ok.status_code == 200
    assert ok.get_json()['valid'] is True
    assert ok.get_json()['email'] == 'buyer@example.com'

    bad = client.post('/api/verify-key', json={'key': 'NOT-A-KEY'})
    assert bad.status_code == 401
    assert bad.get_json()['valid'] is False

    assert client.post('/api/verify-key', json={}).status_code == 400


def test_resend_key(client, notifier):
    response = client.post('/api/resend-key', json={
        'email': 'buyer@example.com', 'licenseKey': POOL_KEYS[2].lower(), 'appName': 'BudgetXT'
    })
    assert response.status_code == 200
    assert notifier.sent[-1] == ('buyer@example.com', POOL_KEYS[2], 'BudgetXT')

    unknown = client.post('/api/resend-key', json={
        'email': 'buyer@example.com', 'licenseKey': 'NOPE', 'appName': 'BudgetXT'
    })
    assert unknown.status_code == 400

    notifier.skip = True
    skipped = client.post('/api/resend-key', json={
        'email': 'buyer@example.com', 'licenseKey': POOL_KEYS[2], 'appName': 'BudgetXT'
    })
    assert skipped.status_code == 500


def test_admin_routes_require_token(client):
    assert client.get('/api/admin/active-keys').status_code == 401
    assert client.get('/api/admin/active-keys', headers={'X-Admin-Token': 'wrong'}).status_code == 401
    assert client.post('/api/admin/rotate-keys', json={}).status_code == 401


def test_admin_send_key(client, notifier):
    response = client.post('/api/admin/send-key', json={'email': 'vip@example.com', 'appName': 'BudgetXT'},
                           headers=OPERATOR)
    data = response.get_json()
    assert response.status_code == 200
    assert data['key'] == POOL_KEYS[0]
    assert 'message' in data

    invalid = client.post('/api/admin/send-key', json={'email': 'nope', 'appName': 'BudgetXT'},
                          headers=OPERATOR)
    assert invalid.status_code == 400


def test_admin_deactivate_key_does_not_email(client, notifier):
    old_key = _capture(client).get_json()['licenseKey']
    sent_before = len(notifier.sent)

    response = client.post('/api/admin/deactivate-key', headers=OPERATOR, json={
        'email': 'buyer@example.com', 'oldKey': old_key, 'appName': 'BudgetXT'
    })
    data = response.get_json()

    assert response.status_code == 200
    assert data['replaced'] is True
    assert data['deactivated'] is True
    assert data['newKey'] != old_key
    assert len(notifier.sent) == sent_before

    assert client.post('/api/verify-key', json={'key': old_key}).status_code == 401
    assert client.post('/api/verify-key', json={'key': data['newKey']}).status_code == 200

    notified = client.post('/api/admin/notify', headers=OPERATOR, json={
        'email': 'buyer@example.com', 'licenseKey': data['newKey'], 'appName': 'BudgetXT'
    })
    assert notified.status_code == 200
    assert notifier.sent[-1][1] == data['newKey']


def test_admin_rotate_keys(client):
    empty = client.post('/api/admin/rotate-keys', json={}, headers=OPERATOR).get_json()
    assert empty['rotated'] == 0

    _capture(client, order_id='ORDER-1')
    _capture(client, order_id='ORDER-2', email='other@example.com')

    response = client.post('/api/admin/rotate-keys', json={'sendEmails': False}, headers=OPERATOR)
    data = response.get_json()
    assert response.status_code == 200
    assert data['rotated'] == 2
    assert data['emailsSent'] == 0

    items = client.get('/api/admin/active-keys', headers=OPERATOR).get_json()['items']
    assert {i['licenseKey'] for i in items}.isdisjoint({POOL_KEYS[0], POOL_KEYS[1]})


def test_admin_rotate_keys_without_capacity(client, settings):
    write_pool(settings.KEYS_LOCAL_PATH, POOL_KEYS[:3])
    _capture(client, order_id='ORDER-1')
    _capture(client, order_id='ORDER-2')

    response = client.post('/api/admin/rotate-keys', json={}, headers=OPERATOR)
    assert response.status_code == 409
    assert response.get_json()['needed'] == 2
    assert response.get_json()['available'] == 1


def test_admin_key_report(client, notifier):
    _capture(client)
    response = client.post('/api/admin/send-key-report', headers=OPERATOR)
    assert response.status_code == 200
    assert response.get_json()['count'] == 1
    assert notifier.reports[0][0] == 'owner@example.com'
