import hashlib
import hmac
import json
import pytest

from config import Config
from keyshop import create_app
from keyshop.services import build_services
from keyshop.services.storage import MemoryBackend


POOL_KEYS = [f"KEY-{i:04d}" for i in range(10)]
TIERS = [
    {'name': 'Launch', 'maxCopies': 2, 'price': 5},
    {'name': 'Regular', 'maxCopies': 3, 'price': 8},
]
ADMIN_TOKEN = 'operator-token'
CAPTURE_SECRET = 'capture-secret'


class FakeNotifier:
    """Records every message instead of talking to SMTP."""

    def __init__(self):
        self.sent = []
        self.reports = []
        self.skip = False
        self.fail = False

    def send_key(self, to, license_key, product_name):
        if self.fail:
            raise OSError('SMTP down')
        if self.skip:
            return {'skipped': True}
        self.sent.append((to, license_key, product_name))
        return {'message_id': f'<msg-{len(self.sent)}@test>'}

    def send_generic_email(self, to_address, subject, body):
        if self.skip:
            return {'skipped': True}
        self.reports.append((to_address, subject, body))
        return {'message_id': '<report@test>'}


class FlakyBackend(MemoryBackend):
    """Memory backend whose writes fail for selected keys."""

    def __init__(self, failing=()):
        super().__init__()
        self.failing = set(failing)

    def set(self, key, value):
        if key in self.failing or '*' in self.failing:
            return False
        return super().set(key, value)


def write_pool(path, keys, wrapped=True):
    with open(path, 'w', encoding='utf-8') as f:
        json.dump({'keys': list(keys)} if wrapped else list(keys), f)


def write_tiers(path, sales_count=0, tiers=TIERS):
    with open(path, 'w', encoding='utf-8') as f:
        json.dump({'salesCount': sales_count, 'pricingTiers': tiers}, f)


def sign(body: bytes, secret: str = CAPTURE_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every file at a temporary directory."""
    pool_path = tmp_path / 'allowed-keys.json'
    tiers_path = tmp_path / 'coupons.json'
    write_pool(pool_path, POOL_KEYS)
    write_tiers(tiers_path)
    return Config(
        SECRET_KEY='test',
        ADMIN_TOKEN=ADMIN_TOKEN,
        ADMIN_REPORT_EMAIL='owner@example.com',
        CAPTURE_WEBHOOK_SECRET=CAPTURE_SECRET,
        KV_REST_API_URL='',
        KV_REST_API_TOKEN='',
        REDIS_URL='',
        KEYS_LOCAL_PATH=str(pool_path),
        KEYS_REMOTE_URL='',
        KEYS_VALIDATE_URL='',
        DATA_DIR=str(tmp_path / 'data'),
        LOCAL_RECORDS_ENABLED=True,
        TIERS_PATH=str(tiers_path),
        AUDIT_LOG_DIR=str(tmp_path / 'logs'),
        RATELIMIT_ENABLED=False,
    )


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def services(settings, backend, notifier):
    """Services wired without a Flask app."""
    return build_services(settings.model_dump(), backend=backend, notifier=notifier)


@pytest.fixture
def app(settings, backend, notifier):
    """Create and configure a test app."""
    app = create_app(settings, backend=backend, notifier=notifier)
    app.config['TESTING'] = True
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    """A test client for the app."""
    return app.test_client()


@pytest.fixture
def runner(app):
    """A test runner for the app's Click commands."""
    return app.test_cli_runner()
