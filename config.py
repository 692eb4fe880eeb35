import os
from pydantic_settings import BaseSettings
from pydantic import model_validator, field_validator
from typing import Optional

BASE_DIR = os.path.abspath(os.path.dirname(__file__))
DEFAULT_DATA_DIR = os.path.join(BASE_DIR, 'data')


class Config(BaseSettings):
    # Security configuration
    SECRET_KEY: str = 'change-me'

    # Operator API token (X-Admin-Token header). Empty disables the admin API.
    ADMIN_TOKEN: str = ''
    ADMIN_REPORT_EMAIL: Optional[str] = None

    # Shared secret used to sign payment capture events
    CAPTURE_WEBHOOK_SECRET: str = ''

    # Storage backends, in priority order: REST key-value service, Redis, none
    KV_REST_API_URL: str = ''
    KV_REST_API_TOKEN: str = ''
    REDIS_URL: str = ''
    KV_TIMEOUT: float = 5.0

    # Key pool document
    KEYS_LOCAL_PATH: str = os.path.join(DEFAULT_DATA_DIR, 'allowed-keys.json')
    KEYS_REMOTE_URL: str = ''
    KEYS_VALIDATE_URL: str = ''
    POOL_FETCH_TIMEOUT: float = 10.0

    # Local purchase record file (development parity with the KV ledger)
    DATA_DIR: str = DEFAULT_DATA_DIR
    RECORDS_FILE: Optional[str] = None
    LOCAL_RECORDS_ENABLED: Optional[bool] = None

    # Pricing
    TIERS_PATH: str = os.path.join(BASE_DIR, 'coupons.json')
    PRODUCT_PRICE: str = '9.99'
    CURRENCY: str = 'USD'

    # Email settings
    MAIL_SERVER: Optional[str] = None
    MAIL_PORT: int = 587
    MAIL_USERNAME: Optional[str] = None
    MAIL_PASSWORD: Optional[str] = None
    MAIL_USE_TLS: bool = True
    MAIL_USE_SSL: bool = False
    MAIL_DEFAULT_SENDER: Optional[str] = None

    # Downloads linked from the receipt email
    DOWNLOAD_BASE_URL: str = 'https://techapps.vercel.app/downloads'
    DEFAULT_DOWNLOAD_FILE: str = 'BudgetXT-Setup-1.5.3.exe'
    APP_DOWNLOADS: dict = {
        'BudgetXT': 'BudgetXT-Setup-1.5.3.exe',
        'budgetxt': 'BudgetXT-Setup-1.5.3.exe',
    }

    # Audit log directory (JSON lines, rotated daily)
    AUDIT_LOG_DIR: str = os.path.join(BASE_DIR, 'logs')
    AUDIT_RETENTION_DAYS: int = 30

    # Application environment: development | staging | production
    APP_ENV: str = os.getenv('FLASK_ENV', 'development')

    # Rate limiter storage. Development uses the in-memory store,
    # production should point this at Redis.
    RATELIMIT_STORAGE_URL: Optional[str] = None
    RATELIMIT_ENABLED: bool = True

    @field_validator('MAIL_PORT', 'AUDIT_RETENTION_DAYS', mode='before')
    def _parse_int_with_comment(cls, v):
        """Allow integers in .env with inline comments like '465  # SSL'."""
        if isinstance(v, str):
            v = v.split('#', 1)[0].strip()
        return v

    @model_validator(mode='after')
    def resolve_storage_and_paths(self) -> 'Config':
        """Fill derived settings.

        - Accept the Upstash variable names as aliases for the REST store.
        - Default the record file into DATA_DIR.
        - Disable the local record file on serverless deployments (VERCEL),
          where the filesystem is read-only or ephemeral.
        """
        if not self.KV_REST_API_URL:
            self.KV_REST_API_URL = os.environ.get('UPSTASH_REDIS_REST_URL', '')
        if not self.KV_REST_API_TOKEN:
            self.KV_REST_API_TOKEN = os.environ.get('UPSTASH_REDIS_REST_TOKEN', '')
        self.KV_REST_API_URL = self.KV_REST_API_URL.rstrip('/')

        if not self.RECORDS_FILE:
            self.RECORDS_FILE = os.path.join(self.DATA_DIR, 'keys.json')

        if self.LOCAL_RECORDS_ENABLED is None:
            self.LOCAL_RECORDS_ENABLED = not os.environ.get('VERCEL')

        return self

    class Config:
        env_file = '.env'
        env_file_encoding = 'utf-8'
        case_sensitive = False
        extra = 'ignore'  # Ignore extra fields from .env
