import logging

from flask import Flask, current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from config import Config

limiter = Limiter(key_func=get_remote_address)


def create_app(settings=None, backend=None, notifier=None):
    """Application factory.

    ``backend`` and ``notifier`` override the configured storage backend and
    mailer (used by tests and local tooling).
    """
    settings = settings or Config()

    app = Flask(__name__)
    app.config.from_mapping(settings.model_dump())
    app.config.setdefault('RATELIMIT_STORAGE_URI', settings.RATELIMIT_STORAGE_URL or 'memory://')

    logging.basicConfig(level=logging.INFO)

    limiter.init_app(app)

    from keyshop.utils.audit_log import init_audit_log
    init_audit_log(app.config['AUDIT_LOG_DIR'], app.config['AUDIT_RETENTION_DAYS'])

    from keyshop.services import build_services
    app.extensions['keyshop'] = build_services(app.config, backend=backend, notifier=notifier)
    app.logger.info(f"Storage backend: {app.extensions['keyshop'].backend.name}")

    from keyshop.routes import register_blueprints
    register_blueprints(app)

    from keyshop.cli import register_commands
    register_commands(app)

    return app


def get_services():
    """Services of the current app."""
    return current_app.extensions['keyshop']
