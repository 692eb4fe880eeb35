"""
Audit logging for key issuance and operator actions.
Writes JSON lines to a daily rotating file (logs/audit.log, audit.log.YYYY-MM-DD).
"""

import logging
import os
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from flask import request, has_request_context
from pythonjsonlogger import jsonlogger


AUDIT_LOGGER_NAME = 'keyshop.audit'
SENSITIVE_KEYS = ('password', 'token', 'secret', 'signature')

audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)


def init_audit_log(log_dir: str, retention_days: int = 30) -> None:
    """Attach the JSON file handler. Safe to call once per app instance."""
    os.makedirs(log_dir, exist_ok=True)
    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
        handler.close()

    handler = TimedRotatingFileHandler(
        os.path.join(log_dir, 'audit.log'),
        when='midnight',
        backupCount=retention_days,
        encoding='utf-8',
        utc=True,
    )
    handler.setFormatter(jsonlogger.JsonFormatter('%(levelname)s %(name)s %(message)s'))
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


def _mask(additional_info: dict) -> dict:
    masked = {}
    for k, v in additional_info.items():
        if k.lower() in SENSITIVE_KEYS:
            masked[k] = '***'
        else:
            masked[k] = v
    return masked


def log_action(action: str, description: str, additional_info: dict = None, success: bool = True):
    """Write one audit record.

    Example: log_action('KEY_DEACTIVATED', 'Deactivated key', additional_info={'email': email})
    """
    record = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'action': action,
        'success': bool(success),
        'ip': None,
        'details': _mask(additional_info) if additional_info else None,
    }
    if has_request_context():
        record['ip'] = request.remote_addr

    try:
        if success:
            audit_logger.info(description, extra=record)
        else:
            audit_logger.warning(description, extra=record)
    except Exception:
        # Audit failures must never break the request; report on the app logger.
        logging.getLogger(__name__).exception('Failed to write audit entry')
