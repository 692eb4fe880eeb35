import hashlib
import hmac
from functools import wraps
from flask import current_app, jsonify, request


def operator_required(f):
    """Require the pre-shared operator token in the X-Admin-Token header."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get('ADMIN_TOKEN') or ''
        token = request.headers.get('X-Admin-Token', '')
        if not expected or not token or not hmac.compare_digest(token, expected):
            return jsonify({'error': 'Unauthorized'}), 401
        return f(*args, **kwargs)
    return decorated_function


def verify_capture_signature(body_bytes: bytes, header_signature: str, secret: str) -> bool:
    """HMAC-SHA512 check of a payment capture event body."""
    if not header_signature or not secret:
        return False
    digest = hmac.new(
        secret.encode(),
        msg=body_bytes,
        digestmod=hashlib.sha512
    ).hexdigest()
    return hmac.compare_digest(digest, header_signature)


def capture_signature_required(f):
    """Reject capture events not signed with CAPTURE_WEBHOOK_SECRET."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = current_app.config.get('CAPTURE_WEBHOOK_SECRET') or ''
        signature = request.headers.get('X-Capture-Signature', '')
        if not verify_capture_signature(request.get_data(), signature, secret):
            current_app.logger.warning("Capture event rejected: bad or missing signature")
            return jsonify({'error': 'Invalid signature'}), 401
        return f(*args, **kwargs)
    return decorated_function
