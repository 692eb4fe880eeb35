"""
Operator routes for issuing, deactivating and rotating license keys
"""
import time

from flask import Blueprint, request, jsonify, current_app

from keyshop import get_services
from keyshop.errors import PoolExhausted, RotationCapacityError
from keyshop.models import CaptureEvent
from keyshop.utils.audit_log import log_action
from keyshop.utils.decorators import operator_required
from keyshop.utils.validators import is_valid_email, sanitize_string

bp = Blueprint("admin", __name__, url_prefix="/api/admin")


# ============================================================
# ISSUING
# ============================================================

@bp.route('/send-key', methods=['POST'])
@operator_required
def send_key():
    """Issue a pool key to a buyer by hand (order id MANUAL-<ms>)"""
    data = request.get_json(silent=True) or {}
    email = sanitize_string(data.get('email'), 255)
    app_name = sanitize_string(data.get('appName'), 128)
    if not email or not app_name:
        return jsonify({'error': 'Email and app name are required'}), 400
    if not is_valid_email(email):
        return jsonify({'error': 'Invalid email format'}), 400

    event = CaptureEvent(buyer_email=email, product=app_name, order_id=f"MANUAL-{int(time.time() * 1000)}")
    try:
        outcome = get_services().allocation.allocate(event)
    except PoolExhausted:
        return jsonify({'error': 'No license keys available in pool'}), 503

    log_action('KEY_SENT_MANUALLY', f"Operator issued a key to {email}",
               additional_info={'email': email, 'product': app_name, 'order_id': event.order_id})

    response = {'success': True, 'key': outcome.license_key, 'recorded': outcome.recorded}
    if not outcome.email_sent:
        response['warning'] = 'Email was not sent. Key generated but not delivered.'
    else:
        response['message'] = f"License key sent to {email}"
    return jsonify(response)


@bp.route('/notify', methods=['POST'])
@operator_required
def notify():
    """Email a buyer their (possibly reissued) key"""
    data = request.get_json(silent=True) or {}
    email = sanitize_string(data.get('email'), 255)
    license_key = sanitize_string(data.get('licenseKey'), 64)
    app_name = sanitize_string(data.get('appName'), 128) or 'Unknown'
    if not email or not license_key:
        return jsonify({'error': 'Email and license key are required'}), 400

    sent = get_services().lifecycle.notify(email, license_key, app_name)
    log_action('KEY_NOTIFIED', f"Operator notified {email}",
               additional_info={'email': email, 'product': app_name}, success=sent)
    if not sent:
        return jsonify({'success': False, 'error': 'Email was not sent'}), 500
    return jsonify({'success': True})


# ============================================================
# DEACTIVATION / ROTATION
# ============================================================

@bp.route('/deactivate-key', methods=['POST'])
@operator_required
def deactivate_key():
    """Deactivate a key and issue a replacement. The buyer is not emailed."""
    data = request.get_json(silent=True) or {}
    email = sanitize_string(data.get('email'), 255)
    old_key = sanitize_string(data.get('oldKey'), 64)
    app_name = sanitize_string(data.get('appName'), 128)
    if not email or not old_key or not app_name:
        return jsonify({'error': 'Email, oldKey, and appName required'}), 400

    try:
        result = get_services().lifecycle.deactivate_and_reissue(email, old_key, app_name)
    except PoolExhausted:
        return jsonify({'error': 'No license keys available'}), 503
    except Exception as e:
        current_app.logger.error(f"Deactivate key error: {e}")
        return jsonify({'error': 'Failed to deactivate key'}), 500

    log_action('KEY_REISSUED', f"Key {old_key.upper()} deactivated and replaced for {email}",
               additional_info={'email': email, 'old_key': old_key.upper(),
                                'new_key': result['new_key'], 'replaced': result['replaced'],
                                'deactivated': result['deactivated']},
               success=result['deactivated'])
    response = {
        'success': result['deactivated'],
        'newKey': result['new_key'],
        'replaced': result['replaced'],
        'deactivated': result['deactivated'],
    }
    if not result['deactivated']:
        response['warning'] = 'Replacement issued but the old key could not be deactivated.'
    return jsonify(response)


@bp.route('/revoke-key', methods=['POST'])
@operator_required
def revoke_key():
    """Deactivate a key without issuing a replacement"""
    data = request.get_json(silent=True) or {}
    key = sanitize_string(data.get('key'), 64)
    if not key:
        return jsonify({'error': 'Key is required'}), 400

    stored = get_services().lifecycle.deactivate_key(key)
    log_action('KEY_DEACTIVATED', f"Key {key.upper()} deactivated",
               additional_info={'key': key.upper()}, success=stored)
    if not stored:
        return jsonify({'success': False, 'error': 'Could not store deactivation'}), 500
    return jsonify({'success': True})


@bp.route('/rotate-keys', methods=['POST'])
@operator_required
def rotate_keys():
    """Replace every issued key with a fresh pool key (all or nothing)"""
    data = request.get_json(silent=True) or {}
    send_emails = bool(data.get('sendEmails'))
    services = get_services()

    if not services.backend.is_configured:
        return jsonify({'error': 'Key-value store not configured'}), 500

    try:
        result = services.lifecycle.rotate_all(send_notifications=send_emails)
    except RotationCapacityError as e:
        log_action('KEYS_ROTATION_ABORTED', str(e),
                   additional_info={'needed': e.needed, 'available': e.available}, success=False)
        return jsonify({'error': str(e), 'needed': e.needed, 'available': e.available}), 409
    except Exception as e:
        current_app.logger.error(f"Rotate keys error: {e}")
        return jsonify({'error': 'Rotation failed'}), 500

    log_action('KEYS_ROTATED', f"Rotated {result.rotated} keys",
               additional_info={'rotated': result.rotated, 'emails_sent': result.emails_sent,
                                'failed_emails': result.failed_emails})
    if result.rotated == 0 and not result.failed_emails:
        return jsonify({'success': True, 'rotated': 0, 'message': 'No purchases found to rotate'})
    return jsonify({
        'success': not result.failed_emails,
        'rotated': result.rotated,
        'emailsSent': result.emails_sent,
        'failedEmails': result.failed_emails,
    })


# ============================================================
# REPORTING
# ============================================================

@bp.route('/active-keys', methods=['GET'])
@operator_required
def active_keys():
    services = get_services()
    if not services.backend.is_configured:
        return jsonify({'error': 'Key-value store not configured'}), 500
    return jsonify({'items': services.lifecycle.list_active_keys()})


@bp.route('/send-key-report', methods=['POST'])
@operator_required
def send_key_report():
    to_address = current_app.config.get('ADMIN_REPORT_EMAIL')
    if not to_address:
        return jsonify({'error': 'ADMIN_REPORT_EMAIL not set'}), 400

    try:
        count = get_services().lifecycle.send_key_report(to_address)
    except Exception as e:
        current_app.logger.error(f"Send key report error: {e}")
        return jsonify({'error': str(e)}), 500
    return jsonify({'success': True, 'count': count})
