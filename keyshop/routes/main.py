"""
Public storefront API: pricing, payment capture, purchase lookup,
key verification and receipt resend.
"""
from flask import Blueprint, request, jsonify, current_app

from keyshop import get_services, limiter
from keyshop.errors import PoolExhausted
from keyshop.models import CaptureEvent, normalize_email
from keyshop.utils.decorators import capture_signature_required
from keyshop.utils.validators import sanitize_string

bp = Blueprint("main", __name__, url_prefix="/api")


@bp.route("/health", methods=["GET"])
def health():
    return jsonify({"ok": True})


@bp.route("/config", methods=["GET"])
def public_config():
    services = get_services()
    return jsonify({
        "currency": current_app.config['CURRENCY'],
        "productPrice": services.pricing.price(),
    })


@bp.route("/pricing", methods=["GET"])
def pricing():
    """Current tier price, tier name and sales count."""
    return jsonify(get_services().pricing.snapshot())


@bp.route("/purchases/capture", methods=["POST"])
@capture_signature_required
def capture_purchase():
    """
    Payment capture event from the payment provider.

    Body: {"buyerEmail": ..., "product": ..., "orderId": ...}
    Issues one license key for the order. Replays of an already recorded
    order return the same key.
    """
    data = request.get_json(silent=True) or {}
    order_id = sanitize_string(data.get("orderId"), 128)
    if not order_id:
        return jsonify({"error": "orderId is required"}), 400

    event = CaptureEvent(
        buyer_email=sanitize_string(data.get("buyerEmail"), 255),
        product=sanitize_string(data.get("product"), 128) or "App License",
        order_id=order_id,
    )

    try:
        outcome = get_services().allocation.allocate(event)
    except PoolExhausted as e:
        current_app.logger.error(f"Capture {order_id}: {e}")
        return jsonify({"error": PoolExhausted.tag, "message": str(e)}), 503
    except Exception as e:
        current_app.logger.error(f"Capture error for order {order_id}: {e}")
        return jsonify({"error": "capture_failed"}), 500

    return jsonify({
        "licenseKey": outcome.license_key,
        "emailSent": outcome.email_sent,
        "recorded": outcome.recorded,
        "duplicate": outcome.duplicate,
        "state": outcome.state.value,
    })


@bp.route("/lookup-purchases", methods=["POST"])
@limiter.limit("20 per minute")
def lookup_purchases():
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get("email"))
    if not email:
        return jsonify({"error": "Email is required"}), 400

    current_app.logger.info(f"[lookup-purchases] Looking up purchases for: {email}")
    purchases = get_services().ledger.list_for(email)

    if not purchases:
        return jsonify({
            "found": False,
            "message": "No purchases found for this email. Please check if you used a "
                       "different email address or contact support."
        }), 404

    return jsonify({
        "found": True,
        "email": email,
        "purchases": [p.to_dict() for p in purchases],
        "message": f"Found {len(purchases)} purchase(s) under this email."
    })


@bp.route("/resend-key", methods=["POST"])
@limiter.limit("5 per minute")
def resend_key():
    data = request.get_json(silent=True) or {}
    email = sanitize_string(data.get("email"), 255)
    license_key = sanitize_string(data.get("licenseKey"), 64)
    app_name = sanitize_string(data.get("appName"), 128)

    if not email or not license_key:
        return jsonify({"error": "Email and license key are required"}), 400
    if not app_name:
        return jsonify({"error": "App name is required"}), 400

    services = get_services()
    if not services.pool.contains(license_key):
        return jsonify({"error": "License key not found in valid keys pool"}), 400

    try:
        result = services.notifier.send_key(email, license_key.upper(), app_name)
    except Exception as e:
        current_app.logger.error(f"Resend key error: {e}")
        return jsonify({"error": "Failed to send email", "success": False}), 500

    if result.get("skipped"):
        return jsonify({
            "error": "Email service not configured. SMTP credentials missing.",
            "success": False
        }), 500

    return jsonify({
        "success": True,
        "message": "License key email resent successfully",
        "email": email,
        "appName": app_name,
        "messageId": result.get("message_id"),
    })


@bp.route("/verify-key", methods=["POST"])
@limiter.limit("60 per minute")
def verify_key():
    data = request.get_json(silent=True) or {}
    key = sanitize_string(data.get("key"), 64)
    if not key:
        return jsonify({"error": "Key is required"}), 400

    result = get_services().lifecycle.validate_key(key)
    if not result.valid:
        return jsonify(result.to_dict()), 401
    return jsonify(result.to_dict())
