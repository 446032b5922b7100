#!/usr/bin/env python3
"""
Lightning Tip Jar

Flask application proxying invoice creation and settlement lookups to a
Lightning wallet backend:
- POST /api/invoice     create an invoice for a tip
- GET  /api/invoice     poll settlement by payment hash
- GET/POST /api/mode    mock vs. real backend (development only)
"""

import io
import logging
import sys
from datetime import datetime

import qrcode
from flask import Flask, jsonify, request, send_file
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

import config
from errors import InternalError, MissingParameter, TipJarError
from invoice_service import check_invoice, request_invoice
from mode import ModeSettings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app, origins=config.CORS_ORIGINS, supports_credentials=True)

mode_settings = ModeSettings()


def _truthy(value) -> bool:
    return str(value or "").lower() in ("1", "true", "yes")


# --- Invoices ---

@app.route("/api/invoice", methods=["POST"])
def create_invoice():
    """
    Create a Lightning invoice.
    Request: {"amount": sats, "memo": optional}
    Returns: {paymentRequest, paymentHash}
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Invalid JSON"}), 400

    use_mock = mode_settings.get()
    invoice = request_invoice(data.get("amount"), data.get("memo"), use_mock=use_mock)
    return jsonify({
        "paymentRequest": invoice.payment_request,
        "paymentHash": invoice.payment_hash,
    })


@app.route("/api/invoice", methods=["GET"])
def invoice_status():
    """
    Settlement status for ?paymentHash=...; &simulate=true pays a mock invoice.
    The backend follows the hash, so invoices survive a mode toggle.
    Always 200 unless paymentHash is missing, so polling clients never break.
    """
    status = check_invoice(
        request.args.get("paymentHash"),
        simulate=_truthy(request.args.get("simulate")),
    )
    return jsonify(status.to_dict()), 200


@app.route("/api/invoice/qr")
def invoice_qr():
    """PNG QR code for a payment request, for clients that cannot draw one."""
    payment_request = request.args.get("paymentRequest", "").strip()
    if not payment_request:
        raise MissingParameter("Payment request is required")
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_L, box_size=8, border=4)
    qr.add_data(f"lightning:{payment_request}")
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    buf.seek(0)
    return send_file(buf, mimetype="image/png")


# --- Dev mode toggle ---

@app.route("/api/mode", methods=["GET"])
def get_mode():
    use_mock = mode_settings.get()
    logger.debug("Current mode: %s, USE_REAL_LNBITS=%s", "mock" if use_mock else "real", config.USE_REAL_LNBITS)
    return jsonify({"useMock": use_mock})


@app.route("/api/mode", methods=["POST"])
def set_mode():
    """Switch between mock invoices and the real backend (development only)."""
    data = request.get_json(silent=True)
    if not mode_settings.can_change:
        return jsonify({"error": "Mode can only be changed in development environment"}), 403
    if not isinstance(data, dict) or data.get("useMock") is None:
        return jsonify({"error": "Missing useMock parameter"}), 400
    return jsonify({"useMock": mode_settings.set(data["useMock"])})


# --- Health ---

@app.route("/health")
def health():
    return jsonify({
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "lightning-tip-jar",
        "backend": config.LIGHTNING_BACKEND,
        "mode": "mock" if mode_settings.get() else "real",
    }), 200


# --- Errors ---

@app.errorhandler(TipJarError)
def handle_tipjar_error(e: TipJarError):
    return jsonify(e.to_dict()), e.status


@app.errorhandler(Exception)
def handle_unexpected_error(e: Exception):
    if isinstance(e, HTTPException):
        return e
    logger.exception("Unhandled error: %s", e)
    err = InternalError()
    return jsonify(err.to_dict()), err.status


if __name__ == "__main__":
    logger.info(
        "Tip jar starting (env=%s, backend=%s, mode=%s)",
        config.APP_ENV,
        config.LIGHTNING_BACKEND,
        "mock" if mode_settings.get() else "real",
    )
    app.run(host="0.0.0.0", port=config.PORT, debug=config.DEBUG)
