"""
Request body validation for the payment endpoints.

Each validate_* function returns a cleaned dict or raises a validation
PaymentError naming the offending field.
"""
import base64
import binascii
import re

from config import Config
from core.errors import validation_error
from core.invoice import MAX_INVOICE_LENGTH
from core.preimage import require_payment_hash, require_preimage

PROOF_METHODS = ('webln', 'qr', 'manual', 'upload')
IMAGE_MIME_TYPES = ('image/png', 'image/jpeg', 'image/jpg', 'image/webp')

_DATA_URL_RE = re.compile(r'^data:(?P<mime>[a-z/+.-]+);base64,(?P<data>[A-Za-z0-9+/=\s]+)$')


def _require_body(data) -> dict:
    if not isinstance(data, dict):
        raise validation_error("Request body must be a JSON object", 'INVALID_BODY')
    return data


def parse_job_id(value, field='job_id') -> int:
    """Positive integer; numeric strings are accepted (query parameters)."""
    if isinstance(value, bool):
        raise validation_error(f"{field} must be a positive integer", 'INVALID_JOB_ID', field=field)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise validation_error(f"{field} must be a positive integer", 'INVALID_JOB_ID', field=field)
    return value


def parse_bolt11(value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise validation_error("bolt11 is required", 'INVALID_INVOICE', field='bolt11')
    value = value.strip()
    if len(value) > MAX_INVOICE_LENGTH:
        raise validation_error("bolt11 is too long", 'INVALID_INVOICE', field='bolt11')
    return value


def parse_method(value, default=None, allowed=PROOF_METHODS) -> str:
    if value is None:
        return default
    if value not in allowed:
        raise validation_error(
            f"method must be one of: {', '.join(allowed)}",
            'INVALID_PAYMENT_METHOD', field='method',
        )
    return value


def validate_image_data_url(value, max_bytes=None) -> str:
    """Accept a base64 data URL for a png/jpeg/webp image no larger than max_bytes."""
    max_bytes = max_bytes or Config.MAX_PROOF_IMAGE_BYTES
    if not isinstance(value, str):
        raise validation_error("proof must be an image data URL", 'INVALID_PROOF_IMAGE', field='proof')
    match = _DATA_URL_RE.match(value.strip())
    if not match:
        raise validation_error("proof must be an image data URL", 'INVALID_PROOF_IMAGE', field='proof')
    if match.group('mime') not in IMAGE_MIME_TYPES:
        raise validation_error("proof image must be PNG, JPEG or WebP", 'INVALID_PROOF_IMAGE', field='proof')
    encoded = re.sub(r'\s', '', match.group('data'))
    # Cheap size bound before decoding
    if len(encoded) * 3 // 4 > max_bytes + 3:
        raise validation_error("proof image is too large", 'PROOF_IMAGE_TOO_LARGE', field='proof',
                               max_bytes=max_bytes)
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise validation_error("proof image is not valid base64", 'INVALID_PROOF_IMAGE', field='proof')
    if not raw:
        raise validation_error("proof image is empty", 'INVALID_PROOF_IMAGE', field='proof')
    if len(raw) > max_bytes:
        raise validation_error("proof image is too large", 'PROOF_IMAGE_TOO_LARGE', field='proof',
                               max_bytes=max_bytes)
    return value.strip()


def validate_invoice_request(data) -> dict:
    data = _require_body(data)
    return {
        "job_id": parse_job_id(data.get('job_id')),
        "bolt11": parse_bolt11(data.get('bolt11')),
    }


def validate_register_request(data) -> dict:
    """bolt11 is optional: without it the provider issues the invoice."""
    data = _require_body(data)
    bolt11 = data.get('bolt11')
    return {
        "job_id": parse_job_id(data.get('job_id')),
        "bolt11": parse_bolt11(bolt11) if bolt11 is not None else None,
        "method": parse_method(data.get('method'), default='qr'),
    }


def validate_confirm_request(data) -> dict:
    data = _require_body(data)
    return {
        "job_id": parse_job_id(data.get('job_id')),
        "payment_hash": require_payment_hash(data.get('payment_hash')),
        "preimage": require_preimage(data.get('preimage')),
        "method": parse_method(data.get('method'), default='manual'),
    }


def validate_proof_request(data) -> dict:
    data = _require_body(data)
    method = parse_method(data.get('method'), default='upload')
    if method != 'upload':
        raise validation_error("Use /payments/confirm to submit a preimage", 'INVALID_PAYMENT_METHOD',
                               field='method')
    return {
        "job_id": parse_job_id(data.get('job_id')),
        "payment_hash": require_payment_hash(data.get('payment_hash')),
        "proof": validate_image_data_url(data.get('proof')),
        "method": method,
    }


def validate_webhook_request(data) -> dict:
    data = _require_body(data)
    if not data.get('payment_hash'):
        raise validation_error("payment_hash is required", 'INVALID_PAYMENT_HASH', field='payment_hash')
    return {"payment_hash": require_payment_hash(data.get('payment_hash'))}
