"""
Caller identity: API key generation, verification and route decorators,
plus HMAC verification of signed provider webhooks.

Credential issuance lives outside this service; it only resolves a bearer
key to a user.
"""
import hashlib
import hmac
import logging
import secrets
import time
from functools import wraps

from flask import g, request

from config import Config
from core.errors import PaymentError, forbidden, unauthorized, unavailable
from models import User

logger = logging.getLogger('errandbit.auth')

ROLE_ADMIN = 'admin'


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


def generate_api_key() -> tuple:
    """Generate a new API key. Returns (raw_key, key_hash)."""
    raw_key = secrets.token_urlsafe(32)
    return raw_key, hash_api_key(raw_key)


def verify_api_key(raw_key: str) -> User:
    """Return the User owning raw_key, or None."""
    if not raw_key:
        return None
    return User.query.filter_by(api_key_hash=hash_api_key(raw_key)).first()


def require_auth(f):
    """Decorator: require a valid API key in the Authorization header.

    Sets g.current_user_id and g.current_user_role on success.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get('Authorization', '')
        if not auth_header.startswith('Bearer '):
            raise unauthorized("Missing or invalid Authorization header")

        user = verify_api_key(auth_header[7:].strip())
        if not user:
            raise unauthorized("Invalid API key")

        g.current_user_id = user.id
        g.current_user_role = user.role
        return f(*args, **kwargs)
    return decorated


def require_admin(f):
    """Decorator: require_auth plus the admin role."""
    @wraps(f)
    @require_auth
    def decorated(*args, **kwargs):
        if g.current_user_role != ROLE_ADMIN:
            logger.warning("User %s denied admin route %s", g.current_user_id, request.path)
            raise forbidden("Admin access required", 'ADMIN_REQUIRED')
        return f(*args, **kwargs)
    return decorated


def is_admin() -> bool:
    return getattr(g, 'current_user_role', None) == ROLE_ADMIN


def sign_webhook(secret: str, timestamp: str, body: str) -> str:
    """Hex HMAC-SHA256 over the timestamp header followed by the raw body."""
    return hmac.new(secret.encode(), (timestamp + body).encode(), hashlib.sha256).hexdigest()


def verify_webhook_signature(signature: str, timestamp: str, body: str, secret: str,
                             max_age_seconds: int, now_ms: int = None):
    """Raise unauthorized unless signature is valid and timestamp (epoch ms) is fresh."""
    if not signature or not timestamp:
        raise unauthorized("Missing webhook signature headers", 'MISSING_WEBHOOK_SIGNATURE')
    try:
        sent_ms = int(timestamp)
    except ValueError:
        raise unauthorized("Invalid webhook timestamp", 'INVALID_WEBHOOK_TIMESTAMP')
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if abs(now_ms - sent_ms) > max_age_seconds * 1000:
        raise unauthorized("Webhook timestamp outside the accepted window", 'WEBHOOK_TIMESTAMP_EXPIRED')

    if signature.startswith('sha256='):
        signature = signature[7:]
    expected = sign_webhook(secret, timestamp, body)
    if not hmac.compare_digest(signature.encode(), expected.encode()):
        raise unauthorized("Invalid webhook signature", 'INVALID_WEBHOOK_SIGNATURE')


def require_webhook_signature(f):
    """Decorator: authenticate a provider push by X-Webhook-Signature / X-Webhook-Timestamp."""
    @wraps(f)
    def decorated(*args, **kwargs):
        secret = Config.LNBITS_WEBHOOK_SECRET
        if not secret:
            raise unavailable("Provider webhook is not configured", 'WEBHOOK_NOT_CONFIGURED')
        try:
            verify_webhook_signature(
                request.headers.get('X-Webhook-Signature', ''),
                request.headers.get('X-Webhook-Timestamp', ''),
                request.get_data(as_text=True),
                secret,
                Config.WEBHOOK_MAX_AGE_SECONDS,
            )
        except PaymentError as err:
            logger.warning("Rejected provider webhook from %s: %s", request.remote_addr, err.code)
            raise
        return f(*args, **kwargs)
    return decorated
