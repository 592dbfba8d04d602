"""
ErrandBit Payments: Lightning payment verification and monitoring service.

Payment statuses: pending -> confirmed | expired | failed | disputed
                  confirmed -> disputed (admin)
Job transition owned here: in_progress | awaiting_payment -> payment_confirmed
"""

from flask import Flask, request, jsonify, g
from werkzeug.exceptions import HTTPException
from models import db
from config import Config
from core.errors import PaymentError, not_found, validation_error
from core.scheduler import PeriodicTask, Scheduler
from core.state_machine import PaymentStatus, TransactionType
from services.auth_service import require_auth, require_admin, require_webhook_signature, is_admin
from services.rate_limiter import (
    rate_limit, all_limiters, get_payment_limiter, get_confirm_limiter, get_cleanup_limiter,
)
from services import payload_guard

import atexit
import json
import logging
import os
import uuid

# ---------------------------------------------------------------------------
# Structured logging setup
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Produce valid JSON log lines even when message contains quotes/newlines."""
    def format(self, record):
        from flask import has_request_context
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            rid = getattr(g, 'request_id', None)
            if rid:
                entry["request_id"] = rid
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


_log_handler = logging.StreamHandler()
_log_handler.setFormatter(_JsonFormatter())
logging.basicConfig(level=logging.INFO, handlers=[_log_handler])
logger = logging.getLogger('errandbit')

# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

app = Flask(__name__)
app.config.from_object(Config)
db.init_app(app)

# Enable WAL mode for SQLite concurrent access (dev server + background tasks)
from sqlalchemy import event as sa_event
from sqlalchemy.engine import Engine

@sa_event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    import sqlite3
    if isinstance(dbapi_conn, sqlite3.Connection):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

# ---------------------------------------------------------------------------
# Database bootstrap
# ---------------------------------------------------------------------------

logger.info("Starting ErrandBit payments service")
if 'sqlite' in Config.SQLALCHEMY_DATABASE_URI:
    logger.warning("SQLite detected: row-level locking (with_for_update) is NOT supported. "
                   "Concurrent confirmations rely on unique constraints only. "
                   "Use PostgreSQL for production deployments.")

# Startup guard: reject dev-only settings in production
Config.validate_production()

with app.app_context():
    try:
        db.create_all()
        logger.info("Database tables created / verified")
    except Exception as e:
        logger.critical("Database init failed: %s", e)


# Correlation ID: attach a unique request ID to every request
@app.before_request
def _attach_request_id():
    g.request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())


@app.after_request
def _add_request_id_header(response):
    rid = getattr(g, 'request_id', None)
    if rid:
        response.headers['X-Request-ID'] = rid
    return response


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(PaymentError)
def _handle_payment_error(err):
    if err.status_code >= 500:
        logger.error("%s %s failed: %r", request.method, request.path, err)
    resp = jsonify(err.to_dict())
    resp.status_code = err.status_code
    if err.retry_after is not None:
        resp.headers['Retry-After'] = str(err.retry_after)
        resp.headers['X-RateLimit-Remaining'] = '0'
    return resp


@app.errorhandler(Exception)
def _handle_unexpected(err):
    if isinstance(err, HTTPException):
        return jsonify({"error": err.description}), err.code
    db.session.rollback()
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({
        "error": "Internal server error",
        "request_id": getattr(g, 'request_id', None),
    }), 500


# ---------------------------------------------------------------------------
# Background tasks (started explicitly, never at import)
# ---------------------------------------------------------------------------

_scheduler = None


def _in_app_context(fn):
    """Wrap a task body so each cycle gets an app context and a fresh session."""
    def run():
        with app.app_context():
            try:
                return fn()
            finally:
                db.session.remove()
    return run


def _purge_rate_limits():
    removed = sum(limiter.purge() for limiter in all_limiters())
    if removed:
        logger.debug("Purged %d idle rate-limit keys", removed)
    return removed


def build_scheduler() -> Scheduler:
    from services.monitoring_service import get_monitoring_service
    from services.payout_service import get_payout_service
    monitoring = get_monitoring_service()

    scheduler = Scheduler()
    if Config.ENABLE_PAYMENT_MONITORING:
        scheduler.add(PeriodicTask(
            'payment-monitor',
            _in_app_context(monitoring.run_monitoring_cycle),
            interval_seconds=Config.MONITORING_INTERVAL_MINUTES * 60,
            run_immediately=True,
        ))
    scheduler.add(PeriodicTask(
        'invoice-cleanup',
        _in_app_context(monitoring.cleanup_expired_invoices),
        interval_seconds=Config.CLEANUP_INTERVAL_MINUTES * 60,
        run_immediately=True,
    ))
    scheduler.add(PeriodicTask(
        'payout-reconcile',
        _in_app_context(get_payout_service().reconcile_pending_payouts),
        interval_seconds=Config.PAYOUT_RECONCILE_INTERVAL_MINUTES * 60,
    ))
    scheduler.add(PeriodicTask('rate-limit-purge', _purge_rate_limits, interval_seconds=60))
    return scheduler


def start_background_tasks() -> Scheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = build_scheduler()
    _scheduler.start()
    if not Config.ENABLE_PAYMENT_MONITORING:
        logger.info("Payment monitoring disabled (ENABLE_PAYMENT_MONITORING=false)")
    return _scheduler


def stop_background_tasks():
    if _scheduler is not None:
        _scheduler.stop()
    from services.alert_service import get_alert_dispatcher
    get_alert_dispatcher().shutdown(wait=False)


atexit.register(stop_background_tasks)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _json_body():
    return request.get_json(silent=True)


def _int_arg(name, default, minimum=0, maximum=None):
    try:
        value = max(minimum, int(request.args.get(name, default)))
    except (ValueError, TypeError):
        value = default
    if maximum is not None:
        value = min(value, maximum)
    return value


# ===================================================================
# 1. GET /health
# ===================================================================


@app.route('/health', methods=['GET'])
def health():
    result = {
        "status": "healthy",
        "service": "errandbit-payments",
        "background_tasks": _scheduler.status() if _scheduler is not None else {},
    }
    return jsonify(result), 200


# ===================================================================
# 2. Payment flows
# ===================================================================


@app.route('/payments/instruction', methods=['GET'])
@require_auth
@rate_limit(get_payment_limiter())
def payment_instruction():
    from services.payment_service import PaymentService
    job_id = payload_guard.parse_job_id(request.args.get('job_id'))
    return jsonify(PaymentService.get_payment_instruction(job_id, g.current_user_id)), 200


@app.route('/payments/validate-invoice', methods=['POST'])
@require_auth
@rate_limit(get_payment_limiter())
def validate_invoice_endpoint():
    from services.payment_service import PaymentService
    data = payload_guard.validate_invoice_request(_json_body())
    result = PaymentService.validate_invoice_for_job(data['job_id'], data['bolt11'], g.current_user_id)
    return jsonify(result.to_dict()), (200 if result.is_valid else 400)


@app.route('/payments/invoices', methods=['POST'])
@require_auth
@rate_limit(get_payment_limiter())
def create_payment_invoice():
    """Record the runner's invoice, or have the provider issue one when bolt11 is omitted."""
    from services.payment_service import PaymentService
    data = payload_guard.validate_register_request(_json_body())
    if data['bolt11']:
        payment = PaymentService.register_invoice(
            data['job_id'], data['bolt11'], g.current_user_id, method=data['method'])
    else:
        payment = PaymentService.create_provider_invoice(
            data['job_id'], g.current_user_id, method=data['method'])
    return jsonify(payment.to_dict()), 201


@app.route('/payments/confirm', methods=['POST'])
@require_auth
@rate_limit(get_confirm_limiter())
def confirm_payment():
    from services.payment_service import PaymentService
    data = payload_guard.validate_confirm_request(_json_body())
    result = PaymentService.confirm_payment(
        data['job_id'], g.current_user_id, data['payment_hash'], data['preimage'], method=data['method'])
    return jsonify(result), 200


@app.route('/payments/proof', methods=['POST'])
@require_auth
@rate_limit(get_payment_limiter())
def submit_payment_proof():
    """Screenshot evidence for manual review; never confirms the payment."""
    from services.payment_service import PaymentService
    data = payload_guard.validate_proof_request(_json_body())
    payment = PaymentService.attach_proof(
        data['job_id'], data['payment_hash'], data['proof'], g.current_user_id, method=data['method'])
    return jsonify({
        "status": "pending_manual_review",
        "payment": payment.to_dict(),
    }), 200


@app.route('/payments/<payment_hash>', methods=['GET'])
@require_auth
def get_payment(payment_hash):
    from services.payment_service import PaymentService
    return jsonify(PaymentService.get_payment(payment_hash, g.current_user_id, admin=is_admin())), 200


@app.route('/payments/<payment_hash>/check', methods=['POST'])
@require_auth
@rate_limit(get_payment_limiter())
def check_payment(payment_hash):
    from services.payment_service import PaymentService
    return jsonify(PaymentService.check_provider_payment(payment_hash, g.current_user_id, admin=is_admin())), 200


@app.route('/payments/webhook', methods=['POST'])
@require_webhook_signature
def provider_webhook():
    """Signed push from the Lightning provider; settles the payment only after a provider lookup."""
    from services.payment_service import PaymentService
    data = payload_guard.validate_webhook_request(_json_body())
    return jsonify(PaymentService.handle_provider_webhook(data['payment_hash'])), 200


@app.route('/payments', methods=['GET'])
@require_admin
def list_payments():
    from services.payment_ledger import PaymentLedger
    status = request.args.get('status')
    if status and status not in PaymentStatus.ALL:
        raise validation_error(f"status must be one of: {', '.join(PaymentStatus.ALL)}", 'INVALID_STATUS')
    transaction_type = request.args.get('transaction_type')
    if transaction_type and transaction_type not in (TransactionType.JOB_PAYMENT, TransactionType.RUNNER_PAYOUT):
        raise validation_error("Unknown transaction_type", 'INVALID_TRANSACTION_TYPE')
    job_id = request.args.get('job_id')
    if job_id is not None:
        job_id = payload_guard.parse_job_id(job_id)
    limit = _int_arg('limit', 50, minimum=1, maximum=200)
    offset = _int_arg('offset', 0)

    items, total = PaymentLedger.list(limit=limit, offset=offset, status=status,
                                      transaction_type=transaction_type, job_id=job_id)
    return jsonify({
        "payments": [p.to_dict() for p in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }), 200


# ===================================================================
# 3. Admin overrides
# ===================================================================


@app.route('/admin/payments/<payment_hash>/dispute', methods=['POST'])
@require_admin
def dispute_payment(payment_hash):
    from services.payment_ledger import PaymentLedger
    payment = PaymentLedger.find_by_hash(payment_hash)
    if payment is None:
        raise not_found("Payment not found", 'PAYMENT_NOT_FOUND')
    data = _json_body() or {}
    payment = PaymentLedger.dispute(payment, data.get('reason'))
    return jsonify(payment.to_dict(include_proof=True)), 200


@app.route('/admin/payouts/reconcile', methods=['POST'])
@require_admin
def reconcile_payouts():
    from services.payout_service import get_payout_service
    return jsonify(get_payout_service().reconcile_pending_payouts()), 200


@app.route('/admin/payouts/<int:job_id>', methods=['POST'])
@require_admin
def process_payout(job_id):
    from services.payout_service import get_payout_service
    return jsonify(get_payout_service().process_payout(job_id)), 200


# ===================================================================
# 4. Monitoring
# ===================================================================


@app.route('/monitoring/payments', methods=['GET'])
@require_auth
def monitoring_payments():
    from services.monitoring_service import get_monitoring_service
    monitoring = get_monitoring_service()
    return jsonify({
        "metrics": monitoring.get_payment_metrics(),
        "stuck_payments": monitoring.get_stuck_payments(),
    }), 200


@app.route('/monitoring/lightning/health', methods=['GET'])
@require_auth
def monitoring_lightning_health():
    from services.monitoring_service import get_monitoring_service
    health_report = get_monitoring_service().check_lightning_health()
    return jsonify(health_report), (200 if health_report["connected"] else 503)


@app.route('/monitoring/dashboard', methods=['GET'])
@require_auth
def monitoring_dashboard():
    from services.monitoring_service import get_monitoring_service
    return jsonify(get_monitoring_service().get_dashboard()), 200


@app.route('/monitoring/alerts', methods=['GET'])
@require_auth
def monitoring_alerts():
    from services.alert_service import get_alert_dispatcher
    limit = _int_arg('limit', 50, minimum=1, maximum=100)
    alerts = [a.to_dict() for a in get_alert_dispatcher().recent(limit)]
    return jsonify({"alerts": alerts, "count": len(alerts)}), 200


@app.route('/monitoring/cleanup/expired-invoices', methods=['POST'])
@require_admin
@rate_limit(get_cleanup_limiter())
def cleanup_expired_invoices():
    from services.monitoring_service import get_monitoring_service
    cleaned = get_monitoring_service().cleanup_expired_invoices()
    return jsonify({"expired_invoices_cleaned": cleaned}), 200


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

if __name__ == '__main__':
    start_background_tasks()
    app.run(port=5005, debug=os.environ.get('FLASK_DEBUG', 'false').lower() in ('true', '1'))
