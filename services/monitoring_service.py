"""
Payment monitoring: ledger metrics, stuck-payment detection, provider health
and the alert rules evaluated over them.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from config import Config
from core.state_machine import PaymentStatus, TransactionType
from models import Payment, naive_utc, utc_iso, utcnow
from services.alert_service import SEVERITY_CRITICAL, SEVERITY_WARNING, Alert, get_alert_dispatcher
from services.lightning_service import get_lightning_service
from services.payment_ledger import PaymentLedger

logger = logging.getLogger('errandbit.monitoring')

METRICS_WINDOW = timedelta(hours=24)
DASHBOARD_TOP_STUCK = 10

ALERT_STUCK = 'stuck_payments'
ALERT_LIGHTNING_DOWN = 'lightning_down'
ALERT_LOW_SUCCESS_RATE = 'low_success_rate'


@dataclass
class MonitoringReport:
    checked_at: datetime
    metrics: dict
    stuck_payments: list
    lightning: dict
    alerts: list = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.alerts

    def to_dict(self) -> dict:
        return {
            "checked_at": utc_iso(self.checked_at),
            "healthy": self.healthy,
            "metrics": self.metrics,
            "stuck_payments": self.stuck_payments,
            "lightning": self.lightning,
            "alerts": [a.to_dict() for a in self.alerts],
        }


def _now(now):
    return utcnow() if now is None else naive_utc(now)


class MonitoringService:
    def __init__(self, lightning=None, dispatcher=None,
                 stuck_threshold_hours=None, stuck_page_size=None,
                 success_rate_threshold=None, success_rate_min_sample=None,
                 invoice_expiry_hours=None):
        self._lightning = lightning
        self._dispatcher = dispatcher
        self.stuck_threshold = timedelta(hours=stuck_threshold_hours
                                         if stuck_threshold_hours is not None
                                         else Config.STUCK_PAYMENT_THRESHOLD_HOURS)
        self.stuck_page_size = stuck_page_size or Config.STUCK_PAYMENT_PAGE_SIZE
        self.success_rate_threshold = (success_rate_threshold if success_rate_threshold is not None
                                       else Config.SUCCESS_RATE_ALERT_PERCENT)
        self.success_rate_min_sample = (success_rate_min_sample if success_rate_min_sample is not None
                                        else Config.SUCCESS_RATE_MIN_SAMPLE)
        self.invoice_expiry = timedelta(hours=invoice_expiry_hours
                                        if invoice_expiry_hours is not None
                                        else Config.PAYMENT_INVOICE_EXPIRY_HOURS)

    @property
    def lightning(self):
        return self._lightning or get_lightning_service()

    @property
    def dispatcher(self):
        return self._dispatcher or get_alert_dispatcher()

    # -- ledger reads -------------------------------------------------------

    def get_payment_metrics(self, now=None) -> dict:
        now = _now(now)
        since = now - METRICS_WINDOW
        rows = Payment.query.filter(
            Payment.transaction_type == TransactionType.JOB_PAYMENT,
            Payment.created_at >= since,
        ).all()

        confirmed = [p for p in rows if p.status == PaymentStatus.CONFIRMED]
        failed = sum(1 for p in rows if p.status == PaymentStatus.FAILED)
        expired = sum(1 for p in rows if p.status == PaymentStatus.EXPIRED)
        total = len(rows)
        success_rate = round(len(confirmed) * 100.0 / total, 2) if total else 0.0

        durations = [(p.paid_at - p.created_at).total_seconds() for p in confirmed if p.paid_at]
        avg_seconds = round(sum(durations) / len(durations), 2) if durations else 0.0

        stuck_count = Payment.query.filter(
            Payment.status == PaymentStatus.PENDING,
            Payment.created_at < now - self.stuck_threshold,
        ).count()
        pending_payouts = Payment.query.filter(
            Payment.transaction_type == TransactionType.RUNNER_PAYOUT,
            Payment.status == PaymentStatus.PENDING,
        ).count()

        return {
            "total_payments_24h": total,
            "successful_payments_24h": len(confirmed),
            "failed_payments_24h": failed,
            "expired_payments_24h": expired,
            "success_rate_24h": success_rate,
            "average_payment_time_seconds": avg_seconds,
            "stuck_payments": stuck_count,
            "total_revenue_sats_24h": sum(int(p.amount_sats) for p in confirmed),
            "pending_payouts": pending_payouts,
        }

    def get_stuck_payments(self, now=None) -> list:
        """Pending payments older than the stuck threshold, oldest first."""
        now = _now(now)
        rows = (Payment.query
                .filter(Payment.status == PaymentStatus.PENDING,
                        Payment.created_at < now - self.stuck_threshold)
                .order_by(Payment.created_at.asc(), Payment.id.asc())
                .limit(self.stuck_page_size)
                .all())
        return [{
            "id": p.id,
            "job_id": p.job_id,
            "payment_hash": p.payment_hash,
            "transaction_type": p.transaction_type,
            "amount_sats": int(p.amount_sats),
            "created_at": utc_iso(p.created_at),
            "hours_stuck": round((now - p.created_at).total_seconds() / 3600, 2),
        } for p in rows]

    # -- provider -----------------------------------------------------------

    def check_lightning_health(self) -> dict:
        started = time.monotonic()
        lightning = self.lightning
        try:
            connected = bool(lightning.check_connection())
            error = None if connected else "Provider returned an unexpected response"
        except Exception as e:
            connected = False
            error = str(e)
        return {
            "connected": connected,
            "provider": getattr(lightning, 'provider_name', 'unknown'),
            "latency_ms": round((time.monotonic() - started) * 1000, 1),
            "error": error,
            "checked_at": utc_iso(utcnow()),
        }

    # -- alert rules --------------------------------------------------------

    def evaluate_alerts(self, metrics: dict, stuck: list, health: dict) -> list:
        """Each rule fires independently of the others."""
        alerts = []
        stuck_count = metrics.get("stuck_payments", len(stuck)) if metrics else len(stuck)
        if stuck_count:
            hours = self.stuck_threshold.total_seconds() / 3600
            alerts.append(Alert(
                ALERT_STUCK, SEVERITY_WARNING,
                f"{stuck_count} payments pending for more than {hours:g}h",
                {
                    "count": stuck_count,
                    "total_sats": sum(s["amount_sats"] for s in stuck),
                    "oldest_hash": stuck[0]["payment_hash"][:10] if stuck else None,
                },
            ))

        if not health.get("connected"):
            alerts.append(Alert(
                ALERT_LIGHTNING_DOWN, SEVERITY_CRITICAL,
                "Lightning provider is unreachable",
                {"error": health.get("error"), "provider": health.get("provider")},
            ))

        total = metrics.get("total_payments_24h", 0)
        rate = metrics.get("success_rate_24h", 0.0)
        if total >= self.success_rate_min_sample and rate < self.success_rate_threshold:
            alerts.append(Alert(
                ALERT_LOW_SUCCESS_RATE, SEVERITY_WARNING,
                f"Payment success rate {rate}% over {total} payments (threshold {self.success_rate_threshold:g}%)",
                {"success_rate_24h": rate, "total_payments_24h": total},
            ))
        return alerts

    def run_monitoring_cycle(self, now=None) -> MonitoringReport:
        now = _now(now)
        health = self.check_lightning_health()
        metrics = self.get_payment_metrics(now)
        stuck = self.get_stuck_payments(now)
        alerts = self.evaluate_alerts(metrics, stuck, health)

        dispatcher = self.dispatcher
        for alert in alerts:
            dispatcher.dispatch(alert)

        logger.info("Monitoring cycle: %d payments/24h, %.2f%% success, %d stuck, lightning %s, %d alerts",
                    metrics["total_payments_24h"], metrics["success_rate_24h"],
                    metrics["stuck_payments"], "up" if health["connected"] else "down", len(alerts))
        return MonitoringReport(now, metrics, stuck, health, alerts)

    def cleanup_expired_invoices(self, now=None) -> int:
        now = _now(now)
        return PaymentLedger.expire_stale(now - self.invoice_expiry)

    def get_dashboard(self, now=None) -> dict:
        now = _now(now)
        metrics = self.get_payment_metrics(now)
        health = self.check_lightning_health()
        stuck = self.get_stuck_payments(now)
        return {
            "generated_at": utc_iso(now),
            "metrics": metrics,
            "lightning": health,
            "stuck_payments": {
                "count": metrics["stuck_payments"],
                "total_sats": sum(s["amount_sats"] for s in stuck),
                "top": stuck[:DASHBOARD_TOP_STUCK],
            },
            "alerts": {
                "has_stuck_payments": metrics["stuck_payments"] > 0,
                "low_success_rate": (metrics["total_payments_24h"] >= self.success_rate_min_sample
                                     and metrics["success_rate_24h"] < self.success_rate_threshold),
                "lightning_down": not health["connected"],
            },
        }


_monitoring_service = None


def get_monitoring_service() -> MonitoringService:
    global _monitoring_service
    if _monitoring_service is None:
        _monitoring_service = MonitoringService()
    return _monitoring_service
