"""
Runner payouts: pay the runner's lightning address once the client's payment is confirmed.
"""
import logging
from datetime import timedelta

from config import Config
from core.errors import PaymentError, conflict, not_found, validation_error
from core.invoice import decode_invoice, normalize_invoice, validate_invoice
from core.state_machine import PAID_JOB_STATUSES, PaymentStatus, TransactionType
from models import db, naive_utc, utcnow, Job, Payment, RunnerProfile
from services.lightning_service import get_lightning_service, short_hash
from services.payment_ledger import PaymentLedger

logger = logging.getLogger('errandbit.payouts')


def split_fee(gross_sats: int, fee_percent: float) -> tuple:
    """Return (net_sats, fee_sats). The fee rounds down in the runner's favour."""
    fee = int(gross_sats * fee_percent // 100) if fee_percent else 0
    return gross_sats - fee, fee


class PayoutService:
    def __init__(self, lightning=None, fee_percent=None):
        self._lightning = lightning
        self.fee_percent = Config.PLATFORM_FEE_PERCENT if fee_percent is None else fee_percent

    @property
    def lightning(self):
        return self._lightning or get_lightning_service()

    def process_payout(self, job_id: int) -> dict:
        job = db.session.query(Job).filter_by(id=job_id).with_for_update().first()
        if job is None:
            raise not_found("Job not found", 'JOB_NOT_FOUND')
        if job.status not in PAID_JOB_STATUSES:
            raise validation_error(f"Job payment is not confirmed (current: {job.status})", 'JOB_NOT_PAID')
        if not job.runner_id:
            raise validation_error("Job has no runner assigned", 'NO_RUNNER_ASSIGNED')

        existing = Payment.query.filter(
            Payment.job_id == job.id,
            Payment.transaction_type == TransactionType.RUNNER_PAYOUT,
            Payment.status.in_((PaymentStatus.PENDING, PaymentStatus.CONFIRMED)),
        ).first()
        if existing is not None:
            raise conflict("A payout already exists for this job", 'PAYOUT_EXISTS',
                           payment_hash=existing.payment_hash, status=existing.status)

        inbound = Payment.query.filter_by(
            job_id=job.id,
            transaction_type=TransactionType.JOB_PAYMENT,
            status=PaymentStatus.CONFIRMED,
        ).first()
        if inbound is None:
            raise validation_error("No confirmed payment to pay out", 'JOB_NOT_PAID')

        profile = RunnerProfile.query.filter_by(user_id=job.runner_id).first()
        if profile is None or not profile.lightning_address:
            raise validation_error("Runner has no lightning address", 'NO_LIGHTNING_ADDRESS')

        net_sats, fee_sats = split_fee(int(inbound.amount_sats), self.fee_percent)
        if net_sats <= 0:
            raise validation_error("Payout amount after fees is not positive", 'INVALID_AMOUNT')

        lightning = self.lightning
        bolt11 = lightning.fetch_lightning_address_invoice(
            profile.lightning_address, net_sats, comment=f"ErrandBit job #{job.id}",
        )
        result = validate_invoice(bolt11, net_sats)
        if not result.is_valid:
            logger.warning("Lightning address for job %s returned an unusable invoice: %s",
                           job.id, result.reason)
            raise validation_error(result.details, result.reason)

        payout = PaymentLedger.create(
            job.id, result.invoice.payment_hash, net_sats,
            transaction_type=TransactionType.RUNNER_PAYOUT,
            user_id=job.runner_id,
            payment_request=normalize_invoice(bolt11),
            payment_method='provider',
            provider=lightning.provider_name,
        )

        try:
            status = lightning.pay_invoice(payout.payment_request)
        except PaymentError:
            # May already be in flight; leave it pending for reconciliation
            logger.error("Payout %s for job %s left pending after provider error",
                         short_hash(payout.payment_hash), job.id)
            raise

        if status.paid and status.preimage:
            PaymentLedger.settle_payout(payout, status.preimage)
        else:
            PaymentLedger.update_status(payout, PaymentStatus.FAILED, 'provider did not settle the payout')

        return {
            "job_id": job.id,
            "payment_hash": payout.payment_hash,
            "amount_sats": net_sats,
            "fee_sats": fee_sats,
            "status": payout.status,
        }

    def _payout_expires_at(self, payout: Payment):
        """Naive UTC expiry of the payout invoice; falls back to the configured invoice lifetime."""
        try:
            return naive_utc(decode_invoice(payout.payment_request).expires_at)
        except PaymentError:
            return payout.created_at + timedelta(seconds=Config.INVOICE_EXPIRY_SECONDS)

    def reconcile_pending_payouts(self, now=None) -> dict:
        """Resolve payouts left pending after a provider error.

        Settled at the provider: confirmed with the returned preimage.
        Unpaid and past the invoice expiry: failed. Anything else stays
        pending for the next pass.
        """
        now = naive_utc(now) if now is not None else utcnow()
        pending = Payment.query.filter_by(
            transaction_type=TransactionType.RUNNER_PAYOUT,
            status=PaymentStatus.PENDING,
        ).order_by(Payment.created_at, Payment.id).all()

        counts = {"checked": len(pending), "settled": 0, "failed": 0, "pending": 0}
        lightning = self.lightning
        for payout in pending:
            try:
                status = lightning.lookup_payment(payout.payment_hash)
            except PaymentError as e:
                logger.warning("Payout %s lookup failed: %s", short_hash(payout.payment_hash), e.message)
                counts["pending"] += 1
                continue

            if status.paid and status.preimage:
                try:
                    PaymentLedger.settle_payout(payout, status.preimage)
                except PaymentError as e:
                    logger.error("Payout %s not settled: %s", short_hash(payout.payment_hash), e.code)
                    counts["pending"] += 1
                    continue
                counts["settled"] += 1
            elif not status.paid and self._payout_expires_at(payout) <= now:
                PaymentLedger.update_status(payout, PaymentStatus.FAILED, 'payout invoice expired unpaid')
                counts["failed"] += 1
            else:
                counts["pending"] += 1

        if counts["settled"] or counts["failed"]:
            logger.info("Reconciled payouts: %d settled, %d failed, %d still pending",
                        counts["settled"], counts["failed"], counts["pending"])
        return counts


_payout_service = None


def get_payout_service() -> PayoutService:
    global _payout_service
    if _payout_service is None:
        _payout_service = PayoutService()
    return _payout_service
