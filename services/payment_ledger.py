"""
Payment ledger: the durable record of every payment attempt.

All writes go through PaymentLedger so that status changes are checked
against the state machine and the job's active-payment slot
(Payment.active_job_id) stays consistent with the payment status.
"""
import logging
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError

from core.errors import conflict, forbidden, not_found, validation_error
from core.preimage import require_payment_hash, require_preimage, verify_preimage
from core.state_machine import (
    PAID_JOB_STATUSES, PAYABLE_JOB_STATUSES,
    JobStatus, PaymentStatus, TransactionType, VerificationLevel,
    assert_transition, holds_active_slot,
)
from models import db, Job, Payment, naive_utc, utcnow

logger = logging.getLogger('errandbit.ledger')

MAX_PAGE_SIZE = 200


@contextmanager
def transaction():
    """Commit on success, roll back on any exception and re-raise."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _short(payment_hash) -> str:
    return (payment_hash or '')[:10]


def _require_amount(amount_sats):
    if not isinstance(amount_sats, int) or isinstance(amount_sats, bool) or amount_sats <= 0:
        raise validation_error("Payment amount must be a positive number of satoshis", 'INVALID_AMOUNT')


class PaymentLedger:
    @staticmethod
    def _new_payment(job_id, payment_hash, amount_sats, transaction_type=TransactionType.JOB_PAYMENT,
                     **fields) -> Payment:
        payment = Payment(
            job_id=job_id,
            payment_hash=payment_hash,
            amount_sats=amount_sats,
            transaction_type=transaction_type,
            status=PaymentStatus.PENDING,
            **fields,
        )
        if transaction_type == TransactionType.JOB_PAYMENT:
            payment.active_job_id = job_id
        db.session.add(payment)
        return payment

    @staticmethod
    def create(job_id: int, payment_hash: str, amount_sats: int,
               transaction_type: str = TransactionType.JOB_PAYMENT, **fields) -> Payment:
        """Insert a pending payment.

        Extra keyword fields (amount_cents, sats_per_usd, user_id,
        payment_request, payment_method, provider) are stored as given.
        """
        payment_hash = require_payment_hash(payment_hash)
        _require_amount(amount_sats)

        if transaction_type == TransactionType.JOB_PAYMENT:
            active = Payment.query.filter_by(active_job_id=job_id).first()
            if active is not None:
                raise conflict(
                    "An active payment already exists for this job",
                    'PAYMENT_EXISTS',
                    payment_hash=active.payment_hash,
                    status=active.status,
                )
        if Payment.query.filter_by(payment_hash=payment_hash).first() is not None:
            raise conflict("A payment with this hash already exists", 'DUPLICATE_PAYMENT_HASH')

        try:
            with transaction():
                payment = PaymentLedger._new_payment(
                    job_id, payment_hash, amount_sats, transaction_type, **fields,
                )
        except IntegrityError:
            # Lost a race against a concurrent insert; report which constraint won
            if Payment.query.filter_by(payment_hash=payment_hash).first() is not None:
                raise conflict("A payment with this hash already exists", 'DUPLICATE_PAYMENT_HASH')
            raise conflict("An active payment already exists for this job", 'PAYMENT_EXISTS')

        logger.info("Payment %s created for job %s (%d sats, %s)",
                    _short(payment_hash), job_id, amount_sats, transaction_type)
        return payment

    @staticmethod
    def find_by_hash(payment_hash: str) -> Payment:
        payment_hash = require_payment_hash(payment_hash)
        return Payment.query.filter_by(payment_hash=payment_hash).first()

    @staticmethod
    def find_by_job(job_id: int, transaction_type: str = TransactionType.JOB_PAYMENT) -> Payment:
        """The job's active payment if there is one, else its most recent attempt."""
        if transaction_type == TransactionType.JOB_PAYMENT:
            active = Payment.query.filter_by(active_job_id=job_id).first()
            if active is not None:
                return active
        return (Payment.query
                .filter_by(job_id=job_id, transaction_type=transaction_type)
                .order_by(Payment.created_at.desc(), Payment.id.desc())
                .first())

    @staticmethod
    def list(limit=50, offset=0, status=None, transaction_type=None, job_id=None) -> tuple:
        """Return (payments, total), newest first."""
        query = Payment.query
        if status:
            query = query.filter(Payment.status == status)
        if transaction_type:
            query = query.filter(Payment.transaction_type == transaction_type)
        if job_id is not None:
            query = query.filter(Payment.job_id == job_id)
        total = query.count()
        limit = min(max(1, limit), MAX_PAGE_SIZE)
        items = (query.order_by(Payment.created_at.desc(), Payment.id.desc())
                 .offset(max(0, offset)).limit(limit).all())
        return items, total

    @staticmethod
    def _apply_status(payment: Payment, new_status: str, reason: str = None):
        assert_transition(payment.status, new_status)
        payment.status = new_status
        if not holds_active_slot(new_status):
            payment.active_job_id = None
        if new_status in (PaymentStatus.EXPIRED, PaymentStatus.FAILED):
            payment.failure_reason = reason
        elif new_status == PaymentStatus.DISPUTED:
            payment.dispute_reason = reason
            payment.verification_level = VerificationLevel.DISPUTED

    @staticmethod
    def update_status(payment: Payment, new_status: str, reason: str = None) -> Payment:
        """Move a payment along the state machine. Confirming goes through confirm()."""
        if new_status == PaymentStatus.CONFIRMED:
            raise validation_error("Confirmation requires a verified preimage", 'PREIMAGE_REQUIRED')
        old_status = payment.status
        with transaction():
            PaymentLedger._apply_status(payment, new_status, reason)
        logger.info("Payment %s %s -> %s", _short(payment.payment_hash), old_status, new_status)
        return payment

    @staticmethod
    def confirm(job_id: int, caller_id: int, payment_hash: str, preimage: str,
                payment_method: str = None) -> Payment:
        """Verify the preimage against a recorded pending invoice and confirm it with the job.

        Either both the payment row and the job move to their confirmed
        states, or nothing changes.
        """
        payment_hash = require_payment_hash(payment_hash)
        preimage = require_preimage(preimage)

        try:
            with transaction():
                job = db.session.query(Job).filter_by(id=job_id).with_for_update().first()
                if job is None:
                    raise not_found("Job not found", 'JOB_NOT_FOUND')
                if job.client_id != caller_id:
                    raise forbidden("Only the job's client can confirm its payment", 'NOT_JOB_CLIENT')

                already = Payment.query.filter_by(
                    job_id=job.id,
                    transaction_type=TransactionType.JOB_PAYMENT,
                    status=PaymentStatus.CONFIRMED,
                ).first()
                if job.status in PAID_JOB_STATUSES or already is not None:
                    raise conflict("Payment already confirmed for this job", 'PAYMENT_ALREADY_CONFIRMED')
                if job.status not in PAYABLE_JOB_STATUSES:
                    raise validation_error(
                        f"Job is not awaiting payment (current: {job.status})",
                        'JOB_NOT_PAYABLE',
                        job_status=job.status,
                    )

                if not verify_preimage(preimage, payment_hash):
                    logger.warning("Preimage mismatch for payment %s (job %s)", _short(payment_hash), job.id)
                    raise validation_error("Preimage does not match payment hash", 'PREIMAGE_MISMATCH')

                payment = Payment.query.filter_by(payment_hash=payment_hash).first()
                if payment is None:
                    # Only an invoice this ledger recorded can be settled
                    logger.warning("Confirm for unknown payment %s (job %s)", _short(payment_hash), job.id)
                    raise not_found("No invoice was issued for this payment hash", 'PAYMENT_NOT_FOUND')
                if payment.job_id != job.id or payment.transaction_type != TransactionType.JOB_PAYMENT:
                    raise conflict("Payment hash belongs to another payment", 'PAYMENT_HASH_IN_USE')
                if payment.status == PaymentStatus.EXPIRED:
                    raise conflict("Invoice expired before the payment was confirmed", 'PAYMENT_EXPIRED')
                if payment.status == PaymentStatus.FAILED:
                    raise conflict("Payment was marked failed", 'PAYMENT_FAILED')

                assert_transition(payment.status, PaymentStatus.CONFIRMED)
                now = utcnow()
                payment.status = PaymentStatus.CONFIRMED
                payment.preimage = preimage
                payment.paid_at = now
                payment.verification_level = VerificationLevel.CRYPTOGRAPHIC
                payment.active_job_id = job.id
                if payment_method:
                    payment.payment_method = payment_method

                job.status = JobStatus.PAYMENT_CONFIRMED
                job.payment_confirmed_at = now
        except IntegrityError:
            logger.warning("Concurrent confirmation for job %s rejected", job_id)
            raise conflict("Payment already confirmed for this job", 'PAYMENT_ALREADY_CONFIRMED')

        logger.info("Payment %s confirmed for job %s (%d sats)",
                    _short(payment_hash), job_id, int(payment.amount_sats))
        return payment

    @staticmethod
    def settle_payout(payment: Payment, preimage: str) -> Payment:
        """Confirm an outbound runner payout once the provider returns its preimage."""
        if payment.transaction_type != TransactionType.RUNNER_PAYOUT:
            raise validation_error("Only runner payouts settle without a job transition", 'NOT_A_PAYOUT')
        if not verify_preimage(preimage, payment.payment_hash):
            raise validation_error("Preimage does not match payment hash", 'PREIMAGE_MISMATCH')
        with transaction():
            assert_transition(payment.status, PaymentStatus.CONFIRMED)
            payment.status = PaymentStatus.CONFIRMED
            payment.preimage = preimage.lower()
            payment.paid_at = utcnow()
            payment.verification_level = VerificationLevel.CRYPTOGRAPHIC
        logger.info("Payout %s settled for job %s", _short(payment.payment_hash), payment.job_id)
        return payment

    @staticmethod
    def record_proof(payment: Payment, proof_image: str, payment_method: str) -> Payment:
        """Attach payer-supplied evidence to a pending payment. Does not confirm it."""
        if payment.status != PaymentStatus.PENDING:
            raise conflict(
                f"Proof can only be attached to a pending payment (current: {payment.status})",
                'PAYMENT_NOT_PENDING',
                current_status=payment.status,
            )
        with transaction():
            payment.proof_image = proof_image
            payment.payment_method = payment_method
            payment.verification_level = VerificationLevel.PENDING_MANUAL
        logger.info("Proof attached to payment %s (manual review)", _short(payment.payment_hash))
        return payment

    @staticmethod
    def expire_stale(cutoff) -> int:
        """Expire pending job payments created before cutoff. Returns rows changed."""
        cutoff = naive_utc(cutoff)
        with transaction():
            count = Payment.query.filter(
                Payment.transaction_type == TransactionType.JOB_PAYMENT,
                Payment.status == PaymentStatus.PENDING,
                Payment.created_at < cutoff,
            ).update({
                Payment.status: PaymentStatus.EXPIRED,
                Payment.active_job_id: None,
                Payment.failure_reason: 'invoice expired',
                Payment.updated_at: utcnow(),
            }, synchronize_session=False)
        if count:
            logger.info("Expired %d stale pending payments", count)
        return count

    @staticmethod
    def dispute(payment: Payment, reason: str) -> Payment:
        """Administrative override: pending or confirmed -> disputed."""
        if not reason or not str(reason).strip():
            raise validation_error("A dispute reason is required", 'DISPUTE_REASON_REQUIRED')
        old_status = payment.status
        with transaction():
            PaymentLedger._apply_status(payment, PaymentStatus.DISPUTED, str(reason).strip()[:2000])
        logger.warning("Payment %s disputed (was %s)", _short(payment.payment_hash), old_status)
        return payment
