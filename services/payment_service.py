"""
Payment flows behind the HTTP surface: instructions, invoice registration,
confirmation, provider lookups and manual proof.

The sats amount for a job is captured once as a PaymentQuote and reused by
validation, registration and provider invoices. Only a new payment
instruction re-derives it, and only once it is older than
PAYMENT_QUOTE_TTL_MINUTES.
"""
import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from config import Config
from core.errors import conflict, forbidden, not_found, validation_error
from core.invoice import InvoiceValidation, normalize_invoice, validate_invoice
from core.state_machine import PAYABLE_JOB_STATUSES, PaymentStatus, TransactionType
from models import db, Job, PaymentQuote, RunnerProfile, utcnow
from services.lightning_service import get_lightning_service, short_hash
from services.payment_ledger import PaymentLedger, transaction
from services.rate_oracle import get_rate_oracle

logger = logging.getLogger('errandbit.payments')

INVOICE_ALREADY_USED = 'INVOICE_ALREADY_USED'


def _get_job(job_id) -> Job:
    job = db.session.get(Job, job_id)
    if job is None:
        raise not_found("Job not found", 'JOB_NOT_FOUND')
    return job


def _require_client(job: Job, caller_id):
    if job.client_id != caller_id:
        raise forbidden("Only the job's client can perform this action", 'NOT_JOB_CLIENT')


def _require_party(job: Job, caller_id, allow_admin=False):
    if allow_admin or caller_id in (job.client_id, job.runner_id):
        return
    raise forbidden("Only the job's client or runner can view this payment", 'NOT_JOB_PARTY')


def _require_payable(job: Job):
    if job.status not in PAYABLE_JOB_STATUSES:
        raise validation_error(
            f"Job is not awaiting payment (current: {job.status})",
            'JOB_NOT_PAYABLE',
            job_status=job.status,
        )


def get_quote(job: Job, refresh: bool = False) -> PaymentQuote:
    """The job's captured quote, created on first use.

    A quote is re-derived when the job price changed, or when refresh is
    set and the quote has aged past PAYMENT_QUOTE_TTL_MINUTES.
    """
    quote = PaymentQuote.query.filter_by(job_id=job.id).first()
    if quote is not None and quote.amount_cents == job.price_cents:
        max_age = timedelta(minutes=Config.PAYMENT_QUOTE_TTL_MINUTES)
        if not refresh or quote.quoted_at > utcnow() - max_age:
            return quote

    amount_sats, rate = get_rate_oracle().quote(job.price_cents)
    try:
        with transaction():
            if quote is None:
                quote = PaymentQuote(job_id=job.id)
                db.session.add(quote)
            quote.amount_cents = job.price_cents
            quote.amount_sats = amount_sats
            quote.sats_per_usd = rate
            quote.quoted_at = utcnow()
    except IntegrityError:
        # A concurrent request captured the first quote
        return PaymentQuote.query.filter_by(job_id=job.id).one()
    logger.info("Quoted job %s at %d sats (%s sats/USD)", job.id, amount_sats, rate)
    return quote


def _expected_amount(job: Job, refresh: bool = False) -> tuple:
    """(amount_sats, sats_per_usd): the pending payment's amount if there is one, else the captured quote."""
    active = PaymentLedger.find_by_job(job.id)
    if active is not None and active.status == PaymentStatus.PENDING:
        return int(active.amount_sats), active.sats_per_usd
    quote = get_quote(job, refresh=refresh)
    return int(quote.amount_sats), quote.sats_per_usd


class PaymentService:
    @staticmethod
    def get_payment_instruction(job_id: int, caller_id: int) -> dict:
        job = _get_job(job_id)
        _require_client(job, caller_id)
        _require_payable(job)
        if not job.runner_id:
            raise validation_error("Job has no runner assigned", 'NO_RUNNER_ASSIGNED')

        profile = RunnerProfile.query.filter_by(user_id=job.runner_id).first()
        amount_sats, rate = _expected_amount(job, refresh=True)
        pending = PaymentLedger.find_by_job(job.id)
        runner = {
            "lightning_address": profile.lightning_address if profile else None,
            "display_name": profile.display_name if profile else None,
        }

        instructions = []
        if runner["lightning_address"]:
            instructions.append(f"Send {amount_sats} sats to {runner['lightning_address']}")
        else:
            instructions.append(f"Ask the runner for a Lightning invoice of exactly {amount_sats} sats")
        instructions.extend([
            "Pay with WebLN, by scanning the invoice QR code, or from any Lightning wallet",
            "Submit the payment preimage from your wallet to confirm the payment",
            "The preimage proves payment: sha256(preimage) must equal the invoice payment hash",
        ])

        return {
            "job_id": job.id,
            "amount_cents": job.price_cents,
            "amount_sats": amount_sats,
            "sats_per_usd": float(rate) if rate is not None else None,
            "fiat_equiv_usd": round(job.price_cents / 100, 2),
            "runner": runner,
            "pending_payment": pending.to_dict() if pending is not None and pending.status == PaymentStatus.PENDING else None,
            "instructions": instructions,
        }

    @staticmethod
    def validate_invoice_for_job(job_id: int, bolt11: str, caller_id: int) -> InvoiceValidation:
        job = _get_job(job_id)
        _require_party(job, caller_id)
        amount_sats, _ = _expected_amount(job)

        result = validate_invoice(bolt11, amount_sats)
        if not result.is_valid:
            return result

        existing = PaymentLedger.find_by_hash(result.invoice.payment_hash)
        if existing is not None and (existing.status == PaymentStatus.CONFIRMED or existing.job_id != job.id):
            return InvoiceValidation(False, result.invoice, INVOICE_ALREADY_USED,
                                     "This invoice has already been used for a payment")
        return result

    @staticmethod
    def register_invoice(job_id: int, bolt11: str, caller_id: int, method: str = None):
        """Record a runner-issued invoice for the quoted amount as the job's pending payment."""
        job = _get_job(job_id)
        _require_client(job, caller_id)
        _require_payable(job)

        quote = get_quote(job)
        amount_sats = int(quote.amount_sats)
        result = validate_invoice(bolt11, amount_sats)
        if not result.is_valid:
            raise validation_error(result.details, result.reason, is_valid=False, reason=result.reason)

        return PaymentLedger.create(
            job.id, result.invoice.payment_hash, amount_sats,
            amount_cents=job.price_cents,
            sats_per_usd=quote.sats_per_usd,
            user_id=caller_id,
            payment_request=normalize_invoice(bolt11),
            payment_method=method,
            provider='external',
        )

    @staticmethod
    def create_provider_invoice(job_id: int, caller_id: int, method: str = None):
        """Ask the Lightning provider for an invoice and record it as pending."""
        job = _get_job(job_id)
        _require_client(job, caller_id)
        _require_payable(job)

        active = PaymentLedger.find_by_job(job.id)
        if active is not None and active.status in PaymentStatus.ACTIVE:
            raise conflict("An active payment already exists for this job", 'PAYMENT_EXISTS',
                           payment_hash=active.payment_hash, status=active.status)

        quote = get_quote(job)
        amount_sats = int(quote.amount_sats)
        lightning = get_lightning_service()
        invoice = lightning.create_invoice(amount_sats, memo=f"ErrandBit job #{job.id}: {job.title[:60]}")
        return PaymentLedger.create(
            job.id, invoice.payment_hash, amount_sats,
            amount_cents=job.price_cents,
            sats_per_usd=quote.sats_per_usd,
            user_id=caller_id,
            payment_request=invoice.payment_request,
            payment_method=method,
            provider=lightning.provider_name,
        )

    @staticmethod
    def confirm_payment(job_id: int, caller_id: int, payment_hash: str, preimage: str,
                        method: str = None) -> dict:
        payment = PaymentLedger.confirm(job_id, caller_id, payment_hash, preimage, payment_method=method)
        return {
            "success": True,
            "status": "payment_confirmed",
            "job_id": job_id,
            "payment_hash": payment.payment_hash,
            "amount_sats": int(payment.amount_sats),
            "verification_level": payment.verification_level,
            "paid_at": payment.to_dict()["paid_at"],
        }

    @staticmethod
    def _settle_from_provider(payment) -> dict:
        """Look a pending job payment up at the provider and confirm it when settled."""
        if payment.status != PaymentStatus.PENDING or payment.transaction_type != TransactionType.JOB_PAYMENT:
            return {"paid": payment.status == PaymentStatus.CONFIRMED, "payment": payment.to_dict()}

        status = get_lightning_service().lookup_payment(payment.payment_hash)
        if not status.paid or not status.preimage:
            return {"paid": False, "payment": payment.to_dict()}

        logger.info("Provider reports payment %s settled", short_hash(payment.payment_hash))
        job = _get_job(payment.job_id)
        # The provider's preimage is the proof; confirm on the client's behalf
        payment = PaymentLedger.confirm(
            job.id, job.client_id, payment.payment_hash, status.preimage, payment_method='provider',
        )
        return {"paid": True, "payment": payment.to_dict()}

    @staticmethod
    def check_provider_payment(payment_hash: str, caller_id: int, admin: bool = False) -> dict:
        payment = PaymentLedger.find_by_hash(payment_hash)
        if payment is None:
            raise not_found("Payment not found", 'PAYMENT_NOT_FOUND')
        job = _get_job(payment.job_id)
        _require_party(job, caller_id, allow_admin=admin)
        return PaymentService._settle_from_provider(payment)

    @staticmethod
    def handle_provider_webhook(payment_hash: str) -> dict:
        """Provider push notification. The notification itself proves nothing;
        the payment is confirmed only if the provider lookup returns its preimage."""
        payment = PaymentLedger.find_by_hash(payment_hash)
        if payment is None:
            raise not_found("Payment not found", 'PAYMENT_NOT_FOUND')
        return PaymentService._settle_from_provider(payment)

    @staticmethod
    def attach_proof(job_id: int, payment_hash: str, proof_image: str, caller_id: int,
                     method: str = 'upload'):
        job = _get_job(job_id)
        _require_client(job, caller_id)
        payment = PaymentLedger.find_by_hash(payment_hash)
        if payment is None:
            raise not_found("Payment not found", 'PAYMENT_NOT_FOUND')
        if payment.job_id != job.id or payment.transaction_type != TransactionType.JOB_PAYMENT:
            raise conflict("Payment hash belongs to another payment", 'PAYMENT_HASH_IN_USE')
        return PaymentLedger.record_proof(payment, proof_image, method)

    @staticmethod
    def get_payment(payment_hash: str, caller_id: int, admin: bool = False) -> dict:
        payment = PaymentLedger.find_by_hash(payment_hash)
        if payment is None:
            raise not_found("Payment not found", 'PAYMENT_NOT_FOUND')
        job = _get_job(payment.job_id)
        _require_party(job, caller_id, allow_admin=admin)
        return payment.to_dict(include_proof=admin)
