"""
Payment lifecycle and the job statuses it is coupled to.

    pending -> confirmed | expired | failed | disputed
    confirmed -> disputed          (administrative override only)

Nothing re-enters pending; a retry is a new payment with a new hash.
"""
from core.errors import conflict


class PaymentStatus:
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    EXPIRED = 'expired'
    FAILED = 'failed'
    DISPUTED = 'disputed'

    ALL = (PENDING, CONFIRMED, EXPIRED, FAILED, DISPUTED)
    # Statuses that hold the job's single active-payment slot
    ACTIVE = (PENDING, CONFIRMED, DISPUTED)
    TERMINAL = (CONFIRMED, EXPIRED, FAILED)


class TransactionType:
    JOB_PAYMENT = 'job_payment'
    RUNNER_PAYOUT = 'runner_payout'


class VerificationLevel:
    PENDING = 'pending'
    CRYPTOGRAPHIC = 'cryptographic'
    PENDING_MANUAL = 'pending_manual'
    DISPUTED = 'disputed'


class JobStatus:
    OPEN = 'open'
    ACCEPTED = 'accepted'
    IN_PROGRESS = 'in_progress'
    AWAITING_PAYMENT = 'awaiting_payment'
    PAYMENT_CONFIRMED = 'payment_confirmed'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


PAYABLE_JOB_STATUSES = (JobStatus.IN_PROGRESS, JobStatus.AWAITING_PAYMENT)
PAID_JOB_STATUSES = (JobStatus.PAYMENT_CONFIRMED, JobStatus.COMPLETED)

_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.CONFIRMED,
        PaymentStatus.EXPIRED,
        PaymentStatus.FAILED,
        PaymentStatus.DISPUTED,
    }),
    PaymentStatus.CONFIRMED: frozenset({PaymentStatus.DISPUTED}),
    PaymentStatus.EXPIRED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.DISPUTED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


def assert_transition(current: str, target: str):
    if not can_transition(current, target):
        raise conflict(
            f"Payment cannot move from {current} to {target}",
            'INVALID_TRANSITION',
            current_status=current,
        )


def holds_active_slot(status: str) -> bool:
    return status in PaymentStatus.ACTIVE
