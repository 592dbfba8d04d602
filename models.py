from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

db = SQLAlchemy()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(dt: datetime) -> datetime:
    """Convert an aware datetime to naive UTC for column comparisons."""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def utc_iso(dt):
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


# ---------------------------------------------------------------------------
# External entities (owned by the auth/job services, read by the payments core)
# ---------------------------------------------------------------------------

class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), nullable=False, unique=True)
    role = db.Column(db.String(20), nullable=False, default='client')
    # Roles: 'client', 'runner', 'admin'
    api_key_hash = db.Column(db.String(128), nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=utcnow)


class RunnerProfile(db.Model):
    __tablename__ = 'runner_profiles'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, unique=True)
    display_name = db.Column(db.String(100))
    lightning_address = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utcnow)


class Job(db.Model):
    __tablename__ = 'jobs'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.Text, nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(30), default='open', index=True)
    # Statuses: 'open', 'accepted', 'in_progress', 'awaiting_payment',
    #           'payment_confirmed', 'completed', 'cancelled'
    client_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    runner_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    payment_confirmed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)


# ---------------------------------------------------------------------------
# Payment ledger
# ---------------------------------------------------------------------------

class Payment(db.Model):
    """One Lightning payment attempt. Rows are updated, never deleted."""
    __tablename__ = 'payments'
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('jobs.id'), nullable=False, index=True)
    # Set to job_id while a job payment is pending/confirmed/disputed, NULL otherwise.
    # The unique constraint allows at most one active payment per job.
    active_job_id = db.Column(db.Integer, nullable=True, unique=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    transaction_type = db.Column(db.String(20), nullable=False, default='job_payment')
    # Types: 'job_payment' (inbound, client -> runner), 'runner_payout' (outbound)
    payment_hash = db.Column(db.String(64), nullable=False, unique=True)
    preimage = db.Column(db.String(64), nullable=True)
    payment_request = db.Column(db.Text, nullable=True)
    amount_sats = db.Column(db.BigInteger, nullable=False)
    amount_cents = db.Column(db.Integer, nullable=True)
    sats_per_usd = db.Column(db.Numeric(20, 4), nullable=True)
    status = db.Column(db.String(20), nullable=False, default='pending', index=True)
    # Statuses: 'pending', 'confirmed', 'failed', 'expired', 'disputed'
    payment_method = db.Column(db.String(20), nullable=True)
    # Methods: 'webln', 'qr', 'manual', 'upload', 'provider'
    verification_level = db.Column(db.String(30), nullable=False, default='pending')
    # Levels: 'pending', 'cryptographic', 'pending_manual', 'disputed'
    proof_image = db.Column(db.Text, nullable=True)
    provider = db.Column(db.String(20), nullable=True)
    failure_reason = db.Column(db.Text, nullable=True)
    dispute_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    paid_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.CheckConstraint('amount_sats > 0', name='ck_payments_amount_positive'),
        db.Index('ix_payments_status_created', 'status', 'created_at'),
        db.Index('ix_payments_type_created', 'transaction_type', 'created_at'),
    )

    def to_dict(self, include_proof: bool = False) -> dict:
        d = {
            "id": self.id,
            "job_id": self.job_id,
            "transaction_type": self.transaction_type,
            "payment_hash": self.payment_hash,
            "payment_request": self.payment_request,
            "amount_sats": int(self.amount_sats) if self.amount_sats is not None else None,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "payment_method": self.payment_method,
            "verification_level": self.verification_level,
            "failure_reason": self.failure_reason,
            "created_at": utc_iso(self.created_at),
            "paid_at": utc_iso(self.paid_at),
        }
        if include_proof:
            d["proof_image"] = self.proof_image
        return d


class PaymentQuote(db.Model):
    """The sats amount quoted to a job's client. Reused until a new instruction replaces it."""
    __tablename__ = 'payment_quotes'
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('jobs.id'), nullable=False, unique=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    amount_sats = db.Column(db.BigInteger, nullable=False)
    sats_per_usd = db.Column(db.Numeric(20, 4), nullable=False)
    quoted_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "amount_cents": self.amount_cents,
            "amount_sats": int(self.amount_sats),
            "sats_per_usd": float(self.sats_per_usd),
            "quoted_at": utc_iso(self.quoted_at),
        }
