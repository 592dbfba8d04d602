"""
Lightning invoice (BOLT 11) decoding and validation against an expected amount.

Validation is a pure check: it never touches the ledger. Callers decide what
to persist and whether a hash has already been used.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import bolt11

from core.errors import PaymentError, validation_error

logger = logging.getLogger('errandbit.invoice')

# BOLT 11: an invoice without an expiry tag is valid for one hour
DEFAULT_EXPIRY_SECONDS = 3600
MAX_INVOICE_LENGTH = 2048
MSAT_PER_SAT = 1000

_INVOICE_RE = re.compile(r'^(lnbcrt|lntbs|lntb|lnbc|lnsb)[0-9a-z]+$')

# Failure reasons
INVALID_INVOICE = 'INVALID_INVOICE'
MISSING_AMOUNT = 'MISSING_AMOUNT'
AMOUNT_MISMATCH = 'AMOUNT_MISMATCH'
EXPIRED = 'EXPIRED'


@dataclass(frozen=True)
class DecodedInvoice:
    payment_hash: str
    amount_msat: Optional[int]
    description: Optional[str]
    timestamp: datetime
    expires_at: datetime
    currency: Optional[str] = None

    @property
    def amount_sats(self) -> Optional[int]:
        if self.amount_msat is None:
            return None
        return self.amount_msat // MSAT_PER_SAT

    def to_dict(self) -> dict:
        return {
            "payment_hash": self.payment_hash,
            "amount_sats": self.amount_sats,
            "description": self.description,
            "timestamp": self.timestamp.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class InvoiceValidation:
    is_valid: bool
    invoice: Optional[DecodedInvoice] = None
    reason: Optional[str] = None
    details: Optional[str] = None

    def to_dict(self) -> dict:
        if not self.is_valid:
            return {"is_valid": False, "reason": self.reason, "details": self.details}
        d = {"is_valid": True}
        d.update(self.invoice.to_dict())
        return d


def normalize_invoice(raw) -> str:
    """Strip whitespace and a lightning: URI scheme; lowercase. Raises on bad shape."""
    if not isinstance(raw, str) or not raw.strip():
        raise validation_error("Lightning invoice (bolt11) is required", INVALID_INVOICE)
    candidate = raw.strip().lower()
    if candidate.startswith('lightning:'):
        candidate = candidate[len('lightning:'):]
    if len(candidate) > MAX_INVOICE_LENGTH or not _INVOICE_RE.match(candidate):
        raise validation_error("Invalid Lightning invoice format", INVALID_INVOICE)
    return candidate


def decode_invoice(raw: str) -> DecodedInvoice:
    """Decode a bolt11 string. Any decoding failure is a validation error."""
    candidate = normalize_invoice(raw)
    try:
        decoded = bolt11.decode(candidate)
    except Exception as e:
        logger.info("bolt11 decode failed: %s", e)
        raise validation_error("Failed to decode Lightning invoice", INVALID_INVOICE)

    payment_hash = getattr(decoded, 'payment_hash', None)
    if not payment_hash:
        raise validation_error("Invoice is missing a payment hash", INVALID_INVOICE)

    amount_msat = decoded.amount_msat
    amount_msat = int(amount_msat) if amount_msat is not None else None
    timestamp = datetime.fromtimestamp(int(decoded.date), tz=timezone.utc)
    expiry_seconds = getattr(decoded, 'expiry', None) or DEFAULT_EXPIRY_SECONDS

    return DecodedInvoice(
        payment_hash=payment_hash.lower(),
        amount_msat=amount_msat,
        description=getattr(decoded, 'description', None),
        timestamp=timestamp,
        expires_at=timestamp + timedelta(seconds=int(expiry_seconds)),
        currency=getattr(decoded, 'currency', None),
    )


def validate_invoice(raw: str, expected_amount_sats: int, now: datetime = None) -> InvoiceValidation:
    """Validate an invoice for settlement of exactly expected_amount_sats.

    No tolerance band: the expected amount is computed server-side from the
    job's agreed price, so any difference (even 1 sat) is a mismatch.
    """
    if not isinstance(expected_amount_sats, int) or isinstance(expected_amount_sats, bool) \
            or expected_amount_sats <= 0:
        raise validation_error("Expected amount must be a positive number of satoshis", 'INVALID_AMOUNT')
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    try:
        invoice = decode_invoice(raw)
    except PaymentError as e:
        return InvoiceValidation(False, reason=INVALID_INVOICE, details=e.message)

    if invoice.expires_at <= now:
        return InvoiceValidation(
            False, invoice, EXPIRED,
            f"Invoice expired at {invoice.expires_at.isoformat()}",
        )

    if not invoice.amount_msat:
        return InvoiceValidation(
            False, invoice, MISSING_AMOUNT,
            "Invoices without an amount cannot settle a job",
        )

    if invoice.amount_msat != expected_amount_sats * MSAT_PER_SAT:
        return InvoiceValidation(
            False, invoice, AMOUNT_MISMATCH,
            f"Expected {expected_amount_sats} sats, got {invoice.amount_msat / MSAT_PER_SAT:g} sats",
        )

    return InvoiceValidation(True, invoice)
