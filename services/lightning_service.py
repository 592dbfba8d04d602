"""
Lightning provider client for an LNbits-compatible HTTP API.

The node itself is external; this module only issues invoices, looks up
payment status, pays outbound invoices and resolves lightning addresses.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import requests as http_requests

from config import Config
from core.errors import unavailable, validation_error
from core.preimage import generate_preimage, require_payment_hash

logger = logging.getLogger('errandbit.lightning')


def short_hash(payment_hash) -> str:
    """Truncated hash for log lines."""
    return (payment_hash or '')[:10]


@dataclass
class ProviderInvoice:
    payment_hash: str
    payment_request: str
    amount_sats: int


@dataclass
class ProviderPaymentStatus:
    paid: bool
    preimage: Optional[str] = None


class LightningService:
    def __init__(self, base_url=None, api_key=None, admin_key=None, timeout=None):
        self.base_url = (base_url or Config.LNBITS_URL).rstrip('/')
        self.api_key = api_key if api_key is not None else Config.LNBITS_API_KEY
        self.admin_key = admin_key if admin_key is not None else Config.LNBITS_ADMIN_KEY
        self.timeout = timeout or Config.LIGHTNING_TIMEOUT_SECONDS
        self.provider_name = 'lnbits'

    def _request(self, method, path, key=None, **kwargs):
        headers = {'X-Api-Key': key or self.api_key, 'Content-Type': 'application/json'}
        url = f"{self.base_url}{path}"
        try:
            resp = http_requests.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except http_requests.RequestException as e:
            logger.error("Lightning provider %s %s failed: %s", method, path, e)
            raise unavailable("Lightning provider unreachable")
        if resp.status_code >= 500:
            logger.error("Lightning provider %s %s returned %d", method, path, resp.status_code)
            raise unavailable("Lightning provider error")
        return resp

    def create_invoice(self, amount_sats: int, memo: str = '', expiry: int = None) -> ProviderInvoice:
        if amount_sats <= 0:
            raise validation_error("Invoice amount must be positive", 'INVALID_AMOUNT')
        body = {
            "out": False,
            "amount": amount_sats,
            "memo": memo,
            "expiry": expiry or Config.INVOICE_EXPIRY_SECONDS,
        }
        resp = self._request('POST', '/api/v1/payments', json=body)
        if resp.status_code >= 400:
            logger.error("Invoice creation rejected (%d): %s", resp.status_code, resp.text[:200])
            raise unavailable("Lightning provider rejected invoice creation")
        data = resp.json()
        invoice = ProviderInvoice(
            payment_hash=data['payment_hash'].lower(),
            payment_request=data.get('payment_request') or data.get('bolt11'),
            amount_sats=amount_sats,
        )
        logger.info("Created invoice %s for %d sats", short_hash(invoice.payment_hash), amount_sats)
        return invoice

    def lookup_payment(self, payment_hash: str) -> ProviderPaymentStatus:
        payment_hash = require_payment_hash(payment_hash)
        resp = self._request('GET', f'/api/v1/payments/{payment_hash}')
        if resp.status_code == 404:
            return ProviderPaymentStatus(paid=False)
        if resp.status_code >= 400:
            raise unavailable("Lightning provider lookup failed")
        data = resp.json()
        paid = bool(data.get('paid'))
        preimage = data.get('preimage') if paid else None
        # LNbits reports an all-zero preimage for internal transfers it did not settle
        if preimage and set(preimage) == {'0'}:
            preimage = None
        return ProviderPaymentStatus(paid=paid, preimage=preimage)

    def check_connection(self) -> bool:
        """Probe the wallet endpoint. Raises unavailable on transport errors."""
        resp = self._request('GET', '/api/v1/wallet')
        return resp.status_code == 200

    def pay_invoice(self, bolt11: str) -> ProviderPaymentStatus:
        """Pay an outbound invoice. Requires the admin key."""
        if not self.admin_key:
            raise unavailable("Outbound payments are not configured", 'PAYOUTS_NOT_CONFIGURED')
        resp = self._request('POST', '/api/v1/payments', key=self.admin_key,
                             json={"out": True, "bolt11": bolt11})
        if resp.status_code >= 400:
            logger.warning("Outbound payment rejected (%d): %s", resp.status_code, resp.text[:200])
            return ProviderPaymentStatus(paid=False)
        data = resp.json()
        payment_hash = data.get('payment_hash')
        if not payment_hash:
            return ProviderPaymentStatus(paid=False)
        # The POST returns once the payment is in flight; the lookup carries the preimage
        return self.lookup_payment(payment_hash)

    def fetch_lightning_address_invoice(self, address: str, amount_sats: int, comment: str = '') -> str:
        """Resolve user@domain via LNURL-pay and return a bolt11 for amount_sats."""
        if not address or address.count('@') != 1:
            raise validation_error("Invalid lightning address", 'INVALID_LIGHTNING_ADDRESS')
        user, domain = address.split('@')
        if not user or not domain:
            raise validation_error("Invalid lightning address", 'INVALID_LIGHTNING_ADDRESS')

        amount_msat = amount_sats * 1000
        try:
            meta = http_requests.get(f"https://{domain}/.well-known/lnurlp/{user}", timeout=self.timeout)
            meta.raise_for_status()
            params = meta.json()
            if params.get('status') == 'ERROR':
                raise validation_error(params.get('reason') or "Lightning address rejected the request",
                                       'LNURL_ERROR')
            min_sendable = int(params.get('minSendable', 0))
            max_sendable = int(params.get('maxSendable', 0))
            if not (min_sendable <= amount_msat <= max_sendable):
                raise validation_error(
                    f"Amount {amount_sats} sats outside the address range "
                    f"{min_sendable // 1000}-{max_sendable // 1000} sats",
                    'LNURL_AMOUNT_OUT_OF_RANGE',
                )
            query = {"amount": amount_msat}
            if comment and params.get('commentAllowed'):
                query["comment"] = comment[:int(params['commentAllowed'])]
            cb = http_requests.get(params['callback'], params=query, timeout=self.timeout)
            cb.raise_for_status()
            data = cb.json()
        except (http_requests.RequestException, KeyError, ValueError) as e:
            logger.warning("LNURL-pay for %s failed: %s", domain, e)
            raise unavailable("Lightning address could not be resolved", 'LNURL_UNAVAILABLE')

        if data.get('status') == 'ERROR' or not data.get('pr'):
            raise validation_error(data.get('reason') or "Lightning address returned no invoice", 'LNURL_ERROR')
        return data['pr']


class DevLightningService(LightningService):
    """Local stand-in for DEV_MODE: invoices settle only via the preimages it hands out."""

    def __init__(self):
        super().__init__(base_url='http://dev.local', api_key='dev', admin_key='dev')
        self.provider_name = 'dev'
        self._invoices = {}   # payment_hash -> (preimage, amount_sats, paid)

    def create_invoice(self, amount_sats: int, memo: str = '', expiry: int = None) -> ProviderInvoice:
        if amount_sats <= 0:
            raise validation_error("Invoice amount must be positive", 'INVALID_AMOUNT')
        preimage, payment_hash = generate_preimage()
        self._invoices[payment_hash] = [preimage, amount_sats, False]
        logger.info("Dev invoice %s for %d sats", short_hash(payment_hash), amount_sats)
        return ProviderInvoice(payment_hash=payment_hash, payment_request=None, amount_sats=amount_sats)

    def mark_paid(self, payment_hash: str) -> str:
        """Simulate the payer settling; returns the preimage."""
        entry = self._invoices[payment_hash]
        entry[2] = True
        return entry[0]

    def lookup_payment(self, payment_hash: str) -> ProviderPaymentStatus:
        payment_hash = require_payment_hash(payment_hash)
        entry = self._invoices.get(payment_hash)
        if not entry or not entry[2]:
            return ProviderPaymentStatus(paid=False)
        return ProviderPaymentStatus(paid=True, preimage=entry[0])

    def check_connection(self) -> bool:
        return True

    def pay_invoice(self, bolt11: str) -> ProviderPaymentStatus:
        from core.invoice import decode_invoice
        invoice = decode_invoice(bolt11)
        entry = self._invoices.get(invoice.payment_hash)
        if entry:
            entry[2] = True
            return ProviderPaymentStatus(paid=True, preimage=entry[0])
        return ProviderPaymentStatus(paid=False)

    def fetch_lightning_address_invoice(self, address: str, amount_sats: int, comment: str = '') -> str:
        raise unavailable("Lightning addresses are not resolvable in dev mode", 'LNURL_UNAVAILABLE')


_lightning_service = None


def get_lightning_service() -> LightningService:
    global _lightning_service
    if _lightning_service is None:
        if Config.DEV_MODE and not Config.LNBITS_API_KEY:
            logger.warning("DEV_MODE without LNBITS_API_KEY: using the local dev provider")
            _lightning_service = DevLightningService()
        else:
            _lightning_service = LightningService()
    return _lightning_service


def set_lightning_service(service):
    """Replace the process provider (tests)."""
    global _lightning_service
    _lightning_service = service
