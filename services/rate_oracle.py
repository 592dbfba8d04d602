"""
BTC/USD rate oracle and cents <-> sats conversion.

A job's amount is captured once as a quote; a later rate change never
renegotiates a quoted or pending payment.
"""
import logging
import threading
import time
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

import requests as http_requests

from config import Config
from core.errors import validation_error

logger = logging.getLogger('errandbit.rates')

SATS_PER_BTC = Decimal(100_000_000)


def cents_to_sats(amount_cents: int, sats_per_usd) -> int:
    """round(cents * sats_per_usd / 100), half-up. Result is always >= 1."""
    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
        raise validation_error("Amount must be a positive number of cents", 'INVALID_AMOUNT')
    rate = Decimal(str(sats_per_usd))
    if rate <= 0:
        raise validation_error("Exchange rate must be positive", 'INVALID_RATE')
    sats = (Decimal(amount_cents) * rate / 100).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return max(1, int(sats))


def sats_to_cents(amount_sats: int, sats_per_usd) -> int:
    rate = Decimal(str(sats_per_usd))
    if rate <= 0:
        raise validation_error("Exchange rate must be positive", 'INVALID_RATE')
    return int((Decimal(amount_sats) * 100 / rate).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def btc_usd_to_sats_per_usd(btc_usd) -> Decimal:
    return (SATS_PER_BTC / Decimal(str(btc_usd))).quantize(Decimal('0.0001'))


class FixedRateOracle:
    """Constant rate. Used in tests and as the dev-mode oracle."""

    def __init__(self, sats_per_usd):
        self._rate = Decimal(str(sats_per_usd))

    def get_sats_per_usd(self) -> Decimal:
        return self._rate

    def quote(self, amount_cents: int) -> tuple:
        """Return (amount_sats, sats_per_usd) for a price in cents."""
        rate = self.get_sats_per_usd()
        return cents_to_sats(amount_cents, rate), rate


class RateOracle(FixedRateOracle):
    """Fetches BTC/USD from a Coinbase-format endpoint, cached for ttl_seconds.

    On any fetch failure the last good rate is reused; with none cached,
    the configured fallback price applies.
    """

    def __init__(self, url=None, fallback_btc_usd=None, ttl_seconds=None, timeout=None):
        self.url = url or Config.BTC_RATE_URL
        self.fallback_btc_usd = fallback_btc_usd or Config.BTC_USD_FALLBACK
        self.ttl = Config.RATE_CACHE_SECONDS if ttl_seconds is None else ttl_seconds
        self.timeout = timeout or Config.RATE_ORACLE_TIMEOUT_SECONDS
        self._rate = None
        self._fetched_at = 0.0
        self._refreshing = False
        self._lock = threading.Lock()

    def _fetch_btc_usd(self) -> Decimal:
        resp = http_requests.get(self.url, timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        # Coinbase: {"data": {"currency": "BTC", "rates": {"USD": "65000.12", ...}}}
        price = Decimal(str(data['data']['rates']['USD']))
        if price <= 0:
            raise ValueError(f"non-positive BTC/USD price {price}")
        return price

    def get_sats_per_usd(self) -> Decimal:
        with self._lock:
            if self._rate is not None and time.time() - self._fetched_at < self.ttl:
                return self._rate
            # One caller refreshes; the rest keep quoting the stale rate meanwhile
            if self._refreshing and self._rate is not None:
                return self._rate
            self._refreshing = True

        try:
            btc_usd = self._fetch_btc_usd()
            rate = btc_usd_to_sats_per_usd(btc_usd)
        except (http_requests.RequestException, KeyError, TypeError, ValueError, InvalidOperation) as e:
            return self._fetch_failed(e)
        else:
            with self._lock:
                self._rate = rate
                self._fetched_at = time.time()
            logger.info("BTC/USD %s (%s sats/USD)", btc_usd, rate)
            return rate
        finally:
            with self._lock:
                self._refreshing = False

    def _fetch_failed(self, error) -> Decimal:
        with self._lock:
            stale = self._rate
        if stale is not None:
            logger.warning("Rate fetch failed, reusing stale rate: %s", error)
            return stale
        logger.warning("Rate fetch failed, using fallback BTC/USD %s: %s", self.fallback_btc_usd, error)
        return btc_usd_to_sats_per_usd(self.fallback_btc_usd)

    def clear(self):
        with self._lock:
            self._rate = None
            self._fetched_at = 0.0


_rate_oracle = None


def get_rate_oracle():
    global _rate_oracle
    if _rate_oracle is None:
        _rate_oracle = RateOracle()
    return _rate_oracle


def set_rate_oracle(oracle):
    """Replace the process oracle (tests, dev mode)."""
    global _rate_oracle
    _rate_oracle = oracle
