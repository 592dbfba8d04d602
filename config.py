import os


def _env_bool(name, default='false'):
    return os.environ.get(name, default).lower() in ('true', '1', 'yes')


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///errandbit_dev.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = os.environ.get('FLASK_SECRET_KEY', 'dev-secret-key-change-me')

    # Dev mode: when True, a local provider stands in for LNbits and SQLite is allowed
    # Defaults to False; must be explicitly enabled via DEV_MODE=true
    DEV_MODE = _env_bool('DEV_MODE')

    # Lightning provider (LNbits-compatible API)
    LNBITS_URL = os.environ.get('LNBITS_URL', 'https://legend.lnbits.com')
    LNBITS_API_KEY = os.environ.get('LNBITS_API_KEY', '')      # invoice/read key
    LNBITS_ADMIN_KEY = os.environ.get('LNBITS_ADMIN_KEY', '')  # needed for outbound payouts
    LNBITS_WEBHOOK_SECRET = os.environ.get('LNBITS_WEBHOOK_SECRET', '')  # signs provider push notifications
    WEBHOOK_MAX_AGE_SECONDS = int(os.environ.get('WEBHOOK_MAX_AGE_SECONDS', '300'))
    LIGHTNING_TIMEOUT_SECONDS = float(os.environ.get('LIGHTNING_TIMEOUT_SECONDS', '30'))
    INVOICE_EXPIRY_SECONDS = int(os.environ.get('INVOICE_EXPIRY_SECONDS', '3600'))

    # Rate oracle (BTC/USD)
    BTC_RATE_URL = os.environ.get('BTC_RATE_URL', 'https://api.coinbase.com/v2/exchange-rates?currency=BTC')
    BTC_USD_FALLBACK = float(os.environ.get('BTC_USD_FALLBACK', '50000'))
    RATE_ORACLE_TIMEOUT_SECONDS = float(os.environ.get('RATE_ORACLE_TIMEOUT_SECONDS', '10'))
    RATE_CACHE_SECONDS = int(os.environ.get('RATE_CACHE_SECONDS', '300'))

    # Payment lifecycle
    PAYMENT_INVOICE_EXPIRY_HOURS = float(os.environ.get('PAYMENT_INVOICE_EXPIRY_HOURS', '1'))
    # A quote is re-derived by a new payment instruction once older than this
    PAYMENT_QUOTE_TTL_MINUTES = float(os.environ.get('PAYMENT_QUOTE_TTL_MINUTES', '60'))
    PLATFORM_FEE_PERCENT = float(os.environ.get('PLATFORM_FEE_PERCENT', '0'))
    MAX_PROOF_IMAGE_BYTES = int(os.environ.get('MAX_PROOF_IMAGE_BYTES', str(5 * 1024 * 1024)))

    # Monitoring
    ENABLE_PAYMENT_MONITORING = _env_bool('ENABLE_PAYMENT_MONITORING')
    MONITORING_INTERVAL_MINUTES = float(os.environ.get('LIGHTNING_HEALTH_CHECK_INTERVAL_MINUTES', '5'))
    CLEANUP_INTERVAL_MINUTES = float(os.environ.get('CLEANUP_INTERVAL_MINUTES', '60'))
    PAYOUT_RECONCILE_INTERVAL_MINUTES = float(os.environ.get('PAYOUT_RECONCILE_INTERVAL_MINUTES', '10'))
    STUCK_PAYMENT_THRESHOLD_HOURS = float(os.environ.get('STUCK_PAYMENT_THRESHOLD_HOURS', '2'))
    STUCK_PAYMENT_PAGE_SIZE = int(os.environ.get('STUCK_PAYMENT_PAGE_SIZE', '100'))
    SUCCESS_RATE_ALERT_PERCENT = float(os.environ.get('SUCCESS_RATE_ALERT_PERCENT', '90'))
    SUCCESS_RATE_MIN_SAMPLE = int(os.environ.get('SUCCESS_RATE_MIN_SAMPLE', '10'))

    # Alert delivery (optional; alerts are always logged)
    ALERT_WEBHOOK_URL = os.environ.get('ALERT_WEBHOOK_URL', '')
    ALERT_WEBHOOK_SECRET = os.environ.get('ALERT_WEBHOOK_SECRET', '')

    # Abuse guard (requests per window, per caller)
    PAYMENT_RATE_LIMIT = int(os.environ.get('PAYMENT_RATE_LIMIT', '10'))
    PAYMENT_RATE_WINDOW_SECONDS = int(os.environ.get('PAYMENT_RATE_WINDOW_SECONDS', '60'))
    CONFIRM_RATE_LIMIT = int(os.environ.get('CONFIRM_RATE_LIMIT', '5'))
    CONFIRM_RATE_WINDOW_SECONDS = int(os.environ.get('CONFIRM_RATE_WINDOW_SECONDS', '60'))

    @classmethod
    def validate_production(cls):
        """Startup check: reject dev-only settings outside DEV_MODE."""
        if cls.DEV_MODE:
            return
        if 'sqlite' in cls.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError(
                "FATAL: SQLite is not supported in production mode. "
                "Set DATABASE_URL to a PostgreSQL connection string, "
                "or set DEV_MODE=true for development."
            )
        if cls.SECRET_KEY == 'dev-secret-key-change-me':
            raise RuntimeError(
                "FATAL: SECRET_KEY must be changed from default in production. "
                "Set FLASK_SECRET_KEY environment variable."
            )
        if not cls.LNBITS_API_KEY:
            raise RuntimeError(
                "FATAL: LNBITS_API_KEY must be set in production. "
                "Without it invoices cannot be issued or looked up."
            )
