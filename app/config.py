import os


def _env_flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # --- Payment provider (MercadoPago REST API) ---
    MERCADOPAGO_ACCESS_TOKEN = os.environ.get("MERCADOPAGO_ACCESS_TOKEN")
    MERCADOPAGO_WEBHOOK_SECRET = os.environ.get("MERCADOPAGO_WEBHOOK_SECRET")
    MERCADOPAGO_API_BASE = os.environ.get(
        "MERCADOPAGO_API_BASE", "https://api.mercadopago.com"
    )
    PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", 10))
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "MXN")
    # Signed webhook timestamps older or newer than this are rejected
    WEBHOOK_MAX_SKEW_SECONDS = int(os.environ.get("WEBHOOK_MAX_SKEW_SECONDS", 600))

    # --- Matching windows ---
    MATCH_WINDOW_MINUTES = int(os.environ.get("MATCH_WINDOW_MINUTES", 15))
    EMAIL_MATCH_WINDOW_HOURS = int(os.environ.get("EMAIL_MATCH_WINDOW_HOURS", 24))

    # --- Billing cycle ---
    SUBSCRIPTION_TERM_MONTHS = int(os.environ.get("SUBSCRIPTION_TERM_MONTHS", 12))
    RENEWAL_EARLY_WINDOW_DAYS = int(os.environ.get("RENEWAL_EARLY_WINDOW_DAYS", 3))

    # --- Reconciliation sweep ---
    SWEEP_PENDING_AGE_MINUTES = int(os.environ.get("SWEEP_PENDING_AGE_MINUTES", 10))
    SWEEP_BATCH_SIZE = int(os.environ.get("SWEEP_BATCH_SIZE", 50))
    SWEEP_MAX_WORKERS = int(os.environ.get("SWEEP_MAX_WORKERS", 4))
    SWEEP_TIME_BUDGET_SECONDS = int(os.environ.get("SWEEP_TIME_BUDGET_SECONDS", 240))
    SWEEP_DIVERGENCE_BATCH_SIZE = int(os.environ.get("SWEEP_DIVERGENCE_BATCH_SIZE", 20))
    SWEEP_INTERVAL_SECONDS = int(os.environ.get("SWEEP_INTERVAL_SECONDS", 300))
    # Cross-process sweep lease; must outlive one time budget
    SWEEP_LEASE_SECONDS = int(os.environ.get("SWEEP_LEASE_SECONDS", 300))
    # Receipts whose processing was deferred or errored are replayed by the
    # sweep until they succeed, run out of attempts or get too old.
    WEBHOOK_RETRY_MAX_ATTEMPTS = int(os.environ.get("WEBHOOK_RETRY_MAX_ATTEMPTS", 5))
    WEBHOOK_RETRY_MAX_AGE_HOURS = int(os.environ.get("WEBHOOK_RETRY_MAX_AGE_HOURS", 48))

    # --- Integrity checker ---
    STALE_PENDING_HOURS = int(os.environ.get("STALE_PENDING_HOURS", 24))

    # Bearer token for the /cron/* endpoints (Railway cron, GitHub Actions, ...)
    CRON_SECRET = os.environ.get("CRON_SECRET")

    # Run best-effort side effects (emails, provider mirrors) inline instead
    # of on a daemon thread.
    SIDE_EFFECTS_INLINE = _env_flag("SIDE_EFFECTS_INLINE")

    # --- Email (SMTP) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")          # App Password
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "Subscriptions")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Session / cookies ---
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = "Lax"

    # --- WTF / CSRF ---
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "MERCADOPAGO_ACCESS_TOKEN",
            "MERCADOPAGO_WEBHOOK_SECRET",
            "APP_BASE_URL",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing: in-memory SQLite, CSRF disabled, side effects inline."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    MERCADOPAGO_ACCESS_TOKEN = "TEST-access-token"
    MERCADOPAGO_WEBHOOK_SECRET = "mp_webhook_test_secret"
    MERCADOPAGO_API_BASE = "https://api.mercadopago.test"
    APP_BASE_URL = "http://localhost:5000"
    CRON_SECRET = "cron-test-secret"
    SIDE_EFFECTS_INLINE = True
    SWEEP_MAX_WORKERS = 1  # in-memory SQLite shares one connection
    WTF_CSRF_ENABLED = False  # disable CSRF for test requests
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
