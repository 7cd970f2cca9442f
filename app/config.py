import os


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

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    STRIPE_PUBLISHABLE_KEY = os.environ.get("STRIPE_PUBLISHABLE_KEY")
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # --- Subscription tier prices (one per tier + interval) ---
    STRIPE_PREMIUM_MONTHLY_PRICE_ID = os.environ.get("STRIPE_PREMIUM_MONTHLY_PRICE_ID")
    STRIPE_PREMIUM_ANNUAL_PRICE_ID = os.environ.get("STRIPE_PREMIUM_ANNUAL_PRICE_ID")
    STRIPE_UNLIMITED_MONTHLY_PRICE_ID = os.environ.get("STRIPE_UNLIMITED_MONTHLY_PRICE_ID")
    STRIPE_UNLIMITED_ANNUAL_PRICE_ID = os.environ.get("STRIPE_UNLIMITED_ANNUAL_PRICE_ID")

    # --- Manual activation guard ---
    # Seconds a second activation for the same purchase waits on the first.
    ACTIVATION_LOCK_TIMEOUT = float(os.environ.get("ACTIVATION_LOCK_TIMEOUT", 5))
    ACTIVATION_MAX_ATTEMPTS = int(os.environ.get("ACTIVATION_MAX_ATTEMPTS", 3))
    ACTIVATION_RETRY_BASE_DELAY = float(os.environ.get("ACTIVATION_RETRY_BASE_DELAY", 0.5))

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
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
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
    """Testing — in-memory SQLite, CSRF disabled."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_PUBLISHABLE_KEY = "pk_test_fake"
    STRIPE_PREMIUM_MONTHLY_PRICE_ID = "price_premium_month_test"
    STRIPE_PREMIUM_ANNUAL_PRICE_ID = "price_premium_year_test"
    STRIPE_UNLIMITED_MONTHLY_PRICE_ID = "price_unlimited_month_test"
    STRIPE_UNLIMITED_ANNUAL_PRICE_ID = None  # exercises the "not purchasable" path
    APP_BASE_URL = "http://localhost:5000"
    ACTIVATION_LOCK_TIMEOUT = 0.2
    ACTIVATION_MAX_ATTEMPTS = 3
    ACTIVATION_RETRY_BASE_DELAY = 0  # no sleeping in tests
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
