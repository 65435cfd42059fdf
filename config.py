import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as dealslot.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "dealslot.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "dealslot_session"

    # 8 hours session lifetime
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60

    # Idle timeout: 20 minutes
    IDLE_TIMEOUT_SECONDS = 20 * 60

    # Session/cookie security defaults
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = False  # set True when using HTTPS

    # Stores without an explicit timezone are interpreted in this zone
    DEFAULT_STORE_TIMEZONE = os.getenv("DEFAULT_STORE_TIMEZONE", "Africa/Nairobi")
    CURRENCY = os.getenv("CURRENCY", "KES")

    # Platform access fee: 20% of the discount, never below the floor
    PLATFORM_FEE_RATE = os.getenv("PLATFORM_FEE_RATE", "0.20")
    PLATFORM_FEE_FLOOR = os.getenv("PLATFORM_FEE_FLOOR", "1.00")
    PLATFORM_FEE_FALLBACK = os.getenv("PLATFORM_FEE_FALLBACK", "5.99")

    # Service rule defaults (used when a service leaves a field empty)
    DEFAULT_SERVICE_DURATION_MINUTES = 60
    DEFAULT_GRACE_PERIOD_MINUTES = 10
    DEFAULT_MIN_ADVANCE_MINUTES = 30
    DEFAULT_MAX_ADVANCE_MINUTES = 7 * 24 * 60
    DEFAULT_EARLY_CHECKIN_MINUTES = 15

    # Background sweeper (no-show / auto-completion / expiry)
    SWEEPER_ENABLED = os.getenv("SWEEPER_ENABLED", "true").lower() == "true"
    SWEEPER_INTERVAL_MINUTES = int(os.getenv("SWEEPER_INTERVAL_MINUTES", "5"))

    # Payments
    PAYMENT_PROVIDER = os.getenv("PAYMENT_PROVIDER", "stripe")
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

    # QR verification artifacts attached to new bookings
    QR_ARTIFACTS_ENABLED = os.getenv("QR_ARTIFACTS_ENABLED", "true").lower() == "true"

    # Basic app settings
    DEBUG = False


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SWEEPER_ENABLED = False
    QR_ARTIFACTS_ENABLED = False
    DEFAULT_STORE_TIMEZONE = "UTC"
