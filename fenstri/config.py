import os
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
INSTANCE_DIR = BASE_DIR / "instance"

# Load .env before any config values are read so os.getenv sees them
load_dotenv(BASE_DIR / ".env")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: str) -> frozenset[str]:
    raw = os.getenv(name, default)
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


def _database_uri() -> str:
    explicit = os.getenv("DATABASE_URL") or os.getenv("DATABASE_URI")
    if explicit:
        # Allow the common postgres:// prefix and normalize it for SQLAlchemy
        if explicit.startswith("postgres://"):
            explicit = explicit.replace("postgres://", "postgresql://", 1)
        return explicit
    db_path_env = os.getenv("DATABASE_PATH", str(INSTANCE_DIR / "fenstri.db"))
    db_path = Path(db_path_env)
    if not db_path.is_absolute():
        db_path = (BASE_DIR / db_path).resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_path.as_posix()}"


class BaseConfig:
    SECRET_KEY = os.getenv("SECRET_KEY") or "dev-insecure-key"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_DATABASE_URI = _database_uri()
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": int(os.getenv("DB_POOL_RECYCLE_SECONDS", "280")),
    }
    SESSION_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.getenv("SESSION_COOKIE_SAMESITE", "Lax")
    REMEMBER_COOKIE_SAMESITE = os.getenv("REMEMBER_COOKIE_SAMESITE", "Lax")
    REMEMBER_COOKIE_DURATION = timedelta(days=int(os.getenv("REMEMBER_COOKIE_DAYS", "30")))
    SESSION_COOKIE_SECURE = _env_bool("SESSION_COOKIE_SECURE", True)
    REMEMBER_COOKIE_SECURE = SESSION_COOKIE_SECURE
    SESSION_REFRESH_EACH_REQUEST = True
    PERMANENT_SESSION_LIFETIME = timedelta(hours=int(os.getenv("SESSION_LIFETIME_HOURS", "12")))
    WTF_CSRF_ENABLED = True
    WTF_CSRF_TIME_LIMIT = 60 * 60
    PREFERRED_URL_SCHEME = os.getenv("PREFERRED_URL_SCHEME", "https")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.getenv(
        "LOG_FORMAT",
        "%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )
    TRUSTED_PROXY_COUNT = int(os.getenv("TRUSTED_PROXY_COUNT", "0"))
    USE_PROXY_FIX = _env_bool("USE_PROXY_FIX", False)
    RUN_DB_UPGRADE_ON_START = _env_bool("RUN_DB_UPGRADE_ON_START", False)
    BOOTSTRAP_DEMO_DATA = _env_bool("BOOTSTRAP_DEMO_DATA", False)
    MAX_CONTENT_LENGTH = int(os.getenv("MAX_CONTENT_LENGTH", str(16 * 1024 * 1024)))

    # Email / SMTP
    MAIL_ENABLED = _env_bool("MAIL_ENABLED", True)
    MAIL_SENDER = os.getenv("MAIL_SENDER", "service@fenstri.de")
    MAIL_SMTP_HOST = os.getenv("MAIL_SMTP_HOST")
    MAIL_SMTP_PORT = int(os.getenv("MAIL_SMTP_PORT", "587"))
    MAIL_SMTP_USERNAME = os.getenv("MAIL_SMTP_USERNAME")
    MAIL_SMTP_PASSWORD = os.getenv("MAIL_SMTP_PASSWORD")
    MAIL_USE_TLS = _env_bool("MAIL_USE_TLS", True)
    MAIL_USE_SSL = _env_bool("MAIL_USE_SSL", False)
    MAIL_TIMEOUT = int(os.getenv("MAIL_TIMEOUT_SECONDS", "20"))
    MAIL_CONSOLE_FALLBACK = _env_bool("MAIL_CONSOLE_FALLBACK", False)

    # Payments (Stripe)
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_WEBHOOK_VERIFY = _env_bool("STRIPE_WEBHOOK_VERIFY", True)
    STRIPE_WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"))

    # Invoicing
    INVOICE_TAX_RATE = os.getenv("INVOICE_TAX_RATE", "0.19")
    INVOICE_PAYMENT_TERMS_DAYS = int(os.getenv("INVOICE_PAYMENT_TERMS_DAYS", "14"))
    INVOICE_NUMBER_PREFIX = os.getenv("INVOICE_NUMBER_PREFIX", "RE")
    AUTO_INVOICE_ON_COMPLETION = _env_bool("AUTO_INVOICE_ON_COMPLETION", True)
    INVOICE_ISSUER = {
        "name": os.getenv("INVOICE_ISSUER_NAME", "Fenstri GmbH"),
        "tagline": os.getenv("INVOICE_ISSUER_TAGLINE", "Professioneller Fensterservice"),
        "street": os.getenv("INVOICE_ISSUER_STREET", "Musterstraße 123"),
        "postal_city": os.getenv("INVOICE_ISSUER_POSTAL_CITY", "10115 Berlin"),
        "country": os.getenv("INVOICE_ISSUER_COUNTRY", "Deutschland"),
        "phone": os.getenv("INVOICE_ISSUER_PHONE", "+49 30 123 456 789"),
        "email": os.getenv("INVOICE_ISSUER_EMAIL", "info@fenstri.de"),
        "iban": os.getenv("INVOICE_ISSUER_IBAN", "DE12 3456 7890 1234 5678 90"),
        "bic": os.getenv("INVOICE_ISSUER_BIC", "DEUTDEFF"),
        "managing_director": os.getenv("INVOICE_ISSUER_DIRECTOR", "Max Mustermann"),
        "register": os.getenv("INVOICE_ISSUER_REGISTER", "Amtsgericht Berlin HRB 12345"),
        "vat_id": os.getenv("INVOICE_ISSUER_VAT_ID", "DE123456789"),
    }

    # Recurring service contracts
    SUBSCRIPTION_DEFAULT_FREQUENCY_MONTHS = int(os.getenv("SUBSCRIPTION_DEFAULT_FREQUENCY_MONTHS", "6"))

    # Photo evidence storage
    PHOTO_STORAGE_DIR = os.getenv("PHOTO_STORAGE_DIR", str(INSTANCE_DIR / "workorder-photos"))
    PHOTO_ALLOWED_EXTENSIONS = _env_list("PHOTO_ALLOWED_EXTENSIONS", "jpg,jpeg,png,heic,webp")


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    ENV = "development"
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    RUN_DB_UPGRADE_ON_START = _env_bool("RUN_DB_UPGRADE_ON_START", True)
    BOOTSTRAP_DEMO_DATA = _env_bool("BOOTSTRAP_DEMO_DATA", True)
    MAIL_CONSOLE_FALLBACK = _env_bool("MAIL_CONSOLE_FALLBACK", True)
    # Local stand-in for the provider: signed payloads are still required unless this is switched off
    STRIPE_WEBHOOK_VERIFY = _env_bool("STRIPE_WEBHOOK_VERIFY", True)


class ProductionConfig(BaseConfig):
    DEBUG = False
    ENV = "production"
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True
    RUN_DB_UPGRADE_ON_START = _env_bool("RUN_DB_UPGRADE_ON_START", False)
    BOOTSTRAP_DEMO_DATA = False
    STRIPE_WEBHOOK_VERIFY = True
    PREFERRED_URL_SCHEME = "https"


class TestingConfig(BaseConfig):
    TESTING = True
    ENV = "testing"
    SECRET_KEY = "test-secret-key"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS: dict = {}
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    WTF_CSRF_ENABLED = False
    RUN_DB_UPGRADE_ON_START = False
    BOOTSTRAP_DEMO_DATA = False
    MAIL_ENABLED = False
    STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
    STRIPE_WEBHOOK_VERIFY = True


def get_config_class(config_name: str | None = None):
    env = (config_name or os.getenv("APP_ENV") or os.getenv("FLASK_ENV", "development")).lower()
    if env == "production":
        return ProductionConfig
    if env == "testing":
        return TestingConfig
    return DevelopmentConfig
