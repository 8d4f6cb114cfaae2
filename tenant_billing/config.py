"""
Environment-driven configuration classes.

Values are read from the process environment once at import time; ``wsgi.py``
loads a ``.env`` file before the app factory runs.
"""

import os


class ConfigurationError(Exception):
    """
    Raised when an invalid or unsupported configuration is requested.
    """
    pass


def _as_bool(value, default=False):
    if value is None:
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_int_list(value):
    return [int(part) for part in str(value).split(",") if part.strip()]


class BaseConfig:
    """
    Base configuration shared by all environments.
    """

    # Flask
    ENVIRONMENT = "base"
    DEBUG = False
    TESTING = False
    SECRET_KEY = os.getenv("SECRET_KEY")
    APP_NAME = os.getenv("APP_NAME", "Tenant Billing")
    APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
    APP_URL = os.getenv("APP_URL", "http://localhost:5000").rstrip("/")

    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///tenant_billing.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Billing provider
    BILLING_PROVIDER = os.getenv("BILLING_PROVIDER", "stripe").lower()
    BILLING_CURRENCY = os.getenv("BILLING_CURRENCY", "USD")
    BILLING_DEFAULT_TRIAL_DAYS = int(os.getenv("BILLING_DEFAULT_TRIAL_DAYS", "14"))
    BILLING_GRACE_PERIOD_DAYS = int(os.getenv("BILLING_GRACE_PERIOD_DAYS", "7"))
    BILLING_GRACE_PERIOD_WARNINGS = _as_int_list(
        os.getenv("BILLING_GRACE_PERIOD_WARNINGS", "1,3,7")
    )

    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_API_VERSION = os.getenv("STRIPE_API_VERSION")
    STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))

    PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY")
    PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
    PAYSTACK_TIMEOUT = int(os.getenv("PAYSTACK_TIMEOUT", "15"))

    # Celery
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
    CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", REDIS_URL)
    CELERY_TASK_ALWAYS_EAGER = _as_bool(os.getenv("CELERY_TASK_ALWAYS_EAGER"))
    WEBHOOK_QUEUE = os.getenv("WEBHOOK_QUEUE", "billing_webhooks")

    # Mail
    MAIL_SERVER = os.getenv("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = _as_bool(os.getenv("MAIL_USE_TLS"), default=True)
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "billing@localhost")
    MAIL_SUPPRESS_SEND = False

    # Observability
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_JSON = _as_bool(os.getenv("LOG_JSON"), default=True)
    SENTRY_DSN = os.getenv("SENTRY_DSN")
    METRICS_ENABLED = _as_bool(os.getenv("METRICS_ENABLED"), default=True)

    @classmethod
    def validate(cls):
        return None


class DevelopmentConfig(BaseConfig):
    ENVIRONMENT = "development"
    DEBUG = True
    SECRET_KEY = BaseConfig.SECRET_KEY or "dev-secret-key"
    LOG_JSON = _as_bool(os.getenv("LOG_JSON"), default=False)


class TestingConfig(BaseConfig):
    ENVIRONMENT = "testing"
    TESTING = True
    SECRET_KEY = "testing-secret-key"
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")

    BILLING_PROVIDER = "stripe"
    STRIPE_SECRET_KEY = "sk_test_mock"
    STRIPE_WEBHOOK_SECRET = "whsec_test_mock"
    PAYSTACK_SECRET_KEY = "sk_test_paystack"
    BILLING_GRACE_PERIOD_DAYS = 7
    BILLING_GRACE_PERIOD_WARNINGS = [1, 3, 7]

    CELERY_BROKER_URL = "memory://"
    CELERY_RESULT_BACKEND = "cache+memory://"
    CELERY_TASK_ALWAYS_EAGER = True

    MAIL_SUPPRESS_SEND = True
    MAIL_DEFAULT_SENDER = "billing@test.local"

    LOG_JSON = False
    SENTRY_DSN = None


class ProductionConfig(BaseConfig):
    ENVIRONMENT = "production"

    @classmethod
    def validate(cls):
        missing = []
        if not cls.SECRET_KEY:
            missing.append("SECRET_KEY")
        if not os.getenv("DATABASE_URL"):
            missing.append("DATABASE_URL")
        if cls.BILLING_PROVIDER == "stripe":
            if not cls.STRIPE_SECRET_KEY:
                missing.append("STRIPE_SECRET_KEY")
            if not cls.STRIPE_WEBHOOK_SECRET:
                missing.append("STRIPE_WEBHOOK_SECRET")
        elif cls.BILLING_PROVIDER == "paystack":
            if not cls.PAYSTACK_SECRET_KEY:
                missing.append("PAYSTACK_SECRET_KEY")
        else:
            raise ConfigurationError(
                f"Unsupported BILLING_PROVIDER '{cls.BILLING_PROVIDER}'"
            )
        if missing:
            raise ConfigurationError(
                f"Missing required production settings: {', '.join(missing)}"
            )


_CONFIGS = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}


def get_config(name=None):
    """
    Resolve a configuration class by environment name.
    """
    name = (name or os.getenv("FLASK_CONFIG") or os.getenv("FLASK_ENV") or "development").lower()
    try:
        config_class = _CONFIGS[name]
    except KeyError:
        raise ConfigurationError(f"Unknown configuration '{name}'") from None
    config_class.validate()
    return config_class
