"""
Django settings for the settlement & dunning engine.

Values are read from the environment; defaults are suitable for local
development and the test suite.
"""
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return int(value)


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "django-insecure-local-development-key")

DEBUG = _env_bool("DJANGO_DEBUG", True)

ALLOWED_HOSTS = [
    h.strip()
    for h in os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",")
    if h.strip()
]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "partners",
    "ledger",
    "settlements",
    "billing",
    "dunning",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "config.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": os.environ.get("DB_ENGINE", "django.db.backends.sqlite3"),
        "NAME": os.environ.get("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        "USER": os.environ.get("DB_USER", ""),
        "PASSWORD": os.environ.get("DB_PASSWORD", ""),
        "HOST": os.environ.get("DB_HOST", ""),
        "PORT": os.environ.get("DB_PORT", ""),
    }
}

AUTH_PASSWORD_VALIDATORS = []

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("DJANGO_TIME_ZONE", "UTC")
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# --- Stripe (payout provider) ---
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_MODE = os.environ.get("STRIPE_MODE", "test")
STRIPE_MAX_NETWORK_RETRIES = _env_int("STRIPE_MAX_NETWORK_RETRIES", 0)
PAYOUT_PROVIDER_TIMEOUT_SECONDS = _env_int("PAYOUT_PROVIDER_TIMEOUT_SECONDS", 30)
# Processing payouts younger than this may still have a transfer call in flight.
PAYOUT_RECONCILE_MIN_AGE_SECONDS = _env_int(
    "PAYOUT_RECONCILE_MIN_AGE_SECONDS",
    PAYOUT_PROVIDER_TIMEOUT_SECONDS * (STRIPE_MAX_NETWORK_RETRIES + 1) * 2,
)

# --- Settlement engine ---
SETTLEMENT_CURRENCY = os.environ.get("SETTLEMENT_CURRENCY", "BRL")
CHARGEBACK_WINDOW_DAYS = _env_int("CHARGEBACK_WINDOW_DAYS", 30)
EVIDENCE_DIR = os.environ.get("EVIDENCE_DIR", str(BASE_DIR / "evidence"))

# --- Dunning (days overdue; each threshold must exceed the previous one) ---
DUNNING_POLICY = {
    "grace_days": _env_int("DUNNING_GRACE_DAYS", 15),
    "block_days": _env_int("DUNNING_BLOCK_DAYS", 30),
    "suspend_days": _env_int("DUNNING_SUSPEND_DAYS", 60),
}
DUNNING_EVALUATION_MAX_ATTEMPTS = _env_int("DUNNING_EVALUATION_MAX_ATTEMPTS", 3)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": os.environ.get("LOG_LEVEL", "WARNING"),
    },
    "loggers": {
        "settlements": {"level": os.environ.get("SETTLEMENTS_LOG_LEVEL", "INFO")},
        "dunning": {"level": os.environ.get("DUNNING_LOG_LEVEL", "INFO")},
        "ledger": {"level": os.environ.get("LEDGER_LOG_LEVEL", "INFO")},
    },
}
