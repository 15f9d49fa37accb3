import os
from datetime import timedelta
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name, default=False):
    return os.environ.get(name, str(default)).lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "insecure-development-key")
DEBUG = env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "ledger",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "ledger.middleware.BillingRequestLoggingMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

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

if os.environ.get("POSTGRES_DB"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.environ["POSTGRES_DB"],
            "USER": os.environ.get("POSTGRES_USER", "postgres"),
            "PASSWORD": os.environ.get("POSTGRES_PASSWORD", ""),
            "HOST": os.environ.get("POSTGRES_HOST", "localhost"),
            "PORT": os.environ.get("POSTGRES_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True
STATIC_URL = "static/"

REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_PARSER_CLASSES": ["rest_framework.parsers.JSONParser"],
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "UNAUTHENTICATED_USER": None,
}

# ------------------------------------------------------------
# Ledger / billing
# ------------------------------------------------------------

# Stars credited per cent of a top-up (1 cent = 1 star).
STAR_CONVERSION_RATE = int(os.environ.get("STAR_CONVERSION_RATE", 1))
DEFAULT_CALL_RATE_PER_MINUTE = int(os.environ.get("DEFAULT_CALL_RATE_PER_MINUTE", 10))
ESTIMATED_CALL_MINUTES = int(os.environ.get("ESTIMATED_CALL_MINUTES", 30))
TRIAL_DURATION_DAYS = int(os.environ.get("TRIAL_DURATION_DAYS", 3))
TRIAL_MAX_CALL_SECONDS = int(os.environ.get("TRIAL_MAX_CALL_SECONDS", 60))
BATTLE_REWARD_PERCENT = int(os.environ.get("BATTLE_REWARD_PERCENT", 50))

LEDGER_STORAGE_RETRIES = int(os.environ.get("LEDGER_STORAGE_RETRIES", 3))
LEDGER_STORAGE_RETRY_DELAY = float(os.environ.get("LEDGER_STORAGE_RETRY_DELAY", 0.1))
PENDING_TRANSACTION_TTL_MINUTES = int(
    os.environ.get("PENDING_TRANSACTION_TTL_MINUTES", 60)
)
CALL_BILLING_MAX_RETRIES = int(os.environ.get("CALL_BILLING_MAX_RETRIES", 3))

PAYMENT_PROCESSOR_BASE_URL = os.environ.get(
    "PAYMENT_PROCESSOR_BASE_URL", "http://localhost:8010"
)
PAYMENT_PROCESSOR_API_KEY = os.environ.get("PAYMENT_PROCESSOR_API_KEY", "")
PAYMENT_PROCESSOR_TIMEOUT = int(os.environ.get("PAYMENT_PROCESSOR_TIMEOUT", 10))

# ------------------------------------------------------------
# Celery
# ------------------------------------------------------------

CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = env_bool("CELERY_TASK_ALWAYS_EAGER", False)
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_TIMEZONE = TIME_ZONE

CELERY_BEAT_SCHEDULE = {
    "poll-pending-payments": {
        "task": "ledger.tasks.poll_pending_payments",
        "schedule": timedelta(minutes=5),
    },
    "expire-stale-pending-transactions": {
        "task": "ledger.tasks.expire_stale_pending_transactions",
        "schedule": timedelta(minutes=15),
    },
    "retry-unpaid-calls": {
        "task": "ledger.tasks.retry_unpaid_calls",
        "schedule": timedelta(minutes=10),
    },
    "collect-clawbacks": {
        "task": "ledger.tasks.collect_clawbacks",
        "schedule": timedelta(hours=1),
    },
}

# ------------------------------------------------------------
# Logging
# ------------------------------------------------------------

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
    "loggers": {
        "ledger": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
        "celery": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
    },
}
