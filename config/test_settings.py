from config.settings import *  # noqa: F401,F403

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"

PAYMENT_PROCESSOR_BASE_URL = "http://payments.test"
LEDGER_STORAGE_RETRY_DELAY = 0

LOGGING["loggers"]["ledger"]["level"] = "WARNING"  # noqa: F405
