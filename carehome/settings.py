"""
Django settings for the carehome project.

Facility-specific values are read from ``CAREHOME_*`` environment variables.
"""
import datetime
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("CAREHOME_SECRET_KEY", "django-insecure-carehome-dev-key")
DEBUG = os.environ.get("CAREHOME_DEBUG", "1") == "1"
ALLOWED_HOSTS = [
    host for host in os.environ.get("CAREHOME_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")
    if host
]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "tasks",
    "medications",
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

ROOT_URLCONF = "carehome.urls"

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

WSGI_APPLICATION = "carehome.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("CAREHOME_DB_PATH", BASE_DIR / "db.sqlite3"),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
# All schedules are evaluated in this one facility-local calendar.
TIME_ZONE = os.environ.get("CAREHOME_TIME_ZONE", "Asia/Hong_Kong")
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"

LOGIN_URL = "/admin/login/"

# Completions dated on or before this day come from the legacy data import
# and never move live schedules.
SYNC_CUTOFF_DATE = datetime.date.fromisoformat(
    os.environ.get("CAREHOME_SYNC_CUTOFF_DATE", "2025-01-01")
)

# Maximum number of occurrences the reconciler inspects per task.
SCHEDULE_SEARCH_LIMIT = int(os.environ.get("CAREHOME_SCHEDULE_SEARCH_LIMIT", "3650"))

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {
            "format": "{asctime} {levelname} {name}: {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "simple",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
    "loggers": {
        "tasks": {
            "handlers": ["console"],
            "level": os.environ.get("CAREHOME_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
        "medications": {
            "handlers": ["console"],
            "level": os.environ.get("CAREHOME_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
