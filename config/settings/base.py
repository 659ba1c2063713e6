"""
Django settings for the e-invoicing registry integration - Base Configuration
"""

import os
from pathlib import Path
from typing import Any

# ===============================================================================
# CORE DJANGO SETTINGS
# ===============================================================================

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Application definition
DJANGO_APPS: list[str] = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
]

THIRD_PARTY_APPS: list[str] = [
    "django_q",  # ⏰ Background tasks and schedules
]

LOCAL_APPS: list[str] = [
    "apps.integrations",  # 🔌 External service webhooks & deduplication
    "apps.einvoicing",  # 🧾 Registry submission & status reconciliation
]

INSTALLED_APPS: list[str] = DJANGO_APPS + THIRD_PARTY_APPS + LOCAL_APPS

MIDDLEWARE: list[str] = [
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
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "config.wsgi.application"

# ===============================================================================
# DATABASE CONFIGURATION
# ===============================================================================

DATABASES: dict[str, dict[str, Any]] = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("DB_NAME", "einvoicing"),
        "USER": os.environ.get("DB_USER", "einvoicing"),
        "PASSWORD": os.environ.get("DB_PASSWORD", "development_password"),
        "HOST": os.environ.get("DB_HOST", "localhost"),
        "PORT": os.environ.get("DB_PORT", "5432"),
        "CONN_MAX_AGE": 60,  # Database connection pooling
    }
}

# ===============================================================================
# INTERNATIONALIZATION & LOCALIZATION
# ===============================================================================

LANGUAGE_CODE = "en-us"
TIME_ZONE = "Asia/Phnom_Penh"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

# ===============================================================================
# CACHE CONFIGURATION
# ===============================================================================

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "einvoicing-cache",
    }
}

# django-ratelimit counts requests in the default cache
RATELIMIT_USE_CACHE = "default"

# ===============================================================================
# SECURITY SETTINGS (Base - override per environment)
# ===============================================================================

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY")
if not SECRET_KEY:
    # Development fallback - never use this in production
    import warnings

    warnings.warn(
        "🚨 SECURITY WARNING: Using default SECRET_KEY. "
        "Set DJANGO_SECRET_KEY environment variable for production!",
        UserWarning,
        stacklevel=2,
    )
    SECRET_KEY = "django-insecure-dev-key-only-change-in-production-or-tests"  # noqa: S105

ALLOWED_HOSTS: list[str] = [h for h in os.environ.get("ALLOWED_HOSTS", "").split(",") if h]

SECURE_CONTENT_TYPE_NOSNIFF = True
X_FRAME_OPTIONS = "DENY"

# Registry webhooks are small JSON documents
DATA_UPLOAD_MAX_MEMORY_SIZE = 10485760  # 10MB

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# ===============================================================================
# E-INVOICING REGISTRY 🧾
# ===============================================================================

REGISTRY_ENABLED = os.environ.get("REGISTRY_ENABLED", "true").lower() == "true"
REGISTRY_ENVIRONMENT = os.environ.get("REGISTRY_ENVIRONMENT", "sandbox")
REGISTRY_CLIENT_ID = os.environ.get("REGISTRY_CLIENT_ID", "")
REGISTRY_CLIENT_SECRET = os.environ.get("REGISTRY_CLIENT_SECRET", "")
REGISTRY_WEBHOOK_SECRET = os.environ.get("REGISTRY_WEBHOOK_SECRET", "")
REGISTRY_SERVICE_PROVIDER_NAME = os.environ.get("REGISTRY_SERVICE_PROVIDER_NAME", "einvoicing")

# Transport
REGISTRY_API_TIMEOUT_SECONDS = int(os.environ.get("REGISTRY_API_TIMEOUT_SECONDS", "30"))
REGISTRY_API_MAX_RETRIES = int(os.environ.get("REGISTRY_API_MAX_RETRIES", "3"))

# Polling
REGISTRY_POLL_BATCH_SIZE = int(os.environ.get("REGISTRY_POLL_BATCH_SIZE", "10"))
REGISTRY_POLL_BUDGET_SECONDS = int(os.environ.get("REGISTRY_POLL_BUDGET_SECONDS", "120"))
REGISTRY_POLL_INTERVAL_MINUTES = int(os.environ.get("REGISTRY_POLL_INTERVAL_MINUTES", "5"))

# Reconciliation
REGISTRY_DEDUP_WINDOW_SECONDS = int(os.environ.get("REGISTRY_DEDUP_WINDOW_SECONDS", "30"))
REGISTRY_CAS_MAX_ATTEMPTS = int(os.environ.get("REGISTRY_CAS_MAX_ATTEMPTS", "5"))
REGISTRY_SUBMISSION_CLAIM_TTL_SECONDS = int(os.environ.get("REGISTRY_SUBMISSION_CLAIM_TTL_SECONDS", "900"))

REGISTRY_METRICS_ENABLED = os.environ.get("REGISTRY_METRICS_ENABLED", "true").lower() == "true"

# ===============================================================================
# DJANGO-Q2 TASK QUEUE ⏰
# ===============================================================================

Q_CLUSTER_BASE = {
    "name": "einvoicing-cluster",
    "timeout": 300,  # 5 minutes
    "retry": 600,  # 10 minutes retry delay
    "save_limit": 1000,  # Keep last 1000 task results
    "catch_up": False,  # Don't run missed scheduled tasks
    "orm": "default",  # Use the database as broker
    "bulk": 10,  # Process 10 jobs at once
    "queue_limit": 100,  # Max 100 jobs in queue
}

Q_CLUSTER = {
    **Q_CLUSTER_BASE,
    "workers": 2,  # 2 worker processes
    "recycle": 500,  # Restart workers after 500 tasks
    "sync": False,  # Async execution
}

# ===============================================================================
# LOGGING CONFIGURATION
# ===============================================================================

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
        "simple": {
            "format": "{levelname} {message}",
            "style": "{",
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
        "level": "INFO",
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "apps": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "django_q": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
    },
}
