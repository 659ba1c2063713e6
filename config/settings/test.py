"""
Test settings for the e-invoicing registry integration
Fast, isolated testing environment.
"""

from .base import *  # noqa: F403

# ===============================================================================
# TEST FLAGS
# ===============================================================================

DEBUG = False

# ===============================================================================
# TEST DATABASE (In-memory for speed)
# ===============================================================================

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
        "OPTIONS": {
            "timeout": 20,
        },
    }
}

# ===============================================================================
# TEST CACHE
# ===============================================================================

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "test-cache",
    }
}

# ===============================================================================
# DISABLE MIGRATIONS FOR FASTER TESTS
# ===============================================================================


class DisableMigrations:
    def __contains__(self, item: str) -> bool:
        return True

    def __getitem__(self, item: str) -> None:
        return None


MIGRATION_MODULES = DisableMigrations()

# ===============================================================================
# PASSWORD HASHER (Fast for tests)
# ===============================================================================

PASSWORD_HASHERS = [
    "django.contrib.auth.hashers.MD5PasswordHasher",  # Fast but insecure (test only)
]

# ===============================================================================
# LOGGING (Minimal for tests)
# ===============================================================================

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "handlers": {
        "null": {
            "class": "logging.NullHandler",
        },
    },
    "root": {
        "handlers": ["null"],
        "level": "CRITICAL",
    },
}

# ===============================================================================
# SECURITY (Relaxed for tests)
# ===============================================================================

SECRET_KEY = "django-test-key-not-secure"  # noqa: S105
ALLOWED_HOSTS = ["testserver", "localhost", "127.0.0.1"]

# Rate limits are exercised explicitly where needed
RATELIMIT_ENABLE = False

# ===============================================================================
# E-INVOICING REGISTRY (No network in tests)
# ===============================================================================

REGISTRY_ENABLED = True
REGISTRY_ENVIRONMENT = "sandbox"
REGISTRY_CLIENT_ID = "test-client"
REGISTRY_CLIENT_SECRET = "test-secret"  # noqa: S105
REGISTRY_WEBHOOK_SECRET = "test-webhook-secret"  # noqa: S105
REGISTRY_API_MAX_RETRIES = 1
REGISTRY_METRICS_ENABLED = False

# ===============================================================================
# TASK QUEUE (Synchronous for tests)
# ===============================================================================

Q_CLUSTER = {
    **Q_CLUSTER_BASE,  # noqa: F405
    "workers": 1,
    "sync": True,  # Run tasks inline in tests
}
