# ===============================================================================
# PYTEST CONFIGURATION FOR THE E-INVOICING REGISTRY INTEGRATION
# ===============================================================================
"""
Global test configuration.

Test Structure:
- tests/ mirrors apps/ structure for app-specific tests
- tests/factories/ holds shared object builders
- Naming convention: test_{app}_{feature}.py

Test Discovery:
- Run specific app tests: pytest tests/einvoicing/
- Run all tests: pytest tests/
"""

import os

import django


def pytest_configure():
    """Configure Django settings for pytest"""
    os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings.test')

    # Configure Django
    django.setup()


# ===============================================================================
# PYTEST FIXTURES
# ===============================================================================

import pytest  # noqa: E402

from apps.einvoicing.services import build_default_services  # noqa: E402


@pytest.fixture(autouse=True)
def reset_default_services():
    """Process-wide services must not leak cached credentials between tests"""
    build_default_services.cache_clear()
    yield
    build_default_services.cache_clear()


@pytest.fixture
def merchant(db):
    """Active merchant with a full address"""
    from tests.factories.einvoicing import create_merchant  # noqa: PLC0415

    return create_merchant()
