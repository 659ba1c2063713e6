"""
URL configuration for the e-invoicing registry integration
"""

from django.contrib import admin
from django.urls import include, path

# ===============================================================================
# MAIN URL PATTERNS
# ===============================================================================

urlpatterns = [
    # Staff administration
    path("admin/", admin.site.urls),
    # External integrations & webhooks
    path("integrations/", include("apps.integrations.urls")),
]
