"""
Celery application configuration for paper-search.

Workers run the embedding backfill when SEARCH_BACKFILL_MODE = "celery".
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.development")

app = Celery("paper_search")

app.config_from_object("django.conf:settings", namespace="CELERY")

# Auto-discover tasks in all INSTALLED_APPS
app.autodiscover_tasks()
