"""
Production settings for the paper-search project.
"""

import os

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.django import DjangoIntegration

from .base import *  # noqa: F401, F403

DEBUG = False

if SECRET_KEY == 'insecure-dev-key':  # noqa: F405
    raise RuntimeError("SECRET_KEY must be set in production")

DATABASES['default']['OPTIONS']['sslmode'] = os.environ.get('DB_SSLMODE', 'require')  # noqa: F405

# ---------------------------------------------------------------------------
# Sentry
# ---------------------------------------------------------------------------

sentry_sdk.init(
    dsn=os.environ.get('SENTRY_DSN', ''),
    integrations=[DjangoIntegration(), CeleryIntegration()],
    traces_sample_rate=0.1,
    send_default_pii=False,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOGGING['formatters']['verbose']['format'] = (  # noqa: F405
    '{levelname} {asctime} {module} {process:d} {thread:d} {message}'
)

# ---------------------------------------------------------------------------
# Celery Configuration for Production
# ---------------------------------------------------------------------------

CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://redis:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://redis:6379/0')
CELERY_TASK_ALWAYS_EAGER = False
CELERY_TASK_EAGER_PROPAGATES = False

# Worker configuration
CELERY_WORKER_CONCURRENCY = 4
CELERY_WORKER_MAX_TASKS_PER_CHILD = 1000
