"""
Test settings for the paper-search project.

Tests never touch PostgreSQL: the persistent vector store is disabled and
exercised through fakes.
"""

from .base import *  # noqa: F401, F403

DEBUG = False

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

# No external endpoints in tests
EMBEDDING_ENDPOINT_URL = ''
EMBEDDING_API_TOKEN = ''
SEARCH_PROVIDER_URL = 'http://search.test/api/papers/search'

VECTOR_DB_ENABLED = False
VECTOR_DB_FALLBACK = True
SEARCH_BACKFILL_MODE = 'thread'

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = 'memory://'
CELERY_RESULT_BACKEND = 'cache+memory://'
