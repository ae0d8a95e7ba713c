"""
Base Django settings for the paper-search project.
"""

import os
from pathlib import Path

# Build paths
BASE_DIR = Path(__file__).resolve().parent.parent.parent

# No built-in .env loader: environment variables must be provided by the runtime.
# Use direct os.environ lookups below.


def env_bool(name: str, default: str = 'false') -> bool:
    """Truthy values: 1,true,yes,on."""
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes', 'on')


# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.environ.get('SECRET_KEY', 'insecure-dev-key')

DEBUG = env_bool('DEBUG')

# ALLOWED_HOSTS (comma-separated list)
ALLOWED_HOSTS = [h.strip() for h in os.environ.get('ALLOWED_HOSTS', '').split(',') if h.strip()]

# ---------------------------------------------------------------------------
# Application definition
# ---------------------------------------------------------------------------

DJANGO_APPS = [
    'django.contrib.contenttypes',
]

LOCAL_APPS = [
    'apps.search',
]

INSTALLED_APPS = DJANGO_APPS + LOCAL_APPS

# ---------------------------------------------------------------------------
# Database: PostgreSQL with pgvector
# ---------------------------------------------------------------------------

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.environ.get('DB_NAME'),
        'USER': os.environ.get('DB_USER'),
        'PASSWORD': os.environ.get('DB_PASSWORD'),
        'HOST': os.environ.get('DB_HOST'),
        'PORT': os.environ.get('DB_PORT', '5432'),
        # Short-lived connections keep serverless Postgres happy.
        'CONN_MAX_AGE': int(os.environ.get('DB_CONN_MAX_AGE', '60')),
        'OPTIONS': {
            'sslmode': os.environ.get('DB_SSLMODE', 'prefer'),
            'connect_timeout': int(os.environ.get('DB_CONNECT_TIMEOUT', '5')),
            'options': '-c search_path=public',
        },
    }
}

# ---------------------------------------------------------------------------
# Internationalization
# ---------------------------------------------------------------------------

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = False
USE_TZ = True

# ---------------------------------------------------------------------------
# Embedding endpoint (text-embeddings-inference protocol)
# ---------------------------------------------------------------------------

EMBEDDING_ENDPOINT_URL = os.environ.get('EMBEDDING_ENDPOINT_URL', '')
EMBEDDING_API_TOKEN = os.environ.get('EMBEDDING_API_TOKEN', '')
# Must match the vector columns (apps.search.models) when VECTOR_DB_ENABLED.
EMBEDDING_DIMENSIONS = int(os.environ.get('EMBEDDING_DIMENSIONS', '512'))
EMBEDDING_REQUEST_TIMEOUT = float(os.environ.get('EMBEDDING_REQUEST_TIMEOUT', '30'))

# Batching and concurrency against the endpoint
EMBEDDING_MAX_BATCH_SIZE = int(os.environ.get('EMBEDDING_MAX_BATCH_SIZE', '32'))
EMBEDDING_MAX_CONCURRENCY = int(os.environ.get('EMBEDDING_MAX_CONCURRENCY', '15'))
EMBEDDING_BATCH_STAGGER_MS = int(os.environ.get('EMBEDDING_BATCH_STAGGER_MS', '100'))
EMBEDDING_PARALLEL_LOOKUP_THRESHOLD = int(os.environ.get('EMBEDDING_PARALLEL_LOOKUP_THRESHOLD', '100'))

# In-process embedding cache
EMBEDDING_CACHE_MAX_ENTRIES = int(os.environ.get('EMBEDDING_CACHE_MAX_ENTRIES', '10000'))
EMBEDDING_CACHE_TTL_SECONDS = int(os.environ.get('EMBEDDING_CACHE_TTL_SECONDS', '86400'))

# ---------------------------------------------------------------------------
# Vector store
# ---------------------------------------------------------------------------

VECTOR_DB_ENABLED = env_bool('VECTOR_DB_ENABLED', 'true')
VECTOR_DB_FALLBACK = env_bool('VECTOR_DB_FALLBACK', 'true')
VECTOR_DB_ALIAS = os.environ.get('VECTOR_DB_ALIAS', 'default')
VECTOR_DB_READY_TIMEOUT = float(os.environ.get('VECTOR_DB_READY_TIMEOUT', '2.0'))
VECTOR_DB_READY_POLL_INTERVAL = float(os.environ.get('VECTOR_DB_READY_POLL_INTERVAL', '0.05'))
VECTOR_DB_BULK_BATCH_SIZE = int(os.environ.get('VECTOR_DB_BULK_BATCH_SIZE', '500'))
VECTOR_MEMORY_MAX_VECTORS = int(os.environ.get('VECTOR_MEMORY_MAX_VECTORS', '50000'))

# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

SEARCH_PROVIDER_URL = os.environ.get('SEARCH_PROVIDER_URL', 'https://huggingface.co/api/papers/search')
SEARCH_PROVIDER_TIMEOUT = float(os.environ.get('SEARCH_PROVIDER_TIMEOUT', '10'))
SEARCH_TIMEOUT = float(os.environ.get('SEARCH_TIMEOUT', '15'))
SEARCH_QUERY_EMBEDDING_TIMEOUT = float(os.environ.get('SEARCH_QUERY_EMBEDDING_TIMEOUT', '5'))
SEARCH_RERANK_LIMIT = int(os.environ.get('SEARCH_RERANK_LIMIT', '200'))
SEARCH_WORKERS = int(os.environ.get('SEARCH_WORKERS', '4'))

# "thread" (in-process) or "celery" (requires the persistent store)
SEARCH_BACKFILL_MODE = os.environ.get('SEARCH_BACKFILL_MODE', 'thread')
SEARCH_BACKFILL_TIMEOUT = float(os.environ.get('SEARCH_BACKFILL_TIMEOUT', '60'))

# ---------------------------------------------------------------------------
# Celery: async task queue
# ---------------------------------------------------------------------------

CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = 'UTC'
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 300  # 5 minutes hard limit per task
CELERY_TASK_SOFT_TIME_LIMIT = 240

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
        'apps': {
            'handlers': ['console'],
            'level': os.environ.get('LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}

# ---------------------------------------------------------------------------
# Misc
# ---------------------------------------------------------------------------

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'
