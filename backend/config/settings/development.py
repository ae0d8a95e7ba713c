"""
Development settings for the paper-search project.
"""

from .base import *  # noqa: F401, F403

DEBUG = True

ALLOWED_HOSTS = ['*']

# ---------------------------------------------------------------------------
# Database: local PostgreSQL with pgvector
# ---------------------------------------------------------------------------

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.environ.get('DB_NAME', 'papers_db'),  # noqa: F405
        'USER': os.environ.get('DB_USER', 'postgres'),  # noqa: F405
        'PASSWORD': os.environ.get('DB_PASSWORD', 'postgres'),  # noqa: F405
        'HOST': os.environ.get('DB_HOST', 'localhost'),  # noqa: F405
        'PORT': os.environ.get('DB_PORT', '5432'),  # noqa: F405
        'OPTIONS': {
            'connect_timeout': 2,
            'options': '-c search_path=public',
        },
    }
}

# ---------------------------------------------------------------------------
# Logging: verbose app logs, quiet SQL
# ---------------------------------------------------------------------------

LOGGING['loggers']['apps']['level'] = 'DEBUG'  # noqa: F405
LOGGING['loggers']['django.db.backends'] = {  # noqa: F405
    'level': 'WARNING',
    'handlers': ['console'],
    'propagate': False,
}

# ---------------------------------------------------------------------------
# Celery: run tasks synchronously in development (no worker needed)
# ---------------------------------------------------------------------------

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
