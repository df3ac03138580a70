"""Settings used by the test suite: in-memory layers, eager Celery."""

from .base import *

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels.layers.InMemoryChannelLayer",
    }
}

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = None

DISPATCH = {
    **DISPATCH,
    "LEADER_LOCK_ENABLED": False,
    "IDLE_SLEEP_SECONDS": 0,
    "ERROR_BACKOFF_SECONDS": 0,
    "PUBLISH_BACKOFF_MS": 0,
    "POLL_BLOCK_MS": 0,
}

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'handlers': {'null': {'class': 'logging.NullHandler'}},
    'root': {'handlers': ['null'], 'level': 'WARNING'},
}
