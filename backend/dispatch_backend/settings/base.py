"""
Base Django settings for the courier dispatch backend.

Environment variables are loaded from the repository-level .env file when
present. Production overrides live in prod.py, test overrides in test.py.
"""

import os
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(os.path.join(BASE_DIR, '..', '.env'))

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-secret-key-change-me")
DEBUG = os.getenv("DJANGO_DEBUG", "true").lower() == "true"
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1").split(',')

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'channels',
    'accounts',
    'drivers',
    'orders',
    'realtime',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'dispatch_backend.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'dispatch_backend.wsgi.application'
ASGI_APPLICATION = 'dispatch_backend.asgi.application'

# Database: Postgres when POSTGRES_DB is set, SQLite otherwise
if os.getenv("POSTGRES_DB"):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.getenv("POSTGRES_DB"),
            'USER': os.getenv("POSTGRES_USER", "postgres"),
            'PASSWORD': os.getenv("POSTGRES_PASSWORD", ""),
            'HOST': os.getenv("POSTGRES_HOST", "localhost"),
            'PORT': os.getenv("POSTGRES_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

AUTH_USER_MODEL = 'accounts.User'

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
]

LANGUAGE_CODE = 'en-us'
TIME_ZONE = os.getenv("TIME_ZONE", "UTC")
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': (
        'rest_framework_simplejwt.authentication.JWTAuthentication',
        'rest_framework.authentication.SessionAuthentication',
    ),
    'DEFAULT_PERMISSION_CLASSES': (
        'rest_framework.permissions.IsAuthenticated',
    ),
}

SIMPLE_JWT = {
    'ACCESS_TOKEN_LIFETIME': timedelta(hours=int(os.getenv("JWT_ACCESS_HOURS", "12"))),
    'REFRESH_TOKEN_LIFETIME': timedelta(days=7),
}

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels_redis.core.RedisChannelLayer",
        "CONFIG": {
            "hosts": [REDIS_URL],
        },
    }
}

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", REDIS_URL)
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE
CELERY_BEAT_SCHEDULE = {
    'scan-expired-offers': {
        'task': 'orders.tasks.scan_expired_offers_task',
        'schedule': float(os.getenv("EXPIRATION_SCAN_INTERVAL_SECONDS", "10")),
    },
    'sync-driver-availability': {
        'task': 'drivers.tasks.sync_driver_availability_task',
        'schedule': float(os.getenv("AVAILABILITY_SYNC_INTERVAL_SECONDS", "60")),
    },
}

# Push notifications: dotted path to a class exposing send(token, title, body, data)
PUSH_GATEWAY_BACKEND = os.getenv("PUSH_GATEWAY_BACKEND", "realtime.push.LoggingPushGateway")

# Dispatch engine tunables
DISPATCH = {
    "EVENT_STREAM_KEY": os.getenv("DISPATCH_EVENT_STREAM_KEY", "dispatch:events"),
    "EVENT_STREAM_MAXLEN": int(os.getenv("DISPATCH_EVENT_STREAM_MAXLEN", "100000")),
    "CONSUMER_NAME": os.getenv("DISPATCH_CONSUMER_NAME", "assignment-worker"),
    "POLL_BLOCK_MS": int(os.getenv("DISPATCH_POLL_BLOCK_MS", "5000")),
    "MAX_EVENTS_PER_POLL": int(os.getenv("DISPATCH_MAX_EVENTS_PER_POLL", "10")),
    "IDLE_SLEEP_SECONDS": float(os.getenv("DISPATCH_IDLE_SLEEP_SECONDS", "0.2")),
    "ERROR_BACKOFF_SECONDS": float(os.getenv("DISPATCH_ERROR_BACKOFF_SECONDS", "2")),
    "OFFER_TTL_SECONDS": int(os.getenv("OFFER_TTL_SECONDS", "60")),
    "MAX_ASSIGNMENT_ATTEMPTS": int(os.getenv("MAX_ASSIGNMENT_ATTEMPTS", "5")),
    "SEARCH_RADIUS_METERS": int(os.getenv("SEARCH_RADIUS_METERS", "10000")),
    "LOCATION_FRESHNESS_SECONDS": int(os.getenv("LOCATION_FRESHNESS_SECONDS", "300")),
    "EXPIRATION_SCAN_INTERVAL_SECONDS": int(os.getenv("EXPIRATION_SCAN_INTERVAL_SECONDS", "10")),
    "EXPIRATION_SCAN_BATCH_SIZE": int(os.getenv("EXPIRATION_SCAN_BATCH_SIZE", "50")),
    "RETRY_STALLED_AFTER_SECONDS": int(os.getenv("RETRY_STALLED_AFTER_SECONDS", "120")),
    "PUBLISH_RETRIES": int(os.getenv("DISPATCH_PUBLISH_RETRIES", "3")),
    "PUBLISH_BACKOFF_MS": int(os.getenv("DISPATCH_PUBLISH_BACKOFF_MS", "100")),
    "LEADER_LOCK_ENABLED": os.getenv("DISPATCH_LEADER_LOCK_ENABLED", "true").lower() == "true",
    "LEADER_LOCK_KEY": os.getenv("DISPATCH_LEADER_LOCK_KEY", "dispatch:worker:leader"),
    "LEADER_LOCK_TTL_SECONDS": int(os.getenv("DISPATCH_LEADER_LOCK_TTL_SECONDS", "30")),
}

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
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
        'level': LOG_LEVEL,
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': os.getenv("DJANGO_LOG_LEVEL", "WARNING"),
            'propagate': False,
        },
    },
}
