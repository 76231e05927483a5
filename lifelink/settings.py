"""
Django settings for the LifeLink matching core.

Only what the matching engine needs: no database, no URL routing, no
templates. An API layer embedding the core adds its own.
"""
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'insecure-dev-key-change-me')

DEBUG = os.environ.get('DJANGO_DEBUG', 'False') == 'True'

ALLOWED_HOSTS = []

INSTALLED_APPS = [
    'matching.apps.MatchingConfig',
]

DATABASES = {}

USE_TZ = True
TIME_ZONE = 'Asia/Kathmandu'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Email
EMAIL_BACKEND = os.environ.get('EMAIL_BACKEND', 'django.core.mail.backends.console.EmailBackend')
DEFAULT_FROM_EMAIL = os.environ.get('DEFAULT_FROM_EMAIL', 'LifeLink Nepal <noreply@lifelink.org.np>')
SITE_URL = os.environ.get('SITE_URL', 'http://localhost:8000')

# Celery
CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', CELERY_BROKER_URL)
CELERY_TASK_SERIALIZER = 'json'
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_ALWAYS_EAGER = os.environ.get('CELERY_TASK_ALWAYS_EAGER', 'False') == 'True'

# Matching core
LIFELINK_MATCHING = {
    'SCORE_WEIGHTS': {
        'distance': 0.35,
        'availability': 0.25,
        'history': 0.20,
        'compatibility': 0.15,
        'urgency': 0.05,
    },
    'URGENCY_POLICIES': {
        # e.g. 'critical': {'response_deadline': 45, 'max_radius_km': 100},
    },
    'DONATION_COOLDOWN_DAYS': 90,
    'LOCATION_STALENESS_SECONDS': 6 * 60 * 60,
    'FINISHED_REQUEST_RETENTION': 1000,
    'NOTIFICATION_CHANNEL': os.environ.get('LIFELINK_NOTIFICATION_CHANNEL', 'matching.notifications.LoggingChannel'),
    'NOTIFICATION_ROUTES': {
        # e.g. 'email': 'matching.notifications.EmailChannel',
    },
    'NOTIFICATION_FALLBACK_CHANNEL': 'matching.notifications.LoggingChannel',
    'SITE_URL': SITE_URL,
}

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
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
        'matching': {
            'handlers': ['console'],
            'level': os.environ.get('MATCHING_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
        'algorithms': {
            'handlers': ['console'],
            'level': os.environ.get('MATCHING_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
