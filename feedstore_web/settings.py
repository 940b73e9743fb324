import os

import redis

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# ===================
# = Server Settings =
# ===================

DEBUG = False
SECRET_KEY = "feedstore-development-key"
ALLOWED_HOSTS = ["*"]
TIME_ZONE = "UTC"
USE_TZ = True

INSTALLED_APPS = [
    "apps.timeline",
]

DATABASES = {}

# ==================
# = Redis Settings =
# ==================

REDIS_TIMELINE = {
    "host": "127.0.0.1",
    "port": 6379,
    "db": 0,
}

# =====================
# = Timeline Settings =
# =====================

# Backend variant for every channel without an explicit entry below.
TIMELINE_DEFAULT_TYPE = "sorted-set"
# Per-channel overrides, e.g. {"notifications": "stream"}.
TIMELINE_CHANNEL_TYPES = {}

# ===================
# = Celery Settings =
# ===================

CELERY_BROKER_URL = "redis://127.0.0.1:6379/1"
CELERY_TASK_IGNORE_RESULT = True
CELERY_TASK_ROUTES = {
    "reconcile-timeline": {"queue": "maintenance"},
}

# ===========
# = Logging =
# ===========

LOG_LEVEL = "INFO"
LOG_COLORS = True

# ==================
# = Local Settings =
# ==================

try:
    from feedstore_web.local_settings import *  # noqa: F401,F403
except ModuleNotFoundError:
    pass

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "[%(asctime)-12s] %(message)s",
            "datefmt": "%b %d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "level": "DEBUG",
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "loggers": {
        "feedstore": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
}

REDIS_TIMELINE_POOL = redis.ConnectionPool(
    host=REDIS_TIMELINE["host"],
    port=REDIS_TIMELINE["port"],
    db=REDIS_TIMELINE["db"],
    decode_responses=True,
)
