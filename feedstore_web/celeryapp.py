import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "feedstore_web.settings")

app = Celery("feedstore_web")

app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()
