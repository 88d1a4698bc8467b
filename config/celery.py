"""
Celery application for background order work.

Only post-commit side effects (customer notifications) run here; order state
changes always happen synchronously inside the request.
"""
import os

from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('orderflow')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()
