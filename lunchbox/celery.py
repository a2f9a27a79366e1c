from celery import Celery

# Create Celery app
celery = Celery("lunchbox")

# Load configuration from lunchbox.config.celeryconfig module
celery.config_from_object("lunchbox.config.celeryconfig")
