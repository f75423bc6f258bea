"""
Celery Application Configuration
Worker queue for chapter generation runs
"""
import os
from celery import Celery
from dotenv import load_dotenv

load_dotenv()

# Redis configuration
REDIS_HOST = os.getenv('REDIS_HOST', 'localhost')
REDIS_PORT = os.getenv('REDIS_PORT', '6379')
REDIS_DB = os.getenv('REDIS_DB', '0')
REDIS_URL = f'redis://{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}'

# Upper bound for one chapter run on a worker (seconds)
CHAPTER_TIME_LIMIT = int(os.getenv('CHAPTER_TIME_LIMIT', '3600'))

# Create Celery app
celery_app = Celery(
    'comic_creator',
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=['tasks']  # Module containing task definitions
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # No Celery rate limiting - the key pool rotates on Gemini quota errors

    # A chapter run holds one worker for minutes
    worker_concurrency=2,
    worker_prefetch_multiplier=1,  # Don't prefetch

    # Result backend settings
    result_expires=86400,  # Results expire after 24 hours

    # Task execution settings
    task_acks_late=True,  # Acknowledge after task completes
    task_reject_on_worker_lost=False,  # A half-finished run is not replayed
    task_soft_time_limit=CHAPTER_TIME_LIMIT,
    task_time_limit=CHAPTER_TIME_LIMIT + 60,

    # Redelivery of unacked runs must not start before the hard limit
    broker_transport_options={'visibility_timeout': CHAPTER_TIME_LIMIT + 120},
)

celery_app.conf.task_routes = {
    'tasks.generate_chapter_task': {'queue': 'chapters'},
}

if __name__ == '__main__':
    celery_app.start()
