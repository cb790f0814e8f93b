from celery import Celery
from celery.signals import worker_ready
from celery.utils.log import get_logger
from kombu import Exchange, Queue
from prometheus_client import start_http_server

from taskmaster.core.log_config import setup_logging
from .config import settings

logger = get_logger(__name__)

broker_url = settings.CELERY_BROKER_URL or settings.RABBITMQ_URL
result_backend = settings.CELERY_RESULT_BACKEND or None

celery_app = Celery(
    "reminders",
    broker=broker_url,
    backend=result_backend,
)

exchange = Exchange(settings.RABBITMQ_EXCHANGE, type="direct", durable=True)

celery_app.conf.update(
    # Job records are deleted only after the handler ran, so ack late too
    task_acks_late=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.WORKER_CONCURRENCY,
    task_default_queue=settings.RABBITMQ_QUEUE,
    task_default_exchange=settings.RABBITMQ_EXCHANGE,
    task_default_routing_key=settings.RABBITMQ_ROUTING_KEY,
    include=["taskmaster.reminders.tasks"],
    task_queues=(
        Queue(settings.RABBITMQ_QUEUE, exchange=exchange, routing_key=settings.RABBITMQ_ROUTING_KEY, durable=True),
    ),
)

# Celery Beat schedule for the rolling expansion sweep
celery_app.conf.beat_schedule = {
    "sweep-recurring": {
        "task": "reminders.sweep",
        "schedule": settings.SCHEDULER_SCAN_INTERVAL_SECONDS,
    },
}


@worker_ready.connect
def _on_worker_ready(**_kwargs) -> None:
    setup_logging()
    if settings.METRICS_ENABLED:
        start_http_server(settings.METRICS_PORT)
        logger.info("Metrics exposed on port %d", settings.METRICS_PORT)
