"""
Celery application for the ingestion worker.

Configures the Celery app for background document processing.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) works for local dev.
Result backend: Redis. The document row in PostgreSQL is the source of truth
for processing state; Celery results only expose the run's summary or error.

Queue topology:
  documents.ingest   process / reprocess runs
  system.health      worker liveness pings

Concurrency:
  Runs across documents are bounded by the worker pool
  (CELERY_WORKER_CONCURRENCY) with prefetch 1, so a worker never holds more
  documents than it is processing. Work inside one document is sequential.

Task payloads carry only the document id (and optional chunk parameters);
the worker loads everything else from the database.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from app.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queues
# ---------------------------------------------------------------------------

INGEST_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.ingest",
        exchange=INGEST_EXCHANGE,
        routing_key="documents.ingest",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "app.workers.tasks.process_document":   {"queue": "documents.ingest"},
    "app.workers.tasks.reprocess_document": {"queue": "documents.ingest"},
    "app.workers.tasks.health_check":       {"queue": "system.health"},
}

# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("kb_ingest")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.ingest",
        task_default_exchange="documents",
        task_default_routing_key="documents.ingest",

        # --- Reliability ---
        task_acks_late=True,         # a crashed worker leaves the message queued
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,  # one document at a time per worker process
        worker_concurrency=settings.celery_worker_concurrency,

        # --- No automatic retries: FAILED documents rerun only via reprocess ---
        task_max_retries=0,

        # --- Timeouts ---
        task_soft_time_limit=1800,   # 30 min; large documents embed one chunk at a time
        task_time_limit=1860,        # hard backstop

        # --- Results ---
        result_expires=3600,   # 1 hour; state lives in PostgreSQL
        task_track_started=True,

        # --- Local dev / tests: run tasks inline ---
        task_always_eager=settings.celery_task_always_eager,
        task_eager_propagates=True,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Worker ---
        worker_max_tasks_per_child=200,   # parser memory is returned when the child exits
    )

    # Registers app.workers.tasks
    app.autodiscover_tasks(["app.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: structured task logging
# ---------------------------------------------------------------------------

def _document_id(args, kwargs) -> str:
    if kwargs and kwargs.get("document_id"):
        return kwargs["document_id"]
    return args[0] if args else "?"


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, _document_id(args, kwargs),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, _document_id(args, kwargs),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s: %s",
        task_id, _document_id(args, kwargs), type(exception).__name__, exception,
    )
