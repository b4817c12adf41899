"""Celery application that delivers queued import messages."""

import ssl

from celery import Celery

from lead_importer.core.config import get_settings
from lead_importer.utils.redis_client import uses_tls

settings = get_settings()

broker_url = settings.celery_broker_url or settings.redis_url
backend_url = settings.celery_result_url or settings.redis_url

is_ssl = uses_tls(broker_url) or uses_tls(backend_url)


def _with_ssl_params(url: str) -> str:
    """Switch to rediss:// and add ssl_cert_reqs, which the result backend reads at init."""
    url = url.replace("redis://", "rediss://", 1)
    if "ssl_cert_reqs" in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}ssl_cert_reqs=none"


if is_ssl:
    broker_url = _with_ssl_params(broker_url)
    backend_url = _with_ssl_params(backend_url)

celery_app = Celery(
    "lead_importer",
    broker=broker_url,
    backend=backend_url,
)

celery_config = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "task_acks_late": True,  # Acknowledge after delivery finished
    "task_reject_on_worker_lost": True,  # Re-queue if worker dies
    "worker_prefetch_multiplier": 1,
    "task_time_limit": 3600,
    "task_soft_time_limit": 3300,
    "result_expires": 3600,
    "broker_connection_retry_on_startup": True,
    "worker_hijack_root_logger": False,
    "task_default_queue": "imports",
    "task_routes": {
        "lead_importer.workers.tasks.deliver_queue_message": {"queue": "imports"},
    },
}

if is_ssl:
    ssl_dict = {"ssl_cert_reqs": ssl.CERT_NONE}
    celery_config["broker_use_ssl"] = ssl_dict
    celery_config["redis_backend_use_ssl"] = ssl_dict

celery_app.conf.update(celery_config)

# Register tasks with celery_app
from lead_importer.workers.tasks import queue_delivery  # noqa: E402,F401
