from celery import Celery

from leadboard.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "leadboard",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["leadboard.crm.delivery"],
)
