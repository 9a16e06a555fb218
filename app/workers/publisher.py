"""
Celery-backed JobPublisher - where committed post-commit jobs are sent
"""
from typing import Any

from app.core.logging import get_logger

logger = get_logger(__name__)


class CeleryJobPublisher:
    """Publishes jobs as Celery tasks (imported lazily to keep the API free of worker imports)"""

    def process_incoming_message(self, payload: dict[str, Any]) -> None:
        from app.workers.tasks import process_incoming_message

        process_incoming_message.delay(payload)

    def send_outbox_message(self, outbox_id: int, countdown: int | None = None) -> None:
        from app.workers.tasks import send_outbox_message

        send_outbox_message.apply_async(args=[outbox_id], countdown=countdown)

    def process_new_catch(self, catch_id: int) -> None:
        from app.workers.tasks import process_new_catch

        process_new_catch.delay(catch_id)

    def notify_catch_sold_out(self, catch_id: int) -> None:
        from app.workers.tasks import notify_catch_sold_out

        notify_catch_sold_out.delay(catch_id)


_publisher = CeleryJobPublisher()


def get_job_publisher() -> CeleryJobPublisher:
    """FastAPI dependency; tests override it with a recording publisher"""
    return _publisher
