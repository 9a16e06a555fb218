"""
Post-commit job buffer.

Handlers and services never enqueue background work directly: they record the
job here, and the caller publishes the buffer only after its transaction has
committed. A rolled-back step discards what it recorded.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from app.core.logging import get_logger

logger = get_logger(__name__)


class JobPublisher(Protocol):
    """Where committed work goes (Celery in production, a recorder in tests)"""

    def process_incoming_message(self, payload: dict[str, Any]) -> None: ...

    def send_outbox_message(self, outbox_id: int, countdown: int | None = None) -> None: ...

    def process_new_catch(self, catch_id: int) -> None: ...

    def notify_catch_sold_out(self, catch_id: int) -> None: ...


@dataclass(frozen=True)
class Job:
    name: str
    args: tuple = ()


@dataclass
class PostCommitJobs:
    jobs: list[Job] = field(default_factory=list)

    def send_outbox(self, outbox_id: int) -> None:
        self.jobs.append(Job("send_outbox_message", (outbox_id,)))

    def process_new_catch(self, catch_id: int) -> None:
        self.jobs.append(Job("process_new_catch", (catch_id,)))

    def catch_sold_out(self, catch_id: int) -> None:
        self.jobs.append(Job("notify_catch_sold_out", (catch_id,)))

    @property
    def pending(self) -> int:
        return len(self.jobs)

    def mark(self) -> int:
        return len(self.jobs)

    def rollback_to(self, mark: int) -> None:
        del self.jobs[mark:]

    def discard(self) -> None:
        self.jobs.clear()

    def release(self, publisher: JobPublisher) -> int:
        """Publish every recorded job; returns how many were published"""
        published = 0
        jobs, self.jobs = self.jobs, []
        for job in jobs:
            try:
                getattr(publisher, job.name)(*job.args)
                published += 1
            except Exception as e:
                # השורה כבר ב-DB - סריקת ה-outbox התקופתית תשלח אותה
                logger.error(
                    "Failed to publish post-commit job",
                    extra_data={"job": job.name, "args": list(job.args), "error": str(e)},
                    exc_info=True,
                )
        return published
