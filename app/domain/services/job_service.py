"""
Job Service - small local tasks offered for pay
"""
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ValidationException
from app.core.logging import get_logger
from app.core.validation import AmountValidator, TextSanitizer
from app.db.models.job_post import JobCategory, JobPost, JobStatus
from app.db.models.user import User

logger = get_logger(__name__)

MAX_JOB_PAY = 100_000.0


class JobService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_job(
        self,
        poster: User,
        category: JobCategory,
        title: str,
        pay_amount: float,
        location_name: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
    ) -> JobPost:
        title = TextSanitizer.sanitize(title, max_length=120)
        if len(title) < 3:
            raise ValidationException("Job title is too short", field="title")
        ok, error = AmountValidator.validate(pay_amount, max_value=MAX_JOB_PAY)
        if not ok:
            raise ValidationException(error, field="pay_amount")

        job = JobPost(
            poster_id=poster.id,
            category=category,
            title=title,
            location_name=location_name,
            latitude=latitude,
            longitude=longitude,
            pay_amount=pay_amount,
            status=JobStatus.OPEN,
        )
        self.db.add(job)
        await self.db.flush()

        logger.info(
            "Job posted",
            extra_data={"job_id": job.id, "poster_id": poster.id, "category": JobCategory(category).value}
        )
        return job
