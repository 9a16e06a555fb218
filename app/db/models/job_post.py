"""
Job Post Model - a small local task offered for pay
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Float, ForeignKey, Enum as SQLEnum

from app.db.database import Base, utcnow


class JobCategory(str, enum.Enum):
    QUEUE_STANDING = "queue_standing"
    PARCEL_DELIVERY = "parcel_delivery"
    GROCERY_SHOPPING = "grocery_shopping"
    MOVING_HELP = "moving_help"
    HOUSE_CLEANING = "house_cleaning"
    OTHER = "other"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


class JobStatus(str, enum.Enum):
    OPEN = "open"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class JobPost(Base):
    __tablename__ = "job_posts"

    id = Column(Integer, primary_key=True, index=True)
    poster_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    category = Column(SQLEnum(JobCategory, values_callable=lambda x: [e.value for e in x]), nullable=False)
    title = Column(String(120), nullable=False)
    location_name = Column(String(200), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    pay_amount = Column(Float, nullable=False)

    status = Column(
        SQLEnum(JobStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=JobStatus.OPEN,
    )

    created_at = Column(DateTime, default=utcnow)
