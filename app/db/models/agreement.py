"""
Agreement Model - a recorded money agreement between two people
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Date, Float, ForeignKey, Enum as SQLEnum

from app.db.database import Base, utcnow


class AgreementDirection(str, enum.Enum):
    GIVING = "giving"
    RECEIVING = "receiving"


class AgreementPurpose(str, enum.Enum):
    LOAN = "loan"
    ADVANCE = "advance"
    DEPOSIT = "deposit"
    BUSINESS = "business"
    OTHER = "other"


class AgreementStatus(str, enum.Enum):
    PENDING = "pending"        # ממתין לאישור הצד השני
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class Agreement(Base):
    __tablename__ = "agreements"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(20), unique=True, nullable=False)
    creator_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    direction = Column(SQLEnum(AgreementDirection, values_callable=lambda x: [e.value for e in x]), nullable=False)
    amount = Column(Float, nullable=False)
    counterparty_name = Column(String(100), nullable=False)
    counterparty_phone = Column(String(20), nullable=False, index=True)
    purpose = Column(SQLEnum(AgreementPurpose, values_callable=lambda x: [e.value for e in x]), nullable=False)
    description = Column(String(500), nullable=True)
    due_date = Column(Date, nullable=True)

    status = Column(
        SQLEnum(AgreementStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=AgreementStatus.PENDING,
    )

    created_at = Column(DateTime, default=utcnow)
