"""
Agreement Service - recorded money agreements between two people

Creating an agreement notifies the counterparty; confirmation by the
counterparty happens outside the conversation engine.
"""
import secrets
from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ValidationException
from app.core.logging import get_logger
from app.core.validation import AmountValidator, PhoneNumberValidator
from app.db.models.agreement import Agreement, AgreementDirection, AgreementPurpose, AgreementStatus
from app.db.models.outbox_message import OutboxMessageType
from app.db.models.user import User
from app.domain.services.messenger import OutboxMessenger

logger = get_logger(__name__)

MAX_AGREEMENT_AMOUNT = 10_000_000.0


def generate_reference() -> str:
    return f"AGR-{secrets.token_hex(4).upper()}"


class AgreementService:
    def __init__(self, db: AsyncSession, messenger: OutboxMessenger):
        self.db = db
        self.messenger = messenger

    async def create_agreement(
        self,
        creator: User,
        direction: AgreementDirection,
        amount: float,
        counterparty_name: str,
        counterparty_phone: str,
        purpose: AgreementPurpose,
        due_date: date | None = None,
        description: str | None = None,
    ) -> Agreement:
        ok, error = AmountValidator.validate(amount, max_value=MAX_AGREEMENT_AMOUNT)
        if not ok:
            raise ValidationException(error, field="amount")
        if not PhoneNumberValidator.validate(counterparty_phone):
            raise ValidationException("Invalid phone number", field="counterparty_phone")
        counterparty_phone = PhoneNumberValidator.normalize(counterparty_phone)
        if counterparty_phone == creator.phone_number:
            raise ValidationException("You cannot make an agreement with yourself", field="counterparty_phone")

        agreement = Agreement(
            reference=generate_reference(),
            creator_id=creator.id,
            direction=direction,
            amount=amount,
            counterparty_name=counterparty_name,
            counterparty_phone=counterparty_phone,
            purpose=purpose,
            description=description,
            due_date=due_date,
            status=AgreementStatus.PENDING,
        )
        self.db.add(agreement)
        await self.db.flush()

        verb = "lent you" if direction == AgreementDirection.GIVING else "received from you"
        due = f"\n📅 Due: {due_date.strftime('%d/%m/%Y')}" if due_date else ""
        await self.messenger.send_text(
            counterparty_phone,
            f"📝 *Agreement {agreement.reference}*\n\n"
            f"{creator.name} recorded that they {verb} ₹{amount:,.2f} "
            f"({AgreementPurpose(purpose).value}).{due}\n\n"
            "You will be asked to confirm it shortly.",
            message_type=OutboxMessageType.COUNTERPARTY_NOTIFICATION,
        )

        logger.info(
            "Agreement created",
            extra_data={
                "agreement_id": agreement.id,
                "reference": agreement.reference,
                "creator_id": creator.id,
                "counterparty": PhoneNumberValidator.mask(counterparty_phone),
            }
        )
        return agreement
