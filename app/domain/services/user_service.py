"""
User Service - registration of WhatsApp senders
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ValidationException
from app.core.logging import get_logger
from app.core.validation import NameValidator, PhoneNumberValidator, TextSanitizer
from app.db.models.user import User

logger = get_logger(__name__)


class UserService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_phone(self, phone: str) -> User | None:
        result = await self.db.execute(select(User).where(User.phone_number == phone))
        return result.scalar_one_or_none()

    async def get(self, user_id: int) -> User | None:
        return await self.db.get(User, user_id)

    @staticmethod
    def is_registered(user: User | None) -> bool:
        return user is not None and user.is_active and bool(user.name)

    async def register(
        self,
        phone: str,
        name: str,
        latitude: float | None = None,
        longitude: float | None = None,
        location_name: str | None = None,
    ) -> User:
        """Create the user for `phone`, or complete an existing row"""
        name = TextSanitizer.sanitize(name, max_length=100)
        valid, error = NameValidator.validate(name)
        if not valid:
            raise ValidationException(error, field="name")

        user = await self.get_by_phone(phone)
        if user is None:
            user = User(phone_number=phone)
            self.db.add(user)
        user.name = name
        user.is_active = True
        if latitude is not None and longitude is not None:
            user.latitude = latitude
            user.longitude = longitude
            user.location_name = location_name
        await self.db.flush()

        logger.info(
            "User registered",
            extra_data={"user_id": user.id, "phone": PhoneNumberValidator.mask(phone)}
        )
        return user

    async def update_location(
        self,
        user: User,
        latitude: float,
        longitude: float,
        location_name: str | None = None,
    ) -> User:
        user.latitude = latitude
        user.longitude = longitude
        user.location_name = location_name
        await self.db.flush()
        return user
