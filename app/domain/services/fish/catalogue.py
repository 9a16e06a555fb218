"""
Fish type catalogue seeding (run on startup, idempotent)
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.fish_type import DEFAULT_FISH_TYPES, FishType

logger = get_logger(__name__)


async def seed_fish_types(db: AsyncSession) -> int:
    """Insert missing default fish types; returns how many were added"""
    result = await db.execute(select(FishType.name_en))
    existing = set(result.scalars().all())

    added = 0
    for order, (name_en, name_local, emoji) in enumerate(DEFAULT_FISH_TYPES):
        if name_en in existing:
            continue
        db.add(FishType(name_en=name_en, name_local=name_local, emoji=emoji, sort_order=order))
        added += 1

    if added:
        await db.commit()
        logger.info("Seeded fish types", extra_data={"added": added})
    return added
