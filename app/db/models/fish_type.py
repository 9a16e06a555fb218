"""
Fish Type Model - catalogue of species sellers can post
"""
from sqlalchemy import Column, Integer, String, Boolean

from app.db.database import Base


class FishType(Base):
    __tablename__ = "fish_types"

    id = Column(Integer, primary_key=True, index=True)
    name_en = Column(String(60), unique=True, nullable=False)
    name_local = Column(String(60), nullable=True)
    emoji = Column(String(8), nullable=False, default="🐟")
    is_active = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    @property
    def display_name(self) -> str:
        if self.name_local:
            return f"{self.emoji} {self.name_en} ({self.name_local})"
        return f"{self.emoji} {self.name_en}"


# (name_en, name_local, emoji) - נזרע באתחול אם הטבלה ריקה
DEFAULT_FISH_TYPES = [
    ("Sardine", "Mathi", "🐟"),
    ("Mackerel", "Ayala", "🐟"),
    ("Anchovy", "Netholi", "🐟"),
    ("Seer Fish", "Neymeen", "🐠"),
    ("Tuna", "Choora", "🐟"),
    ("Pomfret", "Avoli", "🐠"),
    ("Pearl Spot", "Karimeen", "🐠"),
    ("Prawns", "Chemmeen", "🦐"),
    ("Squid", "Koonthal", "🦑"),
    ("Crab", "Njandu", "🦀"),
]
