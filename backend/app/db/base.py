"""
Database base configuration
Imports all models to ensure they're registered with SQLModel metadata
"""

from sqlmodel import SQLModel

# Import all models so they're registered with SQLModel.metadata
from app.db.models import (
    User,
    Tour,
    AvailabilityWindow,
    Booking,
    Review,
)

# Metadata handed to create_all by DatabaseManager.init_db
Base = SQLModel.metadata

__all__ = ["Base", "SQLModel", "User", "Tour", "AvailabilityWindow", "Booking", "Review"]
