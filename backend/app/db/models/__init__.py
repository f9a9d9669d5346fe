"""Re-export all models so Base.metadata sees them."""

from app.db.models.prototype import Prototype

__all__ = [
    "Prototype",
]
