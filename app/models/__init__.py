from app.models.driver import Driver
from app.models.rider import Rider
from app.models.trip import Trip

__all__ = ["Driver", "Rider", "Trip"]
