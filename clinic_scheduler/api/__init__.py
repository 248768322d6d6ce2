"""API package initialization."""
from clinic_scheduler.api.models import ErrorResponse
from clinic_scheduler.api.server import create_app

__all__ = ["ErrorResponse", "create_app"]
