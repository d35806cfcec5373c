"""API module for the Compliance Notice Tracking System."""

from src.api.routes import router
from src.api.models import (
    HealthResponse,
    MessageRequest,
    ProcessingResponse,
    SettingsRequest,
    TickResponse,
)

__all__ = [
    "router",
    "HealthResponse",
    "MessageRequest",
    "ProcessingResponse",
    "SettingsRequest",
    "TickResponse",
]
