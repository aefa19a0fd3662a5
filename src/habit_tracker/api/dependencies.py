"""FastAPI dependencies shared by the API routes."""

from fastapi import HTTPException, Request, status

from habit_tracker.services.tracker.service import HabitTokenService


def get_service(request: Request) -> HabitTokenService:
    """FastAPI dependency returning the HabitTokenService from app.state.

    Raises:
        HTTPException 503: Service was not wired at startup (node or contract unavailable)
    """
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=getattr(request.app.state, "startup_error", None)
            or "Habit token service is not available",
        )
    return service
