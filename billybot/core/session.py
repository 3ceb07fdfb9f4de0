"""Session helpers for identifying the signed-in tenant (client)."""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from starlette.requests import Request

SESSION_MAX_AGE_HOURS = 24


def get_session_client_id(request: Request) -> Optional[UUID]:
    """
    Get the authenticated client's ID from the session.

    Returns:
        Client UUID if authenticated, None otherwise
    """
    client_id_str = request.session.get("client_id")
    if not client_id_str:
        return None

    try:
        return UUID(client_id_str)
    except (ValueError, TypeError):
        # Invalid UUID format, clear the session
        request.session.clear()
        return None


def is_session_expired(request: Request, max_age_hours: int = SESSION_MAX_AGE_HOURS) -> bool:
    """Check if the current session has exceeded its maximum age."""
    created_at_str = request.session.get("created_at")
    if not created_at_str:
        return True

    try:
        created_at = datetime.fromisoformat(created_at_str)
    except (ValueError, TypeError):
        return True

    # Make created_at timezone-aware if it isn't
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)

    age_hours = (datetime.now(timezone.utc) - created_at).total_seconds() / 3600
    return age_hours >= max_age_hours


def set_session_client_id(request: Request, client_id: UUID) -> None:
    """Store the authenticated client's ID in the session."""
    request.session["client_id"] = str(client_id)

    # Set creation timestamp if not already set
    if "created_at" not in request.session:
        request.session["created_at"] = datetime.now(timezone.utc).isoformat()


def clear_session(request: Request) -> None:
    """Clear all session data."""
    request.session.clear()
