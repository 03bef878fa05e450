"""Sessions router - inspection and forced teardown of live terminals."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, ConfigDict

from terminalhub.api.dependencies import get_session_registry_dep
from terminalhub.domain.errors import SessionNotFoundError
from terminalhub.runtime.session_registry import SessionRegistry

router = APIRouter(prefix="/sessions", tags=["sessions"])

ERROR_404_SESSION = {
    "description": "Session is unknown or already torn down.",
    "content": {
        "application/json": {
            "example": {
                "detail": "session not found: 3f2a9c..."
            }
        }
    },
}


class SessionSummary(BaseModel):
    """Public view of one live session."""

    model_config = ConfigDict(populate_by_name=True)

    sessionId: str
    mode: str
    state: str
    createdAt: str
    connections: int
    ptyAlive: bool
    sandboxId: Optional[str] = None


@router.get("", response_model=List[SessionSummary])
async def list_sessions(
    registry: SessionRegistry = Depends(get_session_registry_dep),
) -> List[SessionSummary]:
    """List all live sessions."""
    return [SessionSummary(**session.to_dict()) for session in registry.list_sessions()]


@router.get("/{session_id}", response_model=SessionSummary, responses={404: ERROR_404_SESSION})
async def get_session(
    session_id: str,
    registry: SessionRegistry = Depends(get_session_registry_dep),
) -> SessionSummary:
    """Get one live session."""
    try:
        session = registry.get(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return SessionSummary(**session.to_dict())


@router.delete("/{session_id}", status_code=204)
async def delete_session(
    session_id: str,
    registry: SessionRegistry = Depends(get_session_registry_dep),
) -> Response:
    """Tear a session down. Unknown ids are accepted as already gone."""
    await registry.destroy(session_id)
    return Response(status_code=204)
