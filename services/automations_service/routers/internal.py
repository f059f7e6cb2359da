"""
Internal service-to-service endpoints for the automations service.
"""

from fastapi import APIRouter, Depends
from libs.auth.dependencies import require_service_role
from libs.auth.models import AuthUser
from libs.db.session import get_session_factory
from services.automations_service.schemas import DropoffRunResponse
from services.automations_service.tasks import run_dropoff_detection
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

router = APIRouter(prefix="/internal/automations", tags=["internal"])


@router.post("/dropoff/run", response_model=DropoffRunResponse)
async def trigger_dropoff_run(
    _: AuthUser = Depends(require_service_role),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Run drop-off detection now and return the run summary."""
    summary = await run_dropoff_detection(session_factory=session_factory)
    return DropoffRunResponse(**summary.as_dict())
