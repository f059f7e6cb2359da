"""Drop-off detection background task."""

import asyncio
from typing import Optional

from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.automations_service.services.evaluator import (
    DropoffEvaluator,
    DropoffRunSummary,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


async def run_dropoff_detection(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    stop_event: Optional[asyncio.Event] = None,
) -> DropoffRunSummary:
    """
    Evaluate every active client of every coach with drop-off rescue enabled.
    Runs once per day (controlled by the worker cron) or on demand.
    Setting ``stop_event`` stops new clients from starting; in-flight ones finish.
    """
    evaluator = DropoffEvaluator(session_factory, stop_event=stop_event)
    return await evaluator.run()
