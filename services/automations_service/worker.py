"""ARQ worker for automations service background tasks.

Schedules periodic tasks via ARQ cron jobs backed by Redis.
Run with: arq services.automations_service.worker.WorkerSettings
"""

import asyncio

from arq import cron
from libs.common.arq_config import get_redis_settings
from libs.common.config import get_settings
from libs.common.logging import configure_logging, get_logger
from libs.common.redis import close_redis
from services.automations_service.services.evaluator import run_time_limit

logger = get_logger(__name__)

# A run stops starting clients at its budget; the job must outlive that.
DROPOFF_JOB_TIMEOUT = int(run_time_limit(get_settings())) + 60


async def startup(ctx: dict):
    configure_logging()
    ctx["stop_event"] = asyncio.Event()


async def shutdown(ctx: dict):
    # Lets an in-progress run stop picking up new clients.
    stop_event = ctx.get("stop_event")
    if stop_event is not None:
        stop_event.set()
    await close_redis()


# ── Wrapper functions (ARQ requires top-level async callables) ──


async def task_run_dropoff_detection(ctx: dict):
    """Flag inactive clients and run the configured stage actions."""
    from services.automations_service.tasks import run_dropoff_detection

    logger.info("Running: run_dropoff_detection")
    summary = await run_dropoff_detection(stop_event=ctx.get("stop_event"))
    return summary.as_dict()


# ── Worker configuration ──


class WorkerSettings:
    """ARQ worker settings with cron job schedules."""

    redis_settings = get_redis_settings()
    on_startup = startup
    on_shutdown = shutdown

    functions = [task_run_dropoff_detection]
    job_timeout = DROPOFF_JOB_TIMEOUT
    # On SIGTERM, let the running sweep finish before arq cancels it.
    job_completion_wait = DROPOFF_JOB_TIMEOUT

    cron_jobs = [
        # Daily drop-off sweep
        cron(
            task_run_dropoff_detection,
            hour=get_settings().DROPOFF_CRON_HOUR_UTC,
            minute=0,
            run_at_startup=False,
            unique=True,
            timeout=DROPOFF_JOB_TIMEOUT,
        ),
    ]
