"""Drop-off rescue evaluation run.

For every coach with ``dropoff_rescue`` enabled, each active client is
evaluated independently:

1. skip muted clients
2. aggregate the latest activity across the enabled signal channels
3. days since that signal -> highest stage whose threshold is met
4. clear the cursor when the client re-engaged
5. on stage entry: claim the cursor (compare-and-set lease), dispatch,
   record the stage; a failed dispatch releases the claim for the next run

Clients run concurrently up to DROPOFF_MAX_CONCURRENCY. One client's failure
never aborts the run: it is logged with its error kind and counted.
"""

import asyncio
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx
from libs.common import service_client
from libs.common.config import Settings, get_settings
from libs.common.datetime_utils import ensure_utc, utc_now, whole_days_between
from libs.common.logging import get_logger, get_request_id, set_request_context
from libs.db.upsert import dialect_insert
from services.automations_service.errors import (
    AutomationError,
    ExternalServiceError,
)
from services.automations_service.models import (
    AutomationType,
    ClientAutomationStatus,
    CoachAutomationSetting,
    StageAction,
)
from services.automations_service.schemas import DropoffRescueConfig, load_stored_config
from services.automations_service.services.dispatcher import (
    ActionDispatcher,
    DispatchOutcome,
    DispatchRequest,
)
from services.automations_service.services.settings_store import list_enabled_settings
from services.automations_service.services.signals import (
    CALLING_SERVICE,
    ClientSignalSnapshot,
    collect_client_signals,
)
from services.automations_service.services.stages import resolve_stage
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)

DROPOFF = AutomationType.DROPOFF_RESCUE

# signal lookups, dispatch and a few queries, each individually bounded
CLIENT_TIMEOUT_CALLS = 4


def client_timeout_for(settings: Settings) -> float:
    return settings.DROPOFF_CALL_TIMEOUT_SECONDS * CLIENT_TIMEOUT_CALLS


def run_time_limit(settings: Settings) -> float:
    """Longest a run can take: the budget plus one client started at its edge."""
    return settings.DROPOFF_RUN_BUDGET_SECONDS + client_timeout_for(settings)


@dataclass
class DropoffRunSummary:
    run_id: str
    evaluated: int = 0
    processed: int = 0
    alerts: int = 0
    messages: int = 0
    skipped: int = 0
    errors: Counter = field(default_factory=Counter)
    cancelled: bool = False
    timed_out: bool = False

    def record_error(self, kind: str) -> None:
        self.errors[kind] += 1
        self.skipped += 1

    def as_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "evaluated": self.evaluated,
            "processed": self.processed,
            "alerts": self.alerts,
            "messages": self.messages,
            "skipped": self.skipped,
            "errors": dict(self.errors),
            "cancelled": self.cancelled,
            "timed_out": self.timed_out,
        }


class DropoffEvaluator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Optional[Settings] = None,
        dispatcher: Optional[ActionDispatcher] = None,
        stop_event: Optional[asyncio.Event] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.call_timeout = self.settings.DROPOFF_CALL_TIMEOUT_SECONDS
        self.dispatcher = dispatcher or ActionDispatcher(call_timeout=self.call_timeout)
        self.stop_event = stop_event or asyncio.Event()
        self.now = now
        self.client_timeout = client_timeout_for(self.settings)

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def run(self) -> DropoffRunSummary:
        run_id = get_request_id() or set_request_context(
            request_id=f"dropoff-{uuid.uuid4().hex[:12]}"
        )
        summary = DropoffRunSummary(run_id=run_id)
        deadline = time.monotonic() + self.settings.DROPOFF_RUN_BUDGET_SECONDS
        logger.info("Detecting client drop-off (run %s)", run_id)

        try:
            async with self.session_factory() as db:
                enabled = await list_enabled_settings(db, DROPOFF)
        except AutomationError as e:
            logger.error("Drop-off run %s aborted: %s", run_id, e)
            summary.errors[e.kind] += 1
            return summary

        if not enabled:
            logger.info("No coaches have drop-off rescue enabled")
            return summary

        tasks: list[asyncio.Task] = []
        try:
            try:
                await self._schedule_clients(enabled, summary, deadline, tasks)
            except Exception:
                logger.exception("Drop-off run %s stopped scheduling clients", run_id)
                summary.errors["unexpected_error"] += 1
            # In-flight clients finish (or fail) even when the run was stopped.
            if tasks:
                await asyncio.wait(tasks)
        except asyncio.CancelledError:
            # The scheduler cancels the job before its shutdown hooks run.
            self.stop_event.set()
            summary.cancelled = True
            pending = [task for task in tasks if not task.done()]
            logger.warning(
                "Drop-off run %s cancelled; waiting for %d in-flight clients",
                run_id,
                len(pending),
            )
            if pending:
                await asyncio.wait(pending, timeout=self.client_timeout)
            raise

        logger.info(
            "Drop-off detection complete: %d evaluated, %d flagged, %d alerts, "
            "%d messages, %d skipped%s",
            summary.evaluated,
            summary.processed,
            summary.alerts,
            summary.messages,
            summary.skipped,
            " (stopped early)" if summary.cancelled or summary.timed_out else "",
            extra={"extra_fields": summary.as_dict()},
        )
        return summary

    async def _schedule_clients(
        self,
        enabled: list[CoachAutomationSetting],
        summary: DropoffRunSummary,
        deadline: float,
        tasks: list[asyncio.Task],
    ) -> None:
        semaphore = asyncio.Semaphore(self.settings.DROPOFF_MAX_CONCURRENCY)

        for setting in enabled:
            if self._should_stop(summary, deadline):
                return
            coach_work = await self._load_coach(setting, summary)
            if coach_work is None:
                continue
            coach, config, clients = coach_work

            for client in clients:
                await semaphore.acquire()
                if self._should_stop(summary, deadline):
                    semaphore.release()
                    return
                task = asyncio.create_task(
                    self._evaluate_client_guarded(coach, config, client, summary)
                )
                task.add_done_callback(lambda _t: semaphore.release())
                tasks.append(task)

    def _should_stop(self, summary: DropoffRunSummary, deadline: float) -> bool:
        if self.stop_event.is_set():
            if not summary.cancelled:
                logger.warning("Drop-off run %s cancelled; not starting new clients", summary.run_id)
            summary.cancelled = True
            return True
        if time.monotonic() >= deadline:
            if not summary.timed_out:
                logger.warning("Drop-off run %s exceeded its time budget", summary.run_id)
            summary.timed_out = True
            return True
        return False

    async def _load_coach(
        self, setting: CoachAutomationSetting, summary: DropoffRunSummary
    ) -> Optional[tuple[dict, DropoffRescueConfig, list[dict]]]:
        coach_id = str(setting.coach_id)
        try:
            config = load_stored_config(DROPOFF, setting.config)
            coach = await service_client.get_coach_profile(
                coach_id, calling_service=CALLING_SERVICE, timeout=self.call_timeout
            )
            if coach is None:
                logger.warning("Coach %s not found; skipping drop-off checks", coach_id)
                return None
            clients = await service_client.get_active_clients(
                coach_id, calling_service=CALLING_SERVICE, timeout=self.call_timeout
            )
            if not isinstance(clients, list):
                raise TypeError(f"expected a list of clients, got {type(clients).__name__}")
            coach = {**coach, "id": coach_id}
        except AutomationError as e:
            logger.warning("Skipping coach %s: %s (%s)", coach_id, e, e.kind)
            summary.errors[e.kind] += 1
            return None
        except (httpx.HTTPError, ValueError, TypeError) as e:
            # ValueError covers undecodable JSON bodies
            error = ExternalServiceError(f"Roster lookup failed: {e}")
            logger.warning("Skipping coach %s: %s (%s)", coach_id, error, error.kind)
            summary.errors[error.kind] += 1
            return None

        return coach, config, clients

    # ------------------------------------------------------------------
    # Per client
    # ------------------------------------------------------------------

    async def _evaluate_client_guarded(
        self,
        coach: dict,
        config: DropoffRescueConfig,
        client: dict,
        summary: DropoffRunSummary,
    ) -> None:
        client_id = client.get("client_id")
        try:
            outcome = await asyncio.wait_for(
                self.evaluate_client(coach, config, client), timeout=self.client_timeout
            )
        except AutomationError as e:
            kind = e.kind
        except asyncio.TimeoutError:
            kind = "timeout"
        except SQLAlchemyError as e:
            logger.error("Database error evaluating client %s: %s", client_id, e)
            kind = "persistence_error"
        except Exception:
            logger.exception("Unexpected error evaluating client %s", client_id)
            kind = "unexpected_error"
        else:
            summary.evaluated += 1
            if outcome is not None:
                summary.processed += 1
                summary.alerts += outcome.alerts
                summary.messages += outcome.messages
            return

        summary.record_error(kind)
        logger.warning(
            "Skipped client %s for coach %s (%s); will retry next cycle",
            client_id,
            coach["id"],
            kind,
            extra={"extra_fields": {"error_kind": kind}},
        )

    async def evaluate_client(
        self, coach: dict, config: DropoffRescueConfig, client: dict
    ) -> Optional[DispatchOutcome]:
        """Evaluate one client; returns the dispatch outcome on stage entry."""
        coach_id = uuid.UUID(str(coach["id"]))
        client_id = uuid.UUID(str(client["client_id"]))

        async with self.session_factory() as db:
            cursor = await self._load_cursor(db, coach_id, client_id)
            now = self.now()

            if cursor is not None and cursor.muted_until is not None:
                if ensure_utc(cursor.muted_until) > now:
                    logger.debug("Client %s muted until %s", client_id, cursor.muted_until)
                    return None

            snapshot = await collect_client_signals(
                client, config.signals, timeout=self.call_timeout
            )
            days = whole_days_between(snapshot.last_signal_at, now)
            stage = resolve_stage(days, config)

            previous = cursor.last_stage_triggered if cursor is not None else None
            if previous is not None and self._re_engaged(cursor, snapshot, stage):
                await self._clear_cursor(db, coach_id, client_id)
                await db.commit()
                logger.info("Client %s is no longer at risk (was stage %s)", client_id, previous)
                previous = None

            if stage is None or (previous is not None and stage <= previous):
                return None

            if not await self._claim(db, coach_id, client_id, stage, now):
                logger.info(
                    "Stage %d for client %s already claimed by another run", stage, client_id
                )
                return None

            logger.info(
                "Client %s moved from stage %s to %d (%d days inactive)",
                client_id,
                previous or 0,
                stage,
                days,
            )
            request = DispatchRequest(
                coach=coach,
                client=client,
                stage=stage,
                action=config.stage_action(stage),
                tone=config.stage1_tone,
                template=config.stage1_template if stage == 1 else None,
                days_inactive=days,
                last_signal_at=snapshot.last_signal_at,
            )
            try:
                outcome = await self.dispatcher.dispatch(db, request)
            except AutomationError:
                await self._release(db, coach_id, client_id, stage)
                await db.commit()
                raise

            await self._record(db, coach_id, client_id, outcome, snapshot, now)
            await db.commit()
            return outcome

    @staticmethod
    def _re_engaged(
        cursor: ClientAutomationStatus,
        snapshot: ClientSignalSnapshot,
        stage: Optional[int],
    ) -> bool:
        if stage is None:
            return True
        seen = ensure_utc(cursor.last_signal_at)
        return seen is not None and snapshot.last_signal_at > seen

    # ------------------------------------------------------------------
    # Cursor persistence
    # ------------------------------------------------------------------

    @staticmethod
    def _cursor_filter(coach_id: uuid.UUID, client_id: uuid.UUID):
        return (
            ClientAutomationStatus.coach_id == coach_id,
            ClientAutomationStatus.client_id == client_id,
            ClientAutomationStatus.automation_type == DROPOFF,
        )

    async def _load_cursor(
        self, db: AsyncSession, coach_id: uuid.UUID, client_id: uuid.UUID
    ) -> Optional[ClientAutomationStatus]:
        result = await db.execute(
            select(ClientAutomationStatus).where(*self._cursor_filter(coach_id, client_id))
        )
        return result.scalar_one_or_none()

    async def _clear_cursor(
        self, db: AsyncSession, coach_id: uuid.UUID, client_id: uuid.UUID
    ) -> None:
        await db.execute(
            update(ClientAutomationStatus)
            .where(*self._cursor_filter(coach_id, client_id))
            .values(
                last_stage_triggered=None,
                last_triggered_at=None,
                last_signal_at=None,
                is_at_risk=False,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )

    async def _claim(
        self,
        db: AsyncSession,
        coach_id: uuid.UUID,
        client_id: uuid.UUID,
        stage: int,
        now: datetime,
    ) -> bool:
        """Compare-and-set: take the lease for ``stage`` unless a run already
        recorded it, or holds an unexpired claim."""
        ensure_row = (
            dialect_insert(db, ClientAutomationStatus)
            .values(
                id=uuid.uuid4(),
                coach_id=coach_id,
                client_id=client_id,
                automation_type=DROPOFF,
                is_at_risk=False,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=["coach_id", "client_id", "automation_type"]
            )
        )
        await db.execute(ensure_row)

        lease_cutoff = now - timedelta(seconds=self.settings.DROPOFF_CLAIM_TTL_SECONDS)
        result = await db.execute(
            update(ClientAutomationStatus)
            .where(
                *self._cursor_filter(coach_id, client_id),
                or_(
                    ClientAutomationStatus.last_stage_triggered.is_(None),
                    ClientAutomationStatus.last_stage_triggered < stage,
                ),
                or_(
                    ClientAutomationStatus.claimed_stage.is_(None),
                    ClientAutomationStatus.claimed_at < lease_cutoff,
                ),
            )
            .values(claimed_stage=stage, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    async def _release(
        self, db: AsyncSession, coach_id: uuid.UUID, client_id: uuid.UUID, stage: int
    ) -> None:
        await db.execute(
            update(ClientAutomationStatus)
            .where(
                *self._cursor_filter(coach_id, client_id),
                ClientAutomationStatus.claimed_stage == stage,
            )
            .values(claimed_stage=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )

    async def _record(
        self,
        db: AsyncSession,
        coach_id: uuid.UUID,
        client_id: uuid.UUID,
        outcome: DispatchOutcome,
        snapshot: ClientSignalSnapshot,
        now: datetime,
    ) -> None:
        values = {
            "last_stage_triggered": outcome.stage,
            "last_triggered_at": now,
            "last_signal_at": snapshot.last_signal_at,
            "is_at_risk": True,
            "claimed_stage": None,
            "claimed_at": None,
            "updated_at": now,
        }
        if outcome.performed_action == StageAction.ALERT_ONLY:
            values["last_coach_alert_at"] = now
        else:
            values["last_soft_checkin_at"] = now
        if outcome.stage == 3:
            values["last_recovery_attempt_at"] = now

        await db.execute(
            update(ClientAutomationStatus)
            .where(*self._cursor_filter(coach_id, client_id))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
