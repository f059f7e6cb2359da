"""Unit tests for the drop-off evaluation run.

Members, activity and communications services are patched at the service
client; cursor and audit rows are checked in the database.
"""

import asyncio
import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from libs.common.datetime_utils import ensure_utc
from services.automations_service import worker
from services.automations_service.errors import PersistenceError
from services.automations_service.models import (
    AutomationLog,
    AutomationLogStatus,
    ClientAutomationStatus,
)
from services.automations_service.services.evaluator import DropoffEvaluator
from sqlalchemy import select
from tests.factories import (
    ActiveClientFactory,
    ClientAutomationStatusFactory,
    CoachAutomationSettingFactory,
    CoachProfileFactory,
)

SERVICE_CLIENT = "libs.common.service_client"
NOW = datetime(2026, 5, 20, 7, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _enable_coach(db, **config_overrides):
    setting = CoachAutomationSettingFactory.create()
    if config_overrides:
        setting.config = {**setting.config, **config_overrides}
    db.add(setting)
    await db.commit()
    return CoachProfileFactory.create(coach_id=setting.coach_id)


def _activity(last_active: dict):
    """Latest-activity stub: training logs only, per client id."""

    async def latest(client_id, channel, **kwargs):
        if channel != "training_logs":
            return None
        return last_active.get(client_id)

    return latest


@contextmanager
def _services(coach, clients, last_active, notify=None, message=None):
    with patch(
        f"{SERVICE_CLIENT}.get_coach_profile", new_callable=AsyncMock, return_value=coach
    ), patch(
        f"{SERVICE_CLIENT}.get_active_clients", new_callable=AsyncMock, return_value=clients
    ), patch(
        f"{SERVICE_CLIENT}.get_latest_activity",
        new_callable=AsyncMock,
        side_effect=_activity(last_active),
    ) as mock_activity, patch(
        f"{SERVICE_CLIENT}.send_notification", new=notify or AsyncMock()
    ) as mock_notify, patch(
        f"{SERVICE_CLIENT}.send_direct_message", new=message or AsyncMock()
    ) as mock_message:
        yield mock_activity, mock_notify, mock_message


def _evaluator(session_factory, test_settings, **kwargs) -> DropoffEvaluator:
    return DropoffEvaluator(
        session_factory, settings=test_settings, now=lambda: NOW, **kwargs
    )


async def _cursor(session_factory, client_id) -> ClientAutomationStatus:
    async with session_factory() as db:
        result = await db.execute(
            select(ClientAutomationStatus).where(
                ClientAutomationStatus.client_id == uuid.UUID(client_id)
            )
        )
        return result.scalar_one_or_none()


async def _logs(session_factory) -> list[AutomationLog]:
    async with session_factory() as db:
        result = await db.execute(select(AutomationLog))
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Stage entry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stage_two_sends_one_alert_and_no_message(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session)
    client = ActiveClientFactory.create()
    last_active = {client["client_id"]: NOW - timedelta(days=8)}

    with _services(coach, [client], last_active) as (_, mock_notify, mock_message):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.evaluated == 1
    assert summary.processed == 1
    assert (summary.alerts, summary.messages) == (1, 0)
    mock_notify.assert_awaited_once()
    mock_message.assert_not_awaited()

    cursor = await _cursor(session_factory, client["client_id"])
    assert cursor.last_stage_triggered == 2
    assert cursor.is_at_risk is True
    assert cursor.claimed_stage is None
    assert ensure_utc(cursor.last_signal_at) == NOW - timedelta(days=8)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_second_run_with_same_inactivity_does_nothing(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session)
    client = ActiveClientFactory.create()
    last_active = {client["client_id"]: NOW - timedelta(days=8)}

    with _services(coach, [client], last_active) as (_, mock_notify, _message):
        await _evaluator(session_factory, test_settings).run()
        second = await _evaluator(session_factory, test_settings).run()

    assert mock_notify.await_count == 1
    assert second.processed == 0
    assert second.evaluated == 1
    assert len(await _logs(session_factory)) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_escalates_to_higher_stage_only_once(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session, stage3_action="alert_only")
    client = ActiveClientFactory.create()
    seen = NOW - timedelta(days=15)
    db_session.add(
        ClientAutomationStatusFactory.create(
            coach_id=uuid.UUID(coach["id"]),
            client_id=uuid.UUID(client["client_id"]),
            last_stage_triggered=2,
            last_signal_at=seen,
            is_at_risk=True,
        )
    )
    await db_session.commit()

    with _services(coach, [client], {client["client_id"]: seen}) as (_, mock_notify, _message):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.alerts == 1
    assert mock_notify.await_args.kwargs["notification_type"] == "client_critical"
    cursor = await _cursor(session_factory, client["client_id"])
    assert cursor.last_stage_triggered == 3
    assert cursor.last_recovery_attempt_at is not None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stage_one_auto_message_uses_coach_template(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session, stage1_template="Hey {client_first_name}!")
    client = ActiveClientFactory.create()
    last_active = {client["client_id"]: NOW - timedelta(days=4)}

    with _services(coach, [client], last_active) as (_, mock_notify, mock_message):
        summary = await _evaluator(session_factory, test_settings).run()

    assert (summary.alerts, summary.messages) == (0, 1)
    mock_notify.assert_not_awaited()
    assert mock_message.await_args.kwargs["content"] == "Hey Alex!"
    cursor = await _cursor(session_factory, client["client_id"])
    assert cursor.last_soft_checkin_at is not None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_later_stage_auto_message_ignores_stage_one_template(
    db_session, session_factory, test_settings
):
    coach = await _enable_coach(
        db_session, stage2_action="auto_message", stage1_template="Hey {client_first_name}!"
    )
    client = ActiveClientFactory.create()
    last_active = {client["client_id"]: NOW - timedelta(days=8)}

    with _services(coach, [client], last_active) as (_, _notify, mock_message):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.messages == 1
    content = mock_message.await_args.kwargs["content"]
    assert content.startswith("Hi Alex, just checking in.")
    assert "Hey Alex!" not in content


@pytest.mark.asyncio
@pytest.mark.unit
async def test_client_without_activity_counts_from_enrollment(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session)
    client = ActiveClientFactory.create(enrolled_at=(NOW - timedelta(days=2)).isoformat())

    with _services(coach, [client], {}) as (_, mock_notify, mock_message):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.processed == 0
    mock_notify.assert_not_awaited()
    mock_message.assert_not_awaited()


# ---------------------------------------------------------------------------
# Re-engagement and mute
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_re_engaged_client_cursor_is_cleared(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session)
    client = ActiveClientFactory.create()
    last_active = {client["client_id"]: NOW - timedelta(days=8)}

    with _services(coach, [client], last_active):
        await _evaluator(session_factory, test_settings).run()

    last_active[client["client_id"]] = NOW - timedelta(hours=6)
    with _services(coach, [client], last_active) as (_, mock_notify, _message):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.processed == 0
    mock_notify.assert_not_awaited()
    cursor = await _cursor(session_factory, client["client_id"])
    assert cursor.last_stage_triggered is None
    assert cursor.is_at_risk is False


@pytest.mark.asyncio
@pytest.mark.unit
async def test_newer_signal_restarts_escalation(db_session, session_factory, test_settings):
    """A client who came back and went quiet again starts over at stage 1."""
    coach = await _enable_coach(db_session)
    client = ActiveClientFactory.create()
    db_session.add(
        ClientAutomationStatusFactory.create(
            coach_id=uuid.UUID(coach["id"]),
            client_id=uuid.UUID(client["client_id"]),
            last_stage_triggered=2,
            last_signal_at=NOW - timedelta(days=20),
            is_at_risk=True,
        )
    )
    await db_session.commit()
    last_active = {client["client_id"]: NOW - timedelta(days=4)}

    with _services(coach, [client], last_active) as (_, _notify, mock_message):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.messages == 1
    mock_message.assert_awaited_once()
    cursor = await _cursor(session_factory, client["client_id"])
    assert cursor.last_stage_triggered == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_muted_client_is_skipped(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session)
    client = ActiveClientFactory.create()
    db_session.add(
        ClientAutomationStatusFactory.create(
            coach_id=uuid.UUID(coach["id"]),
            client_id=uuid.UUID(client["client_id"]),
            muted_until=NOW + timedelta(days=3),
        )
    )
    await db_session.commit()
    last_active = {client["client_id"]: NOW - timedelta(days=30)}

    with _services(coach, [client], last_active) as (mock_activity, mock_notify, _message):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.processed == 0
    mock_activity.assert_not_awaited()
    mock_notify.assert_not_awaited()


# ---------------------------------------------------------------------------
# Lease
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_fresh_claim_by_another_run_blocks_dispatch(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session)
    client = ActiveClientFactory.create()
    db_session.add(
        ClientAutomationStatusFactory.create(
            coach_id=uuid.UUID(coach["id"]),
            client_id=uuid.UUID(client["client_id"]),
            claimed_stage=2,
            claimed_at=NOW - timedelta(minutes=1),
        )
    )
    await db_session.commit()
    last_active = {client["client_id"]: NOW - timedelta(days=8)}

    with _services(coach, [client], last_active) as (_, mock_notify, _message):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.processed == 0
    mock_notify.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_expired_claim_is_taken_over(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session)
    client = ActiveClientFactory.create()
    db_session.add(
        ClientAutomationStatusFactory.create(
            coach_id=uuid.UUID(coach["id"]),
            client_id=uuid.UUID(client["client_id"]),
            claimed_stage=2,
            claimed_at=NOW - timedelta(hours=1),
        )
    )
    await db_session.commit()
    last_active = {client["client_id"]: NOW - timedelta(days=8)}

    with _services(coach, [client], last_active) as (_, mock_notify, _message):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.processed == 1
    mock_notify.assert_awaited_once()
    cursor = await _cursor(session_factory, client["client_id"])
    assert cursor.last_stage_triggered == 2
    assert cursor.claimed_stage is None


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failed_delivery_skips_only_that_client(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session)
    failing = ActiveClientFactory.create(first_name="Failing")
    healthy = ActiveClientFactory.create(first_name="Healthy")
    last_active = {
        failing["client_id"]: NOW - timedelta(days=8),
        healthy["client_id"]: NOW - timedelta(days=8),
    }

    async def notify(**kwargs):
        if kwargs["data"]["client_id"] == failing["client_id"]:
            raise httpx.ConnectError("communications service down")
        return {"id": str(uuid.uuid4())}

    with _services(coach, [failing, healthy], last_active, notify=AsyncMock(side_effect=notify)):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.processed == 1
    assert summary.errors == {"notification_error": 1}

    failed_cursor = await _cursor(session_factory, failing["client_id"])
    assert failed_cursor.last_stage_triggered is None
    assert failed_cursor.claimed_stage is None
    healthy_cursor = await _cursor(session_factory, healthy["client_id"])
    assert healthy_cursor.last_stage_triggered == 2

    statuses = sorted(log.status.value for log in await _logs(session_factory))
    assert statuses == [AutomationLogStatus.FAILED.value, AutomationLogStatus.SENT.value]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failed_delivery_is_retried_next_run(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session)
    client = ActiveClientFactory.create()
    last_active = {client["client_id"]: NOW - timedelta(days=8)}

    down = AsyncMock(side_effect=httpx.ConnectError("down"))
    with _services(coach, [client], last_active, notify=down):
        await _evaluator(session_factory, test_settings).run()

    with _services(coach, [client], last_active) as (_, mock_notify, _message):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.processed == 1
    mock_notify.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_activity_lookup_failure_is_counted(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session)
    client = ActiveClientFactory.create()

    with _services(coach, [client], {}) as (mock_activity, mock_notify, _message):
        mock_activity.side_effect = httpx.ConnectError("activity service down")
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.errors == {"external_service_error": 1}
    assert summary.skipped == 1
    mock_notify.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_unknown_coach_is_skipped(db_session, session_factory, test_settings):
    await _enable_coach(db_session)

    with _services(None, [ActiveClientFactory.create()], {}) as (mock_activity, _notify, _message):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.evaluated == 0
    mock_activity.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_undecodable_roster_is_counted_not_raised(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session)

    with _services(coach, [], {}) as (mock_activity, _notify, _message), patch(
        f"{SERVICE_CLIENT}.get_active_clients",
        new_callable=AsyncMock,
        side_effect=json.JSONDecodeError("Expecting value", "", 0),
    ):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.errors == {"external_service_error": 1}
    assert summary.evaluated == 0
    mock_activity.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_malformed_coach_payload_is_counted_not_raised(db_session, session_factory, test_settings):
    await _enable_coach(db_session)

    with _services(["not", "a", "profile"], [ActiveClientFactory.create()], {}) as (
        mock_activity,
        _notify,
        _message,
    ):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.errors == {"external_service_error": 1}
    mock_activity.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_settings_failure_returns_error_summary(session_factory, test_settings):
    with patch(
        "services.automations_service.services.evaluator.list_enabled_settings",
        new_callable=AsyncMock,
        side_effect=PersistenceError("database unavailable"),
    ):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.errors == {"persistence_error": 1}
    assert summary.evaluated == 0


# ---------------------------------------------------------------------------
# Cancellation and budget
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stop_event_prevents_new_clients(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session)
    client = ActiveClientFactory.create()
    stop_event = asyncio.Event()
    stop_event.set()

    with _services(coach, [client], {}) as (mock_activity, _notify, _message):
        summary = await _evaluator(session_factory, test_settings, stop_event=stop_event).run()

    assert summary.cancelled is True
    assert summary.evaluated == 0
    mock_activity.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_exhausted_budget_stops_the_run(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session)
    test_settings.DROPOFF_RUN_BUDGET_SECONDS = 0

    with _services(coach, [ActiveClientFactory.create()], {}) as (mock_activity, _notify, _message):
        summary = await _evaluator(session_factory, test_settings).run()

    assert summary.timed_out is True
    mock_activity.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancelled_job_lets_in_flight_dispatch_finish(db_session, session_factory, test_settings):
    coach = await _enable_coach(db_session)
    client = ActiveClientFactory.create()
    last_active = {client["client_id"]: NOW - timedelta(days=8)}
    started = asyncio.Event()
    delivered = []

    async def slow_notification(*args, **kwargs):
        started.set()
        await asyncio.sleep(0.2)
        delivered.append(kwargs)

    ctx: dict = {}
    await worker.startup(ctx)

    with _services(coach, [client], last_active, notify=AsyncMock(side_effect=slow_notification)):
        job = asyncio.create_task(
            _evaluator(session_factory, test_settings, stop_event=ctx["stop_event"]).run()
        )
        await started.wait()

        # arq cancels running jobs first, then runs the shutdown hook
        job.cancel()
        await worker.shutdown(ctx)
        with pytest.raises(asyncio.CancelledError):
            await job

    assert len(delivered) == 1
    assert ctx["stop_event"].is_set()
    cursor = await _cursor(session_factory, client["client_id"])
    assert cursor.last_stage_triggered == 2
    assert cursor.claimed_stage is None
