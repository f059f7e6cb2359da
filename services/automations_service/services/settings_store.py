"""Per-coach automation settings: defaults, reads and ON CONFLICT upserts.

Every write is a single ``INSERT .. ON CONFLICT (coach_id, automation_type)
DO UPDATE`` so concurrent writers are serialized by the unique key
(last writer wins) without a read-modify-write window.
"""

import uuid
from datetime import timedelta
from typing import Any, Optional, Union

from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.common.settings_cache import (
    automation_settings_key,
    cache_version,
    get_cached_json,
    invalidate,
    set_cached_json,
)
from libs.db.upsert import dialect_insert
from services.automations_service.errors import (
    ConfigValidationError,
    NotAuthenticated,
    PersistenceError,
)
from services.automations_service.models import (
    AutomationLog,
    AutomationType,
    ClientAutomationStatus,
    CoachAutomationSetting,
)
from services.automations_service.schemas import (
    CONFIG_MODELS,
    AutomationConfig,
    AutomationSettingResponse,
    DropoffRescueConfig,
    load_stored_config,
    parse_config,
)
from services.automations_service.services.stages import validate_dropoff_config
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

CoachId = Union[uuid.UUID, str]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_coach(coach_id: Optional[CoachId]) -> uuid.UUID:
    if not coach_id:
        raise NotAuthenticated("No coach context for this request")
    if isinstance(coach_id, uuid.UUID):
        return coach_id
    try:
        return uuid.UUID(str(coach_id))
    except ValueError:
        raise NotAuthenticated(f"Invalid coach id {coach_id!r}")


def _coerce_type(automation_type: Union[AutomationType, str]) -> AutomationType:
    try:
        return AutomationType(automation_type)
    except ValueError:
        raise ConfigValidationError(
            f"Unknown automation type {automation_type!r}", field="automation_type"
        )


def _to_view(row: CoachAutomationSetting) -> AutomationSettingResponse:
    return AutomationSettingResponse(
        id=row.id,
        coach_id=row.coach_id,
        automation_type=row.automation_type,
        is_enabled=row.is_enabled,
        config=load_stored_config(row.automation_type, row.config),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _from_cache(entry: dict) -> AutomationSettingResponse:
    automation_type = AutomationType(entry["automation_type"])
    return AutomationSettingResponse(
        **{**entry, "config": load_stored_config(automation_type, entry["config"])}
    )


def validate_config_for_write(
    automation_type: AutomationType, config: Any
) -> AutomationConfig:
    """Shape check plus the write-only rules (threshold order, stage actions)."""
    parsed = parse_config(automation_type, config)
    if isinstance(parsed, DropoffRescueConfig):
        validate_dropoff_config(parsed, get_settings().DROPOFF_AI_ASSISTED_STAGES)
    return parsed


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_default_config(automation_type: Union[AutomationType, str]) -> AutomationConfig:
    """Baked-in default config for an automation type."""
    return CONFIG_MODELS[_coerce_type(automation_type)]()


async def get_settings_for_coach(
    db: AsyncSession, coach_id: Optional[CoachId]
) -> list[AutomationSettingResponse]:
    """All stored settings for a coach; empty if the coach configured nothing.

    Callers apply defaults for missing automation types themselves.
    """
    coach_uuid = _require_coach(coach_id)
    cache_key = automation_settings_key(coach_uuid)

    cached = await get_cached_json(cache_key)
    if cached is not None:
        return [_from_cache(entry) for entry in cached]

    # Read before the query so a write landing mid-load retires this snapshot.
    version = await cache_version(cache_key)
    try:
        result = await db.execute(
            select(CoachAutomationSetting)
            .where(CoachAutomationSetting.coach_id == coach_uuid)
            .order_by(CoachAutomationSetting.automation_type)
        )
        rows = result.scalars().all()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to load settings for coach {coach_uuid}: {e}")

    views = [_to_view(row) for row in rows]
    await set_cached_json(
        cache_key, [view.model_dump(mode="json") for view in views], version=version
    )
    return views


async def list_enabled_settings(
    db: AsyncSession, automation_type: AutomationType
) -> list[CoachAutomationSetting]:
    """Every coach row with ``automation_type`` switched on."""
    try:
        result = await db.execute(
            select(CoachAutomationSetting).where(
                CoachAutomationSetting.automation_type == automation_type,
                CoachAutomationSetting.is_enabled.is_(True),
            )
        )
        return list(result.scalars().all())
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to list enabled {automation_type.value} settings: {e}")


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


async def _upsert(
    db: AsyncSession,
    *,
    coach_id: Optional[CoachId],
    automation_type: Union[AutomationType, str],
    is_enabled: Optional[bool],
    config: Any,
) -> AutomationSettingResponse:
    """Insert-or-update one setting row.

    ``is_enabled=None`` keeps the stored flag (inserting disabled);
    ``config=None`` keeps the stored config (inserting the default).
    """
    coach_uuid = _require_coach(coach_id)
    automation_type = _coerce_type(automation_type)
    validated = (
        validate_config_for_write(automation_type, config) if config is not None else None
    )
    insert_config = validated or get_default_config(automation_type)

    now = utc_now()
    stmt = dialect_insert(db, CoachAutomationSetting).values(
        id=uuid.uuid4(),
        coach_id=coach_uuid,
        automation_type=automation_type,
        is_enabled=bool(is_enabled),
        config=insert_config.model_dump(mode="json"),
        created_at=now,
        updated_at=now,
    )
    updates: dict[str, Any] = {"updated_at": now}
    if is_enabled is not None:
        updates["is_enabled"] = stmt.excluded.is_enabled
    if validated is not None:
        updates["config"] = stmt.excluded.config
    stmt = stmt.on_conflict_do_update(
        index_elements=["coach_id", "automation_type"], set_=updates
    ).returning(CoachAutomationSetting)

    try:
        result = await db.scalars(
            stmt, execution_options={"populate_existing": True}
        )
        row = result.one()
        view = _to_view(row)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(
            "Failed to upsert %s setting for coach %s: %s",
            automation_type.value,
            coach_uuid,
            e,
        )
        raise PersistenceError(f"Could not save {automation_type.value} settings")

    await invalidate(automation_settings_key(coach_uuid))
    logger.info(
        "Saved %s setting for coach %s (enabled=%s, config_replaced=%s)",
        automation_type.value,
        coach_uuid,
        view.is_enabled,
        validated is not None,
    )
    return view


async def upsert_setting(
    db: AsyncSession,
    *,
    coach_id: Optional[CoachId],
    automation_type: Union[AutomationType, str],
    is_enabled: bool,
    config: Any = None,
) -> AutomationSettingResponse:
    """Create or update a setting.

    The config is replaced only when one is supplied; enabling or disabling
    never resets a coach's customised config.
    """
    return await _upsert(
        db,
        coach_id=coach_id,
        automation_type=automation_type,
        is_enabled=is_enabled,
        config=config,
    )


async def toggle_automation(
    db: AsyncSession,
    *,
    coach_id: Optional[CoachId],
    automation_type: Union[AutomationType, str],
    enabled: bool,
) -> AutomationSettingResponse:
    return await upsert_setting(
        db, coach_id=coach_id, automation_type=automation_type, is_enabled=enabled
    )


async def update_config(
    db: AsyncSession,
    *,
    coach_id: Optional[CoachId],
    automation_type: Union[AutomationType, str],
    config: Any,
) -> AutomationSettingResponse:
    """Replace the config, keeping the enabled flag.

    A coach who never opted in gets a disabled row: configuring alone does
    not turn an automation on.
    """
    if config is None:
        raise ConfigValidationError("config is required", field="config")
    return await _upsert(
        db,
        coach_id=coach_id,
        automation_type=automation_type,
        is_enabled=None,
        config=config,
    )


# ---------------------------------------------------------------------------
# Client-level controls and audit
# ---------------------------------------------------------------------------


async def mute_client(
    db: AsyncSession,
    *,
    coach_id: Optional[CoachId],
    client_id: uuid.UUID,
    days: int,
    automation_type: AutomationType = AutomationType.DROPOFF_RESCUE,
) -> ClientAutomationStatus:
    """Pause automations for one client until ``now + days``."""
    coach_uuid = _require_coach(coach_id)
    now = utc_now()
    muted_until = now + timedelta(days=days)

    stmt = dialect_insert(db, ClientAutomationStatus).values(
        id=uuid.uuid4(),
        coach_id=coach_uuid,
        client_id=client_id,
        automation_type=automation_type,
        is_at_risk=False,
        muted_until=muted_until,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["coach_id", "client_id", "automation_type"],
        set_={"muted_until": muted_until, "updated_at": now},
    ).returning(ClientAutomationStatus)

    try:
        result = await db.scalars(stmt, execution_options={"populate_existing": True})
        status_row = result.one()
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise PersistenceError(f"Could not mute client {client_id}: {e}")

    logger.info("Muted client %s for coach %s until %s", client_id, coach_uuid, muted_until)
    return status_row


async def list_automation_logs(
    db: AsyncSession,
    *,
    coach_id: Optional[CoachId],
    limit: int = 50,
    client_id: Optional[uuid.UUID] = None,
) -> list[AutomationLog]:
    coach_uuid = _require_coach(coach_id)
    query = select(AutomationLog).where(AutomationLog.coach_id == coach_uuid)
    if client_id is not None:
        query = query.where(AutomationLog.client_id == client_id)
    query = query.order_by(AutomationLog.created_at.desc()).limit(limit)
    try:
        result = await db.execute(query)
        return list(result.scalars().all())
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to load automation logs: {e}")
