"""
Coach-facing automation settings router.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from libs.db.session import get_async_db
from services.automations_service.models import AutomationType
from services.automations_service.routers._helpers import get_current_coach_id
from services.automations_service.schemas import (
    AutomationConfigUpdate,
    AutomationLogResponse,
    AutomationSettingResponse,
    AutomationSettingUpsert,
    AutomationToggle,
    ClientMuteResponse,
    DefaultConfigResponse,
    MuteClientRequest,
)
from services.automations_service.services import settings_store
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/automations", tags=["automations"])


@router.get("/settings", response_model=List[AutomationSettingResponse])
async def list_my_settings(
    coach_id: uuid.UUID = Depends(get_current_coach_id),
    db: AsyncSession = Depends(get_async_db),
):
    """
    List the coach's stored automation settings.
    Types the coach never configured are absent; use the defaults endpoint.
    """
    return await settings_store.get_settings_for_coach(db, coach_id)


@router.get(
    "/settings/defaults/{automation_type}", response_model=DefaultConfigResponse
)
async def get_default_config(automation_type: AutomationType):
    return DefaultConfigResponse(
        automation_type=automation_type,
        config=settings_store.get_default_config(automation_type),
    )


@router.put("/settings/{automation_type}", response_model=AutomationSettingResponse)
async def upsert_my_setting(
    automation_type: AutomationType,
    payload: AutomationSettingUpsert,
    coach_id: uuid.UUID = Depends(get_current_coach_id),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Create or update a setting. Omitting ``config`` keeps the stored one.
    """
    return await settings_store.upsert_setting(
        db,
        coach_id=coach_id,
        automation_type=automation_type,
        is_enabled=payload.is_enabled,
        config=payload.config,
    )


@router.post(
    "/settings/{automation_type}/toggle", response_model=AutomationSettingResponse
)
async def toggle_my_setting(
    automation_type: AutomationType,
    payload: AutomationToggle,
    coach_id: uuid.UUID = Depends(get_current_coach_id),
    db: AsyncSession = Depends(get_async_db),
):
    return await settings_store.toggle_automation(
        db,
        coach_id=coach_id,
        automation_type=automation_type,
        enabled=payload.enabled,
    )


@router.put(
    "/settings/{automation_type}/config", response_model=AutomationSettingResponse
)
async def update_my_config(
    automation_type: AutomationType,
    payload: AutomationConfigUpdate,
    coach_id: uuid.UUID = Depends(get_current_coach_id),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Replace the config without changing the enabled flag.
    """
    return await settings_store.update_config(
        db,
        coach_id=coach_id,
        automation_type=automation_type,
        config=payload.config,
    )


@router.post("/clients/{client_id}/mute", response_model=ClientMuteResponse)
async def mute_client(
    client_id: uuid.UUID,
    payload: MuteClientRequest,
    coach_id: uuid.UUID = Depends(get_current_coach_id),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Pause drop-off rescue for a client for ``days`` days.
    """
    status_row = await settings_store.mute_client(
        db, coach_id=coach_id, client_id=client_id, days=payload.days
    )
    return ClientMuteResponse(client_id=status_row.client_id, muted_until=status_row.muted_until)


@router.get("/logs", response_model=List[AutomationLogResponse])
async def list_my_logs(
    limit: int = Query(50, ge=1, le=200),
    client_id: Optional[uuid.UUID] = Query(None),
    coach_id: uuid.UUID = Depends(get_current_coach_id),
    db: AsyncSession = Depends(get_async_db),
):
    """
    Recent automation actions, newest first.
    """
    return await settings_store.list_automation_logs(
        db, coach_id=coach_id, limit=limit, client_id=client_id
    )
