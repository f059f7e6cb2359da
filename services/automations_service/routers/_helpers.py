"""Shared helper functions for automations service routers."""

import uuid

import httpx
from fastapi import Depends
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.common import service_client
from libs.common.logging import get_logger
from services.automations_service.errors import ExternalServiceError, NotAuthenticated

logger = get_logger(__name__)


async def get_current_coach_id(
    current_user: AuthUser = Depends(get_current_user),
) -> uuid.UUID:
    """
    Resolve the coach profile of the authenticated user via the members service.
    Raises NotAuthenticated when the caller has no coach profile.
    """
    try:
        coach = await service_client.get_coach_by_auth_id(
            current_user.user_id, calling_service="automations"
        )
    except httpx.HTTPError as e:
        raise ExternalServiceError(f"Coach lookup failed: {e}")
    if not coach or not coach.get("id"):
        logger.info("User %s has no coach profile", current_user.user_id)
        raise NotAuthenticated("Coach profile not found for this user")
    return uuid.UUID(str(coach["id"]))
