"""Reusable async HTTP client for internal service-to-service communication.

All cross-service calls should go through this helper instead of importing
models or querying tables from other services directly.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import httpx
from libs.auth.dependencies import _service_role_jwt
from libs.common.config import get_settings
from libs.common.logging import get_logger, get_request_id

logger = get_logger(__name__)

# Default timeout for internal calls (seconds).
_DEFAULT_TIMEOUT = 10.0


async def internal_request(
    *,
    service_url: str,
    method: str,
    path: str,
    calling_service: str,
    json: Any = None,
    params: Optional[dict] = None,
    timeout: float = _DEFAULT_TIMEOUT,
) -> httpx.Response:
    """Make an authenticated internal service-to-service HTTP call.

    Args:
        service_url: Base URL of the target service (e.g. settings.MEMBERS_SERVICE_URL).
        method: HTTP method (GET, POST, ...).
        path: URL path on the target service.
        calling_service: Name of the calling service for the JWT "sub" claim.
        json: Optional JSON body.
        params: Optional query parameters.
        timeout: Request timeout in seconds.

    Raises:
        httpx.RequestError on connection failures and timeouts.
    """
    url = f"{service_url}{path}"
    headers = {"Authorization": f"Bearer {_service_role_jwt(calling_service)}"}
    request_id = get_request_id()
    if request_id:
        headers["X-Request-ID"] = request_id
    headers["X-Caller-Service"] = calling_service

    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.request(
            method,
            url,
            headers=headers,
            json=json,
            params=params,
        )
    return response


async def internal_get(
    *,
    service_url: str,
    path: str,
    calling_service: str,
    params: Optional[dict] = None,
    timeout: float = _DEFAULT_TIMEOUT,
) -> httpx.Response:
    """Convenience wrapper for GET requests."""
    return await internal_request(
        service_url=service_url,
        method="GET",
        path=path,
        calling_service=calling_service,
        params=params,
        timeout=timeout,
    )


async def internal_post(
    *,
    service_url: str,
    path: str,
    calling_service: str,
    json: Any = None,
    timeout: float = _DEFAULT_TIMEOUT,
) -> httpx.Response:
    """Convenience wrapper for POST requests."""
    return await internal_request(
        service_url=service_url,
        method="POST",
        path=path,
        calling_service=calling_service,
        json=json,
        timeout=timeout,
    )


# ---------------------------------------------------------------------------
# Members service: coaches and their rosters
# ---------------------------------------------------------------------------


async def get_coach_by_auth_id(
    auth_id: str, *, calling_service: str
) -> Optional[dict]:
    """Resolve the coach profile owned by a Supabase auth user.

    Returns dict with {id, user_id, display_name} or None if the user is not a coach.
    """
    settings = get_settings()
    resp = await internal_get(
        service_url=settings.MEMBERS_SERVICE_URL,
        path=f"/internal/coaches/by-auth/{auth_id}",
        calling_service=calling_service,
    )
    if resp.status_code == 404:
        return None
    resp.raise_for_status()
    return resp.json()


async def get_coach_profile(
    coach_id: str, *, calling_service: str, timeout: float = _DEFAULT_TIMEOUT
) -> Optional[dict]:
    """Look up a coach profile by id.

    Returns dict with {id, user_id, display_name} or None.
    """
    settings = get_settings()
    resp = await internal_get(
        service_url=settings.MEMBERS_SERVICE_URL,
        path=f"/internal/coaches/{coach_id}",
        calling_service=calling_service,
        timeout=timeout,
    )
    if resp.status_code == 404:
        return None
    resp.raise_for_status()
    return resp.json()


async def get_active_clients(
    coach_id: str, *, calling_service: str, timeout: float = _DEFAULT_TIMEOUT
) -> list[dict]:
    """List a coach's active clients.

    Returns list of {client_id, user_id, first_name, last_name, enrolled_at}.
    """
    settings = get_settings()
    resp = await internal_get(
        service_url=settings.MEMBERS_SERVICE_URL,
        path=f"/internal/coaches/{coach_id}/clients",
        calling_service=calling_service,
        params={"status": "active"},
        timeout=timeout,
    )
    resp.raise_for_status()
    return resp.json()


# ---------------------------------------------------------------------------
# Activity service: per-channel client signals
# ---------------------------------------------------------------------------


async def get_latest_activity(
    client_id: str,
    channel: str,
    *,
    calling_service: str,
    user_id: Optional[str] = None,
    timeout: float = _DEFAULT_TIMEOUT,
) -> Optional[datetime]:
    """Most recent activity timestamp for a client on one signal channel.

    Returns None when the client has never produced activity on that channel.
    """
    settings = get_settings()
    params = {"channel": channel}
    if user_id:
        params["user_id"] = user_id
    resp = await internal_get(
        service_url=settings.ACTIVITY_SERVICE_URL,
        path=f"/internal/clients/{client_id}/latest-activity",
        calling_service=calling_service,
        params=params,
        timeout=timeout,
    )
    if resp.status_code == 404:
        return None
    resp.raise_for_status()
    value = resp.json().get("last_activity_at")
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Communications service: notification fan-out and direct messages
# ---------------------------------------------------------------------------


async def send_notification(
    *,
    user_id: str,
    notification_type: str,
    title: str,
    message: str,
    data: Optional[dict] = None,
    calling_service: str,
    timeout: float = _DEFAULT_TIMEOUT,
) -> dict:
    """Create an in-app notification (and push fan-out) for a user."""
    settings = get_settings()
    resp = await internal_post(
        service_url=settings.COMMUNICATIONS_SERVICE_URL,
        path="/internal/notifications",
        calling_service=calling_service,
        json={
            "user_id": user_id,
            "type": notification_type,
            "title": title,
            "message": message,
            "data": data or {},
        },
        timeout=timeout,
    )
    resp.raise_for_status()
    return resp.json()


async def send_direct_message(
    *,
    sender_id: str,
    receiver_id: str,
    content: str,
    calling_service: str,
    timeout: float = _DEFAULT_TIMEOUT,
) -> dict:
    """Send a chat message on behalf of ``sender_id``."""
    settings = get_settings()
    resp = await internal_post(
        service_url=settings.COMMUNICATIONS_SERVICE_URL,
        path="/internal/messages",
        calling_service=calling_service,
        json={
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "content": content,
        },
        timeout=timeout,
    )
    resp.raise_for_status()
    return resp.json()
