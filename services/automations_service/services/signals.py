"""Aggregate a client's activity signals into a single last-active time."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import httpx
from libs.common import service_client
from libs.common.datetime_utils import ensure_utc
from services.automations_service.errors import ExternalServiceError
from services.automations_service.models import SignalChannel
from services.automations_service.schemas import DropoffSignals

CALLING_SERVICE = "automations"


@dataclass
class ClientSignalSnapshot:
    client_id: str
    last_signal_at: datetime
    channels: dict[SignalChannel, Optional[datetime]] = field(default_factory=dict)
    from_enrollment: bool = False


async def _latest_for_channel(
    client: dict, channel: SignalChannel, timeout: float
) -> Optional[datetime]:
    try:
        value = await service_client.get_latest_activity(
            str(client["client_id"]),
            channel.value,
            calling_service=CALLING_SERVICE,
            user_id=client.get("user_id"),
            timeout=timeout,
        )
    except httpx.HTTPStatusError as e:
        raise ExternalServiceError(
            f"Activity lookup for {channel.value} failed: {e.response.status_code}",
            status_code=e.response.status_code,
        )
    except httpx.RequestError as e:
        raise ExternalServiceError(f"Activity service unreachable ({channel.value}): {e}")
    return ensure_utc(value)


async def collect_client_signals(
    client: dict, signals: DropoffSignals, *, timeout: float
) -> ClientSignalSnapshot:
    """Latest timestamp across the enabled channels.

    A client with no data on any enabled channel starts the clock at
    enrollment rather than at the epoch.
    """
    channels = signals.enabled_channels()
    values = await asyncio.gather(
        *(_latest_for_channel(client, channel, timeout) for channel in channels)
    )
    by_channel = dict(zip(channels, values))
    seen = [value for value in values if value is not None]

    if seen:
        return ClientSignalSnapshot(
            client_id=str(client["client_id"]),
            last_signal_at=max(seen),
            channels=by_channel,
        )

    enrolled_at = client.get("enrolled_at")
    if isinstance(enrolled_at, str):
        enrolled_at = datetime.fromisoformat(enrolled_at)
    if enrolled_at is None:
        raise ExternalServiceError(
            f"Client {client['client_id']} has no activity and no enrollment date"
        )
    return ClientSignalSnapshot(
        client_id=str(client["client_id"]),
        last_signal_at=ensure_utc(enrolled_at),
        channels=by_channel,
        from_enrollment=True,
    )
