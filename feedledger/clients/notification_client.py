"""
Push-notification dispatch used by `send-notification` jobs.

Delivery itself belongs to the notification gateway; this client only POSTs
the event to it. With no gateway configured the event is logged instead, so
local runs and tests need no extra service.
"""
import logging
from dataclasses import asdict
from typing import Optional, Protocol

import httpx

from feedledger.config import Settings
from feedledger.errors import TransientStoreError
from feedledger.jobs import NotificationPayload

logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def dispatch(self, notification: NotificationPayload) -> None: ...


class HttpNotificationDispatcher:
    def __init__(self, base_url: str, timeout: float = 2.0) -> None:
        self._base_url = base_url
        self._timeout = timeout
        self._http: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        self._http = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)

    async def stop(self) -> None:
        if self._http:
            await self._http.aclose()

    async def dispatch(self, notification: NotificationPayload) -> None:
        """
        POST /notifications with the event body.

        Network errors and 5xx responses are transient (the job is retried);
        4xx responses mean the gateway rejected the event and raise as-is.
        """
        if self._http is None:
            raise RuntimeError("Notification client not started")
        try:
            resp = await self._http.post("/notifications", json=asdict(notification))
        except httpx.TransportError as exc:
            raise TransientStoreError(f"notification gateway unreachable: {exc}") from exc
        if resp.status_code >= 500:
            raise TransientStoreError(f"notification gateway returned {resp.status_code}")
        resp.raise_for_status()


class LoggingNotificationDispatcher:
    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def dispatch(self, notification: NotificationPayload) -> None:
        logger.info(
            "Notification %s → user %s (actor=%s, post=%s)",
            notification.type,
            notification.user_id,
            notification.actor_id,
            notification.post_id,
        )


def create_notification_dispatcher(settings: Settings) -> NotificationDispatcher:
    if settings.notification_service_url:
        return HttpNotificationDispatcher(
            settings.notification_service_url, settings.notification_timeout_seconds
        )
    return LoggingNotificationDispatcher()
