"""
Push notification transports.

Delivery is best-effort. Transports raise NotificationError on failure and
the alert dispatcher decides what to do with it.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Awaitable, Callable, Optional

import httpx

from ledgerwatch.config import NotificationSettings, settings
from ledgerwatch.exceptions import NotificationError

logger = logging.getLogger(__name__)

TokenLookup = Callable[[str], Awaitable[list[str]]]


class PushTransport(ABC):
    """Sends a notification to all devices of a user."""

    @abstractmethod
    async def send(
        self,
        user_id: str,
        title: str,
        body: str,
        data: Optional[dict[str, str]] = None,
    ) -> None:
        """
        Send a notification.

        Raises:
            NotificationError: If delivery failed
        """

    async def close(self) -> None:
        pass


class LoggingPushTransport(PushTransport):
    """Writes notifications to the log instead of delivering them."""

    def __init__(self, history_size: Optional[int] = None):
        if history_size is None:
            history_size = settings.notifications.log_history_size
        # Only the most recent notifications are kept
        self.sent: deque[dict[str, Any]] = deque(maxlen=history_size)

    async def send(
        self,
        user_id: str,
        title: str,
        body: str,
        data: Optional[dict[str, str]] = None,
    ) -> None:
        self.sent.append({"user_id": user_id, "title": title, "body": body, "data": data or {}})
        logger.info(f"Push to {user_id}: {title}")


class FCMPushTransport(PushTransport):
    """
    Firebase Cloud Messaging transport using the legacy HTTP endpoint.

    Device tokens are resolved per user through an injected lookup so the
    transport does not own any device registry. Without a server key the
    transport is disabled and every send is skipped with a warning.

    Example:
        async with FCMPushTransport(lookup_tokens) as push:
            await push.send(user_id, "Alert", "Something happened")
    """

    def __init__(
        self,
        token_lookup: TokenLookup,
        config: Optional[NotificationSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or settings.notifications
        self.token_lookup = token_lookup
        self._http = client
        self._owns_client = client is None

        if not self.config.fcm_server_key:
            logger.warning("FCM server key not configured, push notifications disabled")

    @property
    def enabled(self) -> bool:
        return bool(self.config.fcm_server_key)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._http

    async def send(
        self,
        user_id: str,
        title: str,
        body: str,
        data: Optional[dict[str, str]] = None,
    ) -> None:
        if not self.enabled:
            logger.warning(f"Skipping push to {user_id}: FCM disabled")
            return

        tokens = await self.token_lookup(user_id)
        if not tokens:
            logger.debug(f"No device tokens for user {user_id}")
            return

        payload = {
            "notification": {"title": title, "body": body},
            "data": data or {},
            "priority": "high",
            "time_to_live": self.config.time_to_live_seconds,
        }
        if len(tokens) == 1:
            payload["to"] = tokens[0]
        else:
            payload["registration_ids"] = tokens

        try:
            response = await self._client().post(
                self.config.fcm_url,
                json=payload,
                headers={"Authorization": f"key={self.config.fcm_server_key}"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NotificationError(
                f"FCM returned {e.response.status_code} for user {user_id}"
            ) from e
        except httpx.RequestError as e:
            raise NotificationError(f"FCM request failed for user {user_id}: {e}") from e

        result = response.json()
        logger.info(
            f"Push sent to {user_id}: {result.get('success', 0)} delivered, "
            f"{result.get('failure', 0)} failed"
        )

    async def close(self) -> None:
        if self._http is not None and self._owns_client:
            await self._http.aclose()
            self._http = None
