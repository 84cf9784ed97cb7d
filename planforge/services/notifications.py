from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal, Protocol

import httpx

from ..core.config import AutomationSettings, NotificationSettings
from ..core.logging import get_logger
from ..schemas.plans import NotifyTarget, utc_now

logger = get_logger(name=__name__)


class NotificationService(Protocol):
    async def deliver(self, target: NotifyTarget, text: str) -> None:
        ...


class LoggingNotificationService:
    """Writes notifications to the log instead of a messaging surface."""

    async def deliver(self, target: NotifyTarget, text: str) -> None:
        logger.info("plan_notification", channel=target.channel, to=target.to, text=text)


class WebhookNotificationService:
    def __init__(self, settings: NotificationSettings) -> None:
        self._settings = settings
        self._webhook_url = settings.webhook_url
        self._http_timeout = settings.timeout_seconds

    async def deliver(self, target: NotifyTarget, text: str) -> None:
        if not self._settings.enabled or not self._webhook_url:
            return
        payload = {
            "channel": target.channel,
            "to": target.to,
            "account_id": target.account_id,
            "text": text,
        }
        try:
            async with httpx.AsyncClient(timeout=self._http_timeout) as client:
                response = await client.post(
                    self._webhook_url,
                    content=json.dumps(payload),
                    headers={"Content-Type": "application/json"},
                )
                response.raise_for_status()
        except Exception as exc:  # pragma: no cover - webhook best effort
            logger.warning("plan_notification_failed", channel=target.channel, error=str(exc))


def build_notification_service(settings: NotificationSettings) -> NotificationService:
    if settings.enabled and settings.webhook_url:
        return WebhookNotificationService(settings)
    return LoggingNotificationService()


AutomationEventType = Literal["plan.started", "plan.completed", "plan.failed"]


@dataclass(slots=True)
class AutomationEvent:
    type: AutomationEventType
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=utc_now)

    def to_payload(self) -> dict[str, object]:
        return {
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
            "data": dict(self.data),
        }

    @classmethod
    def plan_started(cls, *, plan_id: str, goal: str, status: str) -> "AutomationEvent":
        return cls(type="plan.started", data={"plan_id": plan_id, "goal": goal, "status": status})

    @classmethod
    def plan_completed(
        cls,
        *,
        plan_id: str,
        goal: str,
        score: int | None,
        duration_ms: float | None,
    ) -> "AutomationEvent":
        return cls(
            type="plan.completed",
            data={"plan_id": plan_id, "goal": goal, "score": score, "duration_ms": duration_ms},
        )

    @classmethod
    def plan_failed(cls, *, plan_id: str, goal: str, error: str) -> "AutomationEvent":
        return cls(type="plan.failed", data={"plan_id": plan_id, "goal": goal, "error": error})


Subscriber = Callable[[AutomationEvent], Awaitable[None]]


class AutomationPublisher:
    """Fans plan lifecycle events out to in-process subscribers and webhooks."""

    def __init__(self, settings: AutomationSettings | None = None) -> None:
        self._settings = settings or AutomationSettings()
        self._subscribers: set[Subscriber] = set()
        self._webhook_urls = list(self._settings.webhook_urls)
        self._http_timeout = self._settings.timeout_seconds

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.add(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)

    async def publish(self, event: AutomationEvent) -> None:
        if not self._settings.enabled:
            return

        payload = event.to_payload()
        tasks: list[Awaitable[object]] = []
        for subscriber in list(self._subscribers):
            tasks.append(self._safe_invoke(subscriber, event))
        for url in self._webhook_urls:
            tasks.append(self._post_webhook(url, payload))

        if not tasks:
            logger.debug("automation_event_skipped", event=event.type)
            return

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("automation_event_error", event=event.type, error=str(result))

    async def _safe_invoke(self, subscriber: Subscriber, event: AutomationEvent) -> None:
        try:
            await subscriber(event)
        except Exception as exc:
            logger.warning(
                "automation_subscriber_failed",
                subscriber=getattr(subscriber, "__qualname__", repr(subscriber)),
                event=event.type,
                error=str(exc),
            )

    async def _post_webhook(self, url: str, payload: dict[str, object]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._http_timeout) as client:
                response = await client.post(
                    url,
                    content=json.dumps(payload),
                    headers={"Content-Type": "application/json"},
                )
                response.raise_for_status()
        except Exception as exc:  # pragma: no cover - webhook best effort
            logger.warning("automation_webhook_failed", url=url, error=str(exc))


async def log_automation_event(event: AutomationEvent) -> None:
    logger.info("automation_event", event=event.type, plan_id=event.data.get("plan_id"))


__all__ = [
    "log_automation_event",
    "NotificationService",
    "LoggingNotificationService",
    "WebhookNotificationService",
    "build_notification_service",
    "AutomationEvent",
    "AutomationPublisher",
]
