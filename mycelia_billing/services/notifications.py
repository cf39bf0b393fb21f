"""
Plan Upgrade Notifications - Fire-and-forget hook for plan upgrades.

The email/notification service lives elsewhere; this module only posts
the event to it. Callers treat every failure as non-fatal.
"""

from typing import Protocol

import httpx
from structlog import get_logger

from mycelia_billing.models.api import PlanTier

logger = get_logger(__name__)


class PlanUpgradeNotifier(Protocol):
    """Sink for plan upgrade events."""

    async def notify_plan_upgrade(self, user_id: str, plan: PlanTier) -> None:
        """
        Announce that a user moved to a higher plan.

        Raises:
            Exception: any delivery failure (callers swallow it)
        """
        ...


class WebhookPlanUpgradeNotifier:
    """Posts plan upgrades as JSON to a configured URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._http_client = http_client

    async def notify_plan_upgrade(self, user_id: str, plan: PlanTier) -> None:
        payload = {"event": "plan_upgraded", "user_id": user_id, "plan": plan.value}
        if self._http_client is not None:
            response = await self._http_client.post(self.url, json=payload, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)
        response.raise_for_status()
        logger.info("plan_upgrade_notified", user_id=user_id, plan=plan.value)


class LoggingPlanUpgradeNotifier:
    """Used when no notification URL is configured."""

    async def notify_plan_upgrade(self, user_id: str, plan: PlanTier) -> None:
        logger.info("plan_upgrade_notification_skipped", user_id=user_id, plan=plan.value)


def build_notifier(url: str, timeout: float) -> PlanUpgradeNotifier:
    if url:
        return WebhookPlanUpgradeNotifier(url, timeout)
    return LoggingPlanUpgradeNotifier()
