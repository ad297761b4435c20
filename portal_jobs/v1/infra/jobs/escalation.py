"""
Escalation channel for dead jobs and budget threshold alerts.
"""

from typing import Protocol

import httpx

from portal_jobs.config.logging import get_logger
from portal_jobs.config.settings import Settings
from portal_jobs.v1.infra.jobs.schemas import BudgetAlert, EscalationEvent

logger = get_logger(__name__)


class EscalationNotifier(Protocol):
    """External alerting channel."""

    async def notify_dead_job(self, event: EscalationEvent) -> None:
        ...

    async def notify_budget_alert(self, alert: BudgetAlert) -> None:
        ...


class LoggingEscalationNotifier:
    """Escalates by writing error-level structured log events."""

    async def notify_dead_job(self, event: EscalationEvent) -> None:
        logger.error("job.escalated", **event.model_dump(mode="json"))

    async def notify_budget_alert(self, alert: BudgetAlert) -> None:
        log = logger.error if alert.level == "EMERGENCY" else logger.warning
        log("budget.alert", **alert.model_dump(mode="json"))


class WebhookEscalationNotifier:
    """Posts escalation payloads as JSON to an alerting webhook."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def _post(self, kind: str, body: dict) -> None:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(self.url, json={"kind": kind, "event": body})
                response.raise_for_status()
        except httpx.HTTPError as e:
            # Delivery is attempted once per escalation; the log line is the fallback record
            logger.error(
                "Escalation delivery failed", kind=kind, url=self.url, error=str(e), event=body
            )
            return

        logger.info("Escalation delivered", kind=kind, url=self.url)

    async def notify_dead_job(self, event: EscalationEvent) -> None:
        await self._post("dead_job", event.model_dump(mode="json"))

    async def notify_budget_alert(self, alert: BudgetAlert) -> None:
        await self._post("budget_alert", alert.model_dump(mode="json"))


def build_notifier(settings: Settings) -> EscalationNotifier:
    """Pick the escalation channel from configuration."""
    if settings.escalation_webhook_url:
        return WebhookEscalationNotifier(
            settings.escalation_webhook_url, timeout=settings.escalation_timeout_s
        )
    return LoggingEscalationNotifier()
