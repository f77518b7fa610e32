"""
SLA External Service Integrations
==================================

External services for SLA monitoring:
- Slack webhook escalation notices
- APScheduler for background evaluation
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional, Dict, Any, Sequence

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from src.shared.infrastructure.logging import get_logger
from src.config import settings
from src.core import DispatchError
from src.sla.application import INotificationPort
from src.sla.domain import EscalationTarget

logger = get_logger(__name__)


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        """Check if request should be allowed."""
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        """Record successful request."""
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        """Record failed request."""
        self._failure_count += 1

        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class SlackNotifier(INotificationPort):
    """
    Slack webhook notifier with circuit breaker and retry logic.

    Sends escalation and breach notices as Block Kit messages with:
    - Circuit breaker to prevent cascade failures
    - Exponential backoff retry
    - Timeout handling

    Without a webhook URL the notice is only logged.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        channel: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base: float = 1.0,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self._webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        self._channel = channel or settings.slack_channel
        self._timeout = timeout_seconds or settings.slack_timeout_seconds
        self._max_retries = max_retries or settings.slack_max_retries
        self._backoff_base = backoff_base
        self._http_client = http_client
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def _build_message(
        self,
        target: EscalationTarget,
        channels: Sequence[str],
        escalation_level: int,
        item_id: str
    ) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        fields = [
            {"type": "mrkdwn", "text": f"*Work Item:*\n{item_id}"},
            {"type": "mrkdwn", "text": f"*Escalation Level:*\n{escalation_level}"},
            {"type": "mrkdwn", "text": f"*Escalated To:*\n{target.recipient}"},
            {"type": "mrkdwn", "text": f"*Role:*\n{target.role}"},
        ]
        if target.team_id:
            fields.append({"type": "mrkdwn", "text": f"*Team:*\n{target.team_id}"})

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"SLA Escalation - Level {escalation_level}",
                    "emoji": True
                }
            },
            {
                "type": "section",
                "fields": fields
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": f"Channels: {', '.join(channels) or 'default'}"
                    }
                ]
            }
        ]

        return {
            "channel": self._channel,
            "text": f"Work item {item_id} escalated to {target.recipient} (level {escalation_level})",
            "blocks": blocks
        }

    def _build_breach_message(
        self,
        target: EscalationTarget,
        channels: Sequence[str],
        item_id: str
    ) -> Dict[str, Any]:
        """Build Slack Block Kit message for a breach notice."""
        return {
            "channel": self._channel,
            "text": f"Work item {item_id} breached its SLA (notify {target.recipient})",
            "blocks": [
                {
                    "type": "header",
                    "text": {"type": "plain_text", "text": "SLA Breached", "emoji": True}
                },
                {
                    "type": "section",
                    "fields": [
                        {"type": "mrkdwn", "text": f"*Work Item:*\n{item_id}"},
                        {"type": "mrkdwn", "text": f"*Notify:*\n{target.recipient}"},
                        {"type": "mrkdwn", "text": f"*Role:*\n{target.role}"},
                    ]
                },
                {
                    "type": "context",
                    "elements": [
                        {
                            "type": "mrkdwn",
                            "text": f"Channels: {', '.join(channels) or 'default'}"
                        }
                    ]
                }
            ]
        }

    async def notify(
        self,
        target: EscalationTarget,
        channels: Sequence[str],
        escalation_level: int,
        item_id: str
    ) -> None:
        """
        Post an escalation notice to the Slack webhook.

        Raises:
            DispatchError: Circuit open or every attempt failed
        """
        await self._post(
            self._build_message(target, channels, escalation_level, item_id),
            {
                "item_id": item_id,
                "escalation_level": escalation_level,
                "escalated_to": target.recipient
            }
        )

    async def notify_breach(
        self,
        target: EscalationTarget,
        channels: Sequence[str],
        item_id: str
    ) -> None:
        """
        Post an SLA breach notice to the Slack webhook.

        Raises:
            DispatchError: Circuit open or every attempt failed
        """
        await self._post(
            self._build_breach_message(target, channels, item_id),
            {"item_id": item_id, "notice_kind": "breach", "escalated_to": target.recipient}
        )

    async def _post(self, message: Dict[str, Any], context: Dict[str, Any]) -> None:
        """Send one message with retries behind the circuit breaker."""
        if not self._webhook_url:
            logger.info("Slack webhook URL not configured, notice logged only", extra=context)
            return

        if not self._circuit_breaker.allow_request():
            raise DispatchError("circuit breaker open", details=context)

        last_error = None

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=message)

                if response.status_code == 200:
                    self._circuit_breaker.record_success()
                    logger.info("Slack notification sent", extra=context)
                    return

                last_error = f"webhook returned {response.status_code}"
                logger.warning(
                    "Slack webhook returned non-200",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )

            except httpx.HTTPError as e:
                last_error = str(e)
                logger.error(
                    "Slack notification failed",
                    extra={"error": str(e), "attempt": attempt + 1, **context}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._backoff_base * 2 ** attempt)

        self._circuit_breaker.record_failure()
        raise DispatchError(
            f"gave up after {self._max_retries} attempts: {last_error}",
            details=context
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class SLAScheduler:
    """
    Wrapper for APScheduler for background SLA evaluation.

    Manages the lifecycle of the scheduler and jobs. ``cancel_event`` is
    set on stop so a pass in flight ends between work items.
    """

    def __init__(self, interval_seconds: int = 60):
        self.interval_seconds = interval_seconds
        self.cancel_event = asyncio.Event()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[asyncio.Event], Awaitable[Any]]) -> None:
        """Start the scheduler; the job receives ``cancel_event``."""
        if self._running:
            logger.warning("SLA scheduler already running")
            return

        self.cancel_event.clear()
        self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            job_func,
            "interval",
            args=[self.cancel_event],
            seconds=self.interval_seconds,
            id="sla_evaluation",
            name="SLA Evaluation Job",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        self._scheduler.start()
        self._running = True

        logger.info(
            "SLA scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        self.cancel_event.set()
        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("SLA scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
