"""
Lifecycle Event Delivery
========================

Event sinks that receive install-session lifecycle notifications:

- ``session_started``       -- queue frozen, worker pool launched
- ``progress``              -- periodic heartbeat snapshot for installing sessions
- ``unit_retrying``         -- a unit failed and will be retried
- ``unit_completed``        -- a unit passed its health check
- ``unit_failed``           -- a unit exhausted its retry budget
- ``session_paused``        -- dispatch halted by the caller
- ``session_resumed``       -- dispatch restarted from the queue cursor
- ``session_completed``     -- every unit terminal, zero failures
- ``session_failed``        -- every unit terminal, at least one failure
- ``remediation_attempted`` -- self-healing re-probed/repaired a unit

Delivery is at-least-once.  Every event carries a unique ``id`` so consumers
can de-duplicate.  A failing sink never breaks orchestration: use
``emit_safely`` from orchestration code.
"""

import asyncio
import logging
from typing import List, Optional, Protocol, Sequence, runtime_checkable

import httpx

from onboarding.services.models import LifecycleEvent

logger = logging.getLogger(__name__)


class EventType:
    """Event type names."""
    SESSION_STARTED = "session_started"
    PROGRESS = "progress"
    UNIT_RETRYING = "unit_retrying"
    UNIT_COMPLETED = "unit_completed"
    UNIT_FAILED = "unit_failed"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"
    REMEDIATION_ATTEMPTED = "remediation_attempted"


@runtime_checkable
class EventSink(Protocol):
    """Receives lifecycle events. Implementations must tolerate duplicates."""

    async def emit(self, event: LifecycleEvent) -> None:
        ...


async def emit_safely(sink: EventSink, event: LifecycleEvent) -> None:
    """Deliver an event, logging (never raising) on sink failure."""
    try:
        await sink.emit(event)
    except Exception as exc:
        logger.error(
            "Event sink failed for %s (session=%s): %s",
            event.type, event.session_id, exc, exc_info=True,
        )


# =============================================================================
# Sinks
# =============================================================================

class InMemoryEventSink:
    """Keeps every event in a list. Used for inspection and tests."""

    def __init__(self) -> None:
        self.events: List[LifecycleEvent] = []

    async def emit(self, event: LifecycleEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[LifecycleEvent]:
        return [e for e in self.events if e.type == event_type]

    def clear(self) -> None:
        self.events.clear()


class LoggingEventSink:
    """Writes each event to the module logger. The default sink."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    async def emit(self, event: LifecycleEvent) -> None:
        # Progress heartbeats are noisy; keep them at debug
        level = logging.DEBUG if event.type == EventType.PROGRESS else self.level
        logger.log(
            level,
            "event=%s session=%s owner=%s data=%s",
            event.type, event.session_id, event.owner, event.data,
        )


class WebhookEventSink:
    """
    POSTs each event as JSON to a webhook URL.

    Retries up to ``attempts`` times with a short fixed delay.  Raises the
    last error once attempts are exhausted; wrap with ``emit_safely``.
    """

    def __init__(
        self,
        url: str,
        attempts: int = 3,
        timeout_seconds: float = 5.0,
        retry_delay_seconds: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.attempts = max(1, attempts)
        self.timeout_seconds = timeout_seconds
        self.retry_delay_seconds = retry_delay_seconds
        self._client = client

    async def _post(self, client: httpx.AsyncClient, payload: str) -> None:
        response = await client.post(
            self.url,
            content=payload,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()

    async def emit(self, event: LifecycleEvent) -> None:
        payload = event.model_dump_json()

        for attempt in range(1, self.attempts + 1):
            try:
                if self._client is not None:
                    await self._post(self._client, payload)
                else:
                    async with httpx.AsyncClient() as client:
                        await self._post(client, payload)
                return
            except httpx.HTTPError as exc:
                logger.warning(
                    "Webhook delivery of %s failed (attempt %d/%d): %s",
                    event.id, attempt, self.attempts, exc,
                )
                if attempt == self.attempts:
                    raise
                await asyncio.sleep(self.retry_delay_seconds)


class FanoutEventSink:
    """Delivers each event to several sinks; one failing sink doesn't stop the rest."""

    def __init__(self, sinks: Sequence[EventSink]) -> None:
        self.sinks = list(sinks)

    async def emit(self, event: LifecycleEvent) -> None:
        for sink in self.sinks:
            await emit_safely(sink, event)


def build_default_sink(webhook_url: Optional[str] = None, attempts: int = 3) -> EventSink:
    """Logging sink, plus a webhook sink when a URL is configured."""
    if not webhook_url:
        return LoggingEventSink()
    return FanoutEventSink([LoggingEventSink(), WebhookEventSink(webhook_url, attempts=attempts)])
