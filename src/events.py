"""
Scheduler notifications.

The scheduler and the broadcast manager emit events while a tick or a live
event change is in progress. They are queued so emitters never wait on a
receiver, then handed in order to in-process subscribers and to the webhooks
whose filters accept them. Recent events are kept in memory so they can be
listed per broadcast.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, Tuple

import aiohttp

from models import EventType, SchedulerEvent, WebhookConfig

logger = logging.getLogger(__name__)

USER_AGENT = "LiveBroadcaster-Webhook/1.0"

# Event data keys promoted to the top level of a webhook payload
PAYLOAD_FIELDS = ("channel_id", "process_id", "external_stream_id", "reason", "error")

SUMMARIES = {
    EventType.BROADCAST_STARTED: "Transcoder started for broadcast {broadcast_id} on channel {channel_id}",
    EventType.BROADCAST_STOPPED: (
        "Transcoder {process_id} of broadcast {broadcast_id} on channel {channel_id} stopped: {reason}"),
    EventType.LIVE_EVENT_CREATED: (
        "Live event {external_stream_id} created for broadcast {broadcast_id} on channel {channel_id}"),
    EventType.LIVE_EVENT_UPDATED: "Live event of broadcast {broadcast_id} on channel {channel_id} updated",
    EventType.LIVE_EVENT_REMOVED: "Live event of broadcast {broadcast_id} on channel {channel_id} removed",
    EventType.END_SIGNAL_SENT: "End signal sent for broadcast {broadcast_id} on channel {channel_id}",
    EventType.TICK_FAILED: "Schedule tick failed: {error}",
}


class _SummaryFields(dict):
    def __missing__(self, key):
        return "?"


def build_payload(event: SchedulerEvent, environment: str, summary: Optional[str] = None) -> Dict[str, Any]:
    """
    Webhook body for an event.

    Known data fields are lifted next to the broadcast id so receivers can
    route on them; whatever else the emitter attached stays under ``data``.
    """
    fields = {key: event.data[key] for key in PAYLOAD_FIELDS if key in event.data}
    extra = {key: value for key, value in event.data.items() if key not in fields}

    if summary is None:
        template = SUMMARIES.get(event.event_type, event.event_type.value)
        summary = template.format_map(_SummaryFields(broadcast_id=event.broadcast_id, **fields))

    return {
        "event_id": event.event_id,
        "event_type": event.event_type.value,
        "environment": environment,
        # Tick failures are not tied to a broadcast
        "broadcast_id": event.broadcast_id or None,
        **fields,
        "timestamp": event.timestamp.isoformat(),
        "summary": summary,
        "data": extra,
    }


def is_retryable_status(status: int) -> bool:
    return status >= 500 or status == 429


class EventManager:
    """Queues scheduler events and delivers them to subscribers and webhooks."""

    def __init__(self, environment: str = "", history_size: int = 200, retry_backoff: float = 1.0):
        self.environment = environment
        self.retry_backoff = retry_backoff
        self.webhooks: List[WebhookConfig] = []
        self.subscribers: List[Tuple[Callable, Optional[FrozenSet[EventType]]]] = []
        self.history: Deque[SchedulerEvent] = deque(maxlen=history_size)
        self.event_queue: asyncio.Queue = asyncio.Queue()
        self._session: Optional[aiohttp.ClientSession] = None
        self._worker_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self):
        if self.is_running:
            return
        self._worker_task = asyncio.create_task(self._deliver_queued())
        logger.info("Event manager started")

    async def stop(self):
        """Deliver everything already queued, then stop the worker."""
        if self.is_running:
            await self.event_queue.put(None)
            await self._worker_task
        else:
            while not self.event_queue.empty():
                event = self.event_queue.get_nowait()
                if event is not None:
                    await self.dispatch(event)
        self._worker_task = None

        if self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("Event manager stopped")

    def add_webhook(self, webhook: WebhookConfig):
        self.webhooks.append(webhook)
        scope = f"broadcasts {webhook.broadcast_ids}" if webhook.broadcast_ids else "all broadcasts"
        logger.info(f"Added webhook for {webhook.url} ({scope})")

    def get_webhook(self, webhook_url: str) -> Optional[WebhookConfig]:
        for webhook in self.webhooks:
            if str(webhook.url) == webhook_url:
                return webhook
        return None

    def remove_webhook(self, webhook_url: str) -> bool:
        initial_count = len(self.webhooks)
        self.webhooks = [wh for wh in self.webhooks if str(wh.url) != webhook_url]
        removed = len(self.webhooks) != initial_count
        if removed:
            logger.info(f"Removed webhook {webhook_url}")
        return removed

    def subscribe(self, handler: Callable, event_types: Optional[Iterable[EventType]] = None):
        """
        Call ``handler`` for every event, or only for ``event_types``.

        Handlers may be plain functions or coroutine functions.
        """
        types = frozenset(event_types) if event_types else None
        self.subscribers.append((handler, types))

    async def emit_event(self, event: SchedulerEvent):
        self.history.append(event)
        await self.event_queue.put(event)
        logger.debug(f"Emitted {event.event_type.value} for broadcast {event.broadcast_id}")

    def recent_events(
        self,
        broadcast_id: Optional[int] = None,
        event_type: Optional[EventType] = None,
        limit: Optional[int] = None,
    ) -> List[SchedulerEvent]:
        """Kept events, oldest first, optionally narrowed to one broadcast or type."""
        events = [
            event for event in self.history
            if (broadcast_id is None or event.broadcast_id == broadcast_id)
            and (event_type is None or event.event_type == event_type)
        ]
        if limit:
            events = events[-limit:]
        return events

    async def _deliver_queued(self):
        while True:
            event = await self.event_queue.get()
            if event is None:
                break
            try:
                await self.dispatch(event)
            except Exception as e:
                logger.error(f"Error dispatching {event.event_type.value} event: {e}")

    async def dispatch(self, event: SchedulerEvent):
        for handler, types in self.subscribers:
            if types is not None and event.event_type not in types:
                continue
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Event subscriber {getattr(handler, '__name__', handler)} failed: {e}")

        targets = [webhook for webhook in self.webhooks if webhook.accepts(event)]
        if targets:
            payload = build_payload(event, self.environment)
            await asyncio.gather(*(self.deliver(webhook, payload) for webhook in targets))

    async def send_test(self, webhook: WebhookConfig) -> Tuple[str, bool]:
        """Post a test payload to one webhook; returns its event id and whether it arrived."""
        event = SchedulerEvent(event_type=EventType.BROADCAST_STARTED, broadcast_id=0, data={"test": True})
        payload = build_payload(event, self.environment, summary="Test notification")
        return event.event_id, await self.deliver(webhook, payload)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def deliver(self, webhook: WebhookConfig, payload: Dict[str, Any]) -> bool:
        """
        POST a payload to a webhook.

        Network errors, 5xx and 429 answers are retried with exponential
        backoff; any other 4xx is final.

        Returns:
            True when the receiver accepted the payload
        """
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            **webhook.headers,
        }
        timeout = aiohttp.ClientTimeout(total=webhook.timeout)
        event_type = payload["event_type"]

        for attempt in range(webhook.retry_attempts + 1):
            try:
                async with self._get_session().post(
                    str(webhook.url), json=payload, headers=headers, timeout=timeout
                ) as response:
                    if response.status < 400:
                        logger.debug(f"Delivered {event_type} to {webhook.url}")
                        return True
                    if not is_retryable_status(response.status):
                        logger.warning(f"Webhook {webhook.url} rejected {event_type} with status {response.status}")
                        return False
                    logger.warning(
                        f"Webhook {webhook.url} answered {response.status} to {event_type} (attempt {attempt + 1})")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Webhook attempt {attempt + 1} for {event_type} to {webhook.url} failed: {e}")

            if attempt < webhook.retry_attempts:
                await asyncio.sleep(self.retry_backoff * 2 ** attempt)

        logger.error(f"Giving up on {event_type} for {webhook.url}")
        return False
