"""
Broadcast Manager

Keeps the live events registered on remote platforms in line with the local
schedule. Every remote call is made per channel and a failing channel never
stops the others; removals are best effort because the remote event may
already be gone.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from channel_api import ChannelApiStack
from channel_diff import diff_channels
from exceptions import LiveBroadcastError, ProcessOutputError, StoreError
from models import BaseChannel, EventType, PlannedBroadcast, SchedulerEvent, StreamEvent
from store import BroadcastStore

logger = logging.getLogger(__name__)


class BroadcastManager:
    def __init__(self, store: BroadcastStore, api_stack: ChannelApiStack):
        self.store = store
        self.api_stack = api_stack
        self.event_manager = None

    def set_event_manager(self, event_manager):
        """Set the event manager for emitting events"""
        self.event_manager = event_manager

    async def _emit_event(self, event_type: EventType, broadcast_id: int, data: dict):
        if self.event_manager:
            await self.event_manager.emit_event(
                SchedulerEvent(event_type=event_type, broadcast_id=broadcast_id, data=data))

    async def get_broadcast_by_id(self, broadcast_id) -> Optional[PlannedBroadcast]:
        return await self.store.get_broadcast(int(broadcast_id))

    async def get_channel_by_id(self, channel_id: int) -> Optional[BaseChannel]:
        return await self.store.get_channel(channel_id)

    async def get_planned_broadcasts(self, now: datetime) -> List[PlannedBroadcast]:
        return await self.store.get_planned_broadcasts(now) or []

    async def get_stream_event(self, broadcast_id: int, channel_id: int) -> Optional[StreamEvent]:
        return await self.store.get_stream_event(broadcast_id, channel_id)

    async def on_create(self, broadcast: PlannedBroadcast):
        """Register live events for a new broadcast on all its channels."""
        await self._create_live_events(broadcast, broadcast.output_channels)

    async def on_update(self, broadcast: PlannedBroadcast):
        """
        Apply a changed channel list against the stored version of the broadcast.

        Must run before the new version is saved. Added channels get an event,
        kept channels are updated and dropped channels have theirs removed.
        """
        previous_state = await self.get_broadcast_by_id(broadcast.broadcast_id)
        if previous_state is None:
            return

        diff = diff_channels(previous_state.output_channels, broadcast.output_channels)
        await self._create_live_events(broadcast, diff.added)
        await self._update_live_events(broadcast, diff.unchanged)
        await self._remove_live_events(broadcast, diff.removed)

    async def on_delete(self, broadcast: PlannedBroadcast):
        if broadcast.output_channels:
            await self._remove_live_events(broadcast, broadcast.output_channels)

    async def send_end_signal(self, event: StreamEvent):
        """
        Tell the platform a stream has ended.

        The sent flag is stored first; when that fails nothing is sent, so a
        retry can never produce a second end signal.

        Raises:
            LiveBroadcastError: the end state could not be saved
            ProcessOutputError: the platform call failed
        """
        channel = await self.get_channel_by_id(event.channel_id)
        if channel is None or not channel.supports_planned_events:
            return

        api = self.api_stack.get_api_for_channel(channel)
        if api is None:
            return

        event.end_signal_sent = True
        try:
            await self.store.save_stream_event(event)
        except StoreError as e:
            raise LiveBroadcastError(f"Couldn't save broadcast end: {e.message}")

        await api.send_end_signal(channel, event.external_stream_id)
        logger.info(f"Sent end signal for broadcast {event.broadcast_id} to {channel}")
        await self._emit_event(EventType.END_SIGNAL_SENT, event.broadcast_id, {
            "channel_id": event.channel_id,
            "external_stream_id": event.external_stream_id,
        })

    async def _create_live_events(self, broadcast: PlannedBroadcast, channels: Iterable[BaseChannel]):
        for channel in channels:
            api = self.api_stack.get_api_for_channel(channel)
            if api is None:
                continue

            try:
                external_id = await api.create_live_event(broadcast, channel)
            except LiveBroadcastError as e:
                logger.error(f"Could not create live event for broadcast {broadcast.broadcast_id} on {channel}: {e}")
                continue

            await self._emit_event(EventType.LIVE_EVENT_CREATED, broadcast.broadcast_id, {
                "channel_id": channel.channel_id,
                "external_stream_id": external_id,
            })

    async def _update_live_events(self, broadcast: PlannedBroadcast, channels: Iterable[BaseChannel]):
        for channel in channels:
            api = self.api_stack.get_api_for_channel(channel)
            if api is None:
                continue

            try:
                await api.update_live_event(broadcast, channel)
            except LiveBroadcastError as e:
                logger.error(f"Could not update live event for broadcast {broadcast.broadcast_id} on {channel}: {e}")
                continue

            await self._emit_event(EventType.LIVE_EVENT_UPDATED, broadcast.broadcast_id, {
                "channel_id": channel.channel_id,
            })

    async def _remove_live_events(self, broadcast: PlannedBroadcast, channels: Iterable[BaseChannel]):
        for channel in channels:
            api = self.api_stack.get_api_for_channel(channel)
            if api is None:
                continue

            try:
                await api.remove_live_event(broadcast, channel)
            except ProcessOutputError as e:
                # The remote event may already be gone
                logger.debug(f"Ignoring failed removal for broadcast {broadcast.broadcast_id} on {channel}: {e}")
                continue
            except LiveBroadcastError as e:
                logger.warning(f"Could not remove live event for broadcast {broadcast.broadcast_id} on {channel}: {e}")
                continue

            await self._emit_event(EventType.LIVE_EVENT_REMOVED, broadcast.broadcast_id, {
                "channel_id": channel.channel_id,
            })
