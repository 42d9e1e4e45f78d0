"""
Broadcast, channel and stream event persistence.

The scheduler only needs repository style lookups; two backends are provided:
an in-process store and a Redis backed store shared between workers.
"""

import json
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError
from pydantic import TypeAdapter

from exceptions import StoreError
from models import BaseChannel, Channel, PlannedBroadcast, StreamEvent

logger = logging.getLogger(__name__)

channel_adapter = TypeAdapter(Channel)


class BroadcastStore(ABC):
    """Repository interface used by the scheduler and the broadcast manager."""

    @abstractmethod
    async def get_broadcast(self, broadcast_id: int) -> Optional[PlannedBroadcast]:
        pass

    @abstractmethod
    async def list_broadcasts(self) -> List[PlannedBroadcast]:
        pass

    async def get_planned_broadcasts(self, now: datetime) -> List[PlannedBroadcast]:
        """Broadcasts whose window has not closed yet, earliest start first."""
        broadcasts = [b for b in await self.list_broadcasts() if b.end_timestamp > now]
        return sorted(broadcasts, key=lambda b: (b.start_timestamp, b.broadcast_id))

    @abstractmethod
    async def save_broadcast(self, broadcast: PlannedBroadcast) -> PlannedBroadcast:
        """Insert or update; a broadcast_id of 0 is assigned a new id."""

    @abstractmethod
    async def delete_broadcast(self, broadcast_id: int) -> bool:
        pass

    @abstractmethod
    async def get_channel(self, channel_id: int) -> Optional[BaseChannel]:
        pass

    @abstractmethod
    async def list_channels(self) -> List[BaseChannel]:
        pass

    @abstractmethod
    async def save_channel(self, channel: BaseChannel) -> BaseChannel:
        pass

    @abstractmethod
    async def delete_channel(self, channel_id: int) -> bool:
        pass

    @abstractmethod
    async def get_stream_event(self, broadcast_id: int, channel_id: int) -> Optional[StreamEvent]:
        pass

    @abstractmethod
    async def list_stream_events(self, broadcast_id: int) -> List[StreamEvent]:
        pass

    @abstractmethod
    async def save_stream_event(self, event: StreamEvent) -> StreamEvent:
        pass

    @abstractmethod
    async def remove_stream_event(self, event: StreamEvent) -> None:
        pass


class InMemoryBroadcastStore(BroadcastStore):
    """Process local store. Everything is copied in and out so callers never
    share instances with the store."""

    def __init__(self):
        self.broadcasts: Dict[int, PlannedBroadcast] = {}
        self.channels: Dict[int, BaseChannel] = {}
        self.stream_events: Dict[Tuple[int, int], StreamEvent] = {}
        self._next_broadcast_id = 1
        self._next_channel_id = 1

    async def get_broadcast(self, broadcast_id: int) -> Optional[PlannedBroadcast]:
        broadcast = self.broadcasts.get(broadcast_id)
        return broadcast.model_copy(deep=True) if broadcast else None

    async def list_broadcasts(self) -> List[PlannedBroadcast]:
        return [b.model_copy(deep=True) for b in self.broadcasts.values()]

    async def save_broadcast(self, broadcast: PlannedBroadcast) -> PlannedBroadcast:
        broadcast = broadcast.model_copy(deep=True)
        if not broadcast.broadcast_id:
            broadcast.broadcast_id = self._next_broadcast_id
        self._next_broadcast_id = max(self._next_broadcast_id, broadcast.broadcast_id + 1)
        self.broadcasts[broadcast.broadcast_id] = broadcast
        return broadcast.model_copy(deep=True)

    async def delete_broadcast(self, broadcast_id: int) -> bool:
        for key in [key for key in self.stream_events if key[0] == broadcast_id]:
            del self.stream_events[key]
        return self.broadcasts.pop(broadcast_id, None) is not None

    async def get_channel(self, channel_id: int) -> Optional[BaseChannel]:
        channel = self.channels.get(channel_id)
        return channel.model_copy(deep=True) if channel else None

    async def list_channels(self) -> List[BaseChannel]:
        return [c.model_copy(deep=True) for c in self.channels.values()]

    async def save_channel(self, channel: BaseChannel) -> BaseChannel:
        channel = channel.model_copy(deep=True)
        if not channel.channel_id:
            channel.channel_id = self._next_channel_id
        self._next_channel_id = max(self._next_channel_id, channel.channel_id + 1)
        self.channels[channel.channel_id] = channel
        return channel.model_copy(deep=True)

    async def delete_channel(self, channel_id: int) -> bool:
        return self.channels.pop(channel_id, None) is not None

    async def get_stream_event(self, broadcast_id: int, channel_id: int) -> Optional[StreamEvent]:
        event = self.stream_events.get((broadcast_id, channel_id))
        return event.model_copy() if event else None

    async def list_stream_events(self, broadcast_id: int) -> List[StreamEvent]:
        return [e.model_copy() for key, e in self.stream_events.items() if key[0] == broadcast_id]

    async def save_stream_event(self, event: StreamEvent) -> StreamEvent:
        self.stream_events[(event.broadcast_id, event.channel_id)] = event.model_copy()
        return event

    async def remove_stream_event(self, event: StreamEvent) -> None:
        self.stream_events.pop((event.broadcast_id, event.channel_id), None)


class RedisBroadcastStore(BroadcastStore):
    """Redis backed store. Broadcasts reference channels by id and are
    hydrated on load."""

    def __init__(self, redis_url: str = "redis://localhost:6379/0", client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.redis_client = client or redis.from_url(redis_url, decode_responses=True)

    async def connect(self):
        async with self._operation("connect"):
            await self.redis_client.ping()
        logger.info("Redis broadcast store connected")

    async def close(self):
        await self.redis_client.aclose()

    @asynccontextmanager
    async def _operation(self, name: str):
        try:
            yield
        except RedisError as e:
            raise StoreError(name, f"Redis {name} failed: {e}")

    # Broadcasts

    async def _load_broadcast(self, raw: str) -> PlannedBroadcast:
        data = json.loads(raw)
        channel_ids = data.pop("channel_ids", [])
        channels = []
        for channel_id in channel_ids:
            channel = await self.get_channel(channel_id)
            if channel is None:
                logger.warning(f"Broadcast {data.get('broadcast_id')} references missing channel {channel_id}")
                continue
            channels.append(channel)
        return PlannedBroadcast(**data, output_channels=channels)

    async def get_broadcast(self, broadcast_id: int) -> Optional[PlannedBroadcast]:
        async with self._operation("get_broadcast"):
            raw = await self.redis_client.get(f"broadcast:{broadcast_id}")
            if raw is None:
                return None
            return await self._load_broadcast(raw)

    async def list_broadcasts(self) -> List[PlannedBroadcast]:
        async with self._operation("list_broadcasts"):
            broadcast_ids = await self.redis_client.smembers("broadcasts")
            broadcasts = []
            for broadcast_id in sorted(int(i) for i in broadcast_ids):
                raw = await self.redis_client.get(f"broadcast:{broadcast_id}")
                if raw is not None:
                    broadcasts.append(await self._load_broadcast(raw))
            return broadcasts

    async def save_broadcast(self, broadcast: PlannedBroadcast) -> PlannedBroadcast:
        async with self._operation("save_broadcast"):
            broadcast = broadcast.model_copy(deep=True)
            if not broadcast.broadcast_id:
                broadcast.broadcast_id = int(await self.redis_client.incr("next_id:broadcast"))

            data = broadcast.model_dump(mode="json", exclude={"output_channels"})
            data["channel_ids"] = [channel.channel_id for channel in broadcast.output_channels]
            await self.redis_client.set(f"broadcast:{broadcast.broadcast_id}", json.dumps(data))
            await self.redis_client.sadd("broadcasts", broadcast.broadcast_id)
            return broadcast

    async def delete_broadcast(self, broadcast_id: int) -> bool:
        async with self._operation("delete_broadcast"):
            channel_ids = await self.redis_client.smembers(f"stream_events:{broadcast_id}")
            for channel_id in channel_ids:
                await self.redis_client.delete(f"stream_event:{broadcast_id}:{channel_id}")
            await self.redis_client.delete(f"stream_events:{broadcast_id}")
            await self.redis_client.srem("broadcasts", broadcast_id)
            return bool(await self.redis_client.delete(f"broadcast:{broadcast_id}"))

    # Channels

    async def get_channel(self, channel_id: int) -> Optional[BaseChannel]:
        async with self._operation("get_channel"):
            raw = await self.redis_client.get(f"channel:{channel_id}")
            return channel_adapter.validate_json(raw) if raw is not None else None

    async def list_channels(self) -> List[BaseChannel]:
        async with self._operation("list_channels"):
            channel_ids = await self.redis_client.smembers("channels")
            channels = []
            for channel_id in sorted(int(i) for i in channel_ids):
                raw = await self.redis_client.get(f"channel:{channel_id}")
                if raw is not None:
                    channels.append(channel_adapter.validate_json(raw))
            return channels

    async def save_channel(self, channel: BaseChannel) -> BaseChannel:
        async with self._operation("save_channel"):
            channel = channel.model_copy(deep=True)
            if not channel.channel_id:
                channel.channel_id = int(await self.redis_client.incr("next_id:channel"))
            await self.redis_client.set(f"channel:{channel.channel_id}", channel.model_dump_json())
            await self.redis_client.sadd("channels", channel.channel_id)
            return channel

    async def delete_channel(self, channel_id: int) -> bool:
        async with self._operation("delete_channel"):
            await self.redis_client.srem("channels", channel_id)
            return bool(await self.redis_client.delete(f"channel:{channel_id}"))

    # Stream events

    async def get_stream_event(self, broadcast_id: int, channel_id: int) -> Optional[StreamEvent]:
        async with self._operation("get_stream_event"):
            raw = await self.redis_client.get(f"stream_event:{broadcast_id}:{channel_id}")
            return StreamEvent.model_validate_json(raw) if raw is not None else None

    async def list_stream_events(self, broadcast_id: int) -> List[StreamEvent]:
        async with self._operation("list_stream_events"):
            channel_ids = await self.redis_client.smembers(f"stream_events:{broadcast_id}")
            events = []
            for channel_id in sorted(int(i) for i in channel_ids):
                raw = await self.redis_client.get(f"stream_event:{broadcast_id}:{channel_id}")
                if raw is not None:
                    events.append(StreamEvent.model_validate_json(raw))
            return events

    async def save_stream_event(self, event: StreamEvent) -> StreamEvent:
        async with self._operation("save_stream_event"):
            await self.redis_client.set(
                f"stream_event:{event.broadcast_id}:{event.channel_id}", event.model_dump_json())
            await self.redis_client.sadd(f"stream_events:{event.broadcast_id}", event.channel_id)
            return event

    async def remove_stream_event(self, event: StreamEvent) -> None:
        async with self._operation("remove_stream_event"):
            await self.redis_client.delete(f"stream_event:{event.broadcast_id}:{event.channel_id}")
            await self.redis_client.srem(f"stream_events:{event.broadcast_id}", event.channel_id)
