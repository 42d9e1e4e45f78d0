import json
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock
from redis.exceptions import ConnectionError as RedisConnectionError

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from exceptions import StoreError
from models import PlannedBroadcast, RtmpChannel, StreamEvent, YouTubeChannel
from store import InMemoryBroadcastStore, RedisBroadcastStore


def _broadcast(name, start_hour, end_hour, broadcast_id=0, channels=None):
    return PlannedBroadcast(
        broadcast_id=broadcast_id,
        name=name,
        start_timestamp=datetime(2024, 3, 1, start_hour, tzinfo=timezone.utc),
        end_timestamp=datetime(2024, 3, 1, end_hour, tzinfo=timezone.utc),
        input_url=f"/media/{name}.mp4",
        output_channels=channels or [],
    )


class TestInMemoryStore:

    @pytest.mark.asyncio
    async def test_ids_are_assigned(self):
        store = InMemoryBroadcastStore()
        first = await store.save_broadcast(_broadcast("a", 9, 10))
        second = await store.save_broadcast(_broadcast("b", 9, 10))
        assert (first.broadcast_id, second.broadcast_id) == (1, 2)

        channel = await store.save_channel(YouTubeChannel(channel_name="yt", refresh_token="t"))
        assert channel.channel_id == 1

    @pytest.mark.asyncio
    async def test_returned_objects_are_copies(self):
        store = InMemoryBroadcastStore()
        saved = await store.save_broadcast(_broadcast("a", 9, 10))
        saved.name = "changed"
        assert (await store.get_broadcast(saved.broadcast_id)).name == "a"

    @pytest.mark.asyncio
    async def test_planned_broadcasts(self):
        store = InMemoryBroadcastStore()
        await store.save_broadcast(_broadcast("late", 12, 13))
        await store.save_broadcast(_broadcast("over", 8, 9))
        await store.save_broadcast(_broadcast("early", 10, 11))
        await store.save_broadcast(_broadcast("running", 9, 11))

        now = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)
        planned = await store.get_planned_broadcasts(now)
        assert [b.name for b in planned] == ["running", "early", "late"]

    @pytest.mark.asyncio
    async def test_delete_broadcast_drops_stream_events(self):
        store = InMemoryBroadcastStore()
        broadcast = await store.save_broadcast(_broadcast("a", 9, 10))
        await store.save_stream_event(
            StreamEvent(broadcast_id=broadcast.broadcast_id, channel_id=1, external_stream_id="yt1"))

        assert await store.delete_broadcast(broadcast.broadcast_id)
        assert await store.get_stream_event(broadcast.broadcast_id, 1) is None
        assert not await store.delete_broadcast(broadcast.broadcast_id)

    @pytest.mark.asyncio
    async def test_stream_events(self):
        store = InMemoryBroadcastStore()
        event = StreamEvent(broadcast_id=1, channel_id=2, external_stream_id="yt1")
        await store.save_stream_event(event)
        assert (await store.get_stream_event(1, 2)).external_stream_id == "yt1"
        assert [e.channel_id for e in await store.list_stream_events(1)] == [2]

        await store.remove_stream_event(event)
        assert await store.get_stream_event(1, 2) is None


class TestRedisStore:

    @pytest.mark.asyncio
    async def test_redis_errors_become_store_errors(self):
        client = AsyncMock()
        client.get.side_effect = RedisConnectionError("connection refused")
        store = RedisBroadcastStore(client=client)

        with pytest.raises(StoreError) as exc_info:
            await store.get_broadcast(1)
        assert exc_info.value.operation == "get_broadcast"

    @pytest.mark.asyncio
    async def test_broadcast_references_channels_by_id(self):
        client = AsyncMock()
        client.incr.return_value = 7
        store = RedisBroadcastStore(client=client)
        channel = RtmpChannel(channel_id=3, channel_name="out", stream_server="rtmp://x", stream_key="k")

        saved = await store.save_broadcast(_broadcast("a", 9, 10, channels=[channel]))

        assert saved.broadcast_id == 7
        key, raw = client.set.call_args.args
        assert key == "broadcast:7"
        data = json.loads(raw)
        assert data["channel_ids"] == [3]
        assert "output_channels" not in data
        client.sadd.assert_awaited_with("broadcasts", 7)

    @pytest.mark.asyncio
    async def test_broadcast_is_hydrated_with_channels(self):
        channel = RtmpChannel(channel_id=3, channel_name="out", stream_server="rtmp://x", stream_key="k")
        data = _broadcast("a", 9, 10, broadcast_id=7).model_dump(mode="json", exclude={"output_channels"})
        data["channel_ids"] = [3, 4]
        values = {
            "broadcast:7": json.dumps(data),
            "channel:3": channel.model_dump_json(),
        }
        client = AsyncMock()
        client.get.side_effect = lambda key: values.get(key)
        store = RedisBroadcastStore(client=client)

        broadcast = await store.get_broadcast(7)

        assert broadcast.name == "a"
        assert [c.channel_id for c in broadcast.output_channels] == [3]
        assert isinstance(broadcast.output_channels[0], RtmpChannel)

    @pytest.mark.asyncio
    async def test_missing_broadcast(self):
        client = AsyncMock()
        client.get.return_value = None
        assert await RedisBroadcastStore(client=client).get_broadcast(1) is None
