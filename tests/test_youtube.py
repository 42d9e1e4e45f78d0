"""
Tests for the YouTube Live client and channel API, against a mocked transport
"""
import json
import pytest
import httpx
from datetime import datetime, timezone

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from clock import FixedClock
from exceptions import InvalidExternalReference, ProcessOutputError
from models import PlannedBroadcast, PrivacyStatus, StreamEvent, YouTubeChannel
from store import InMemoryBroadcastStore
from youtube import YouTubeClient, YouTubeEventApi


NOW = datetime(2024, 3, 1, 14, 0, tzinfo=timezone.utc)
API = "/youtube/v3"


class FakeYouTube:
    """Routes requests by method and path; records everything it sees"""

    def __init__(self):
        self.requests = []
        self.routes = {
            ("POST", "/token"): httpx.Response(200, json={"access_token": "access-1"}),
        }

    def route(self, method, path, response):
        self.routes[(method, path)] = response

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(404, json={"error": {"message": f"no route {request.url.path}"}})
        if callable(response):
            return response(request)
        # A response instance can only be sent once
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)

    def paths(self):
        return [(r.method, r.url.path) for r in self.requests]


def _broadcast(start=None, thumbnail=None, privacy_status=PrivacyStatus.UNLISTED):
    start = start or datetime(2024, 3, 1, 15, 0, tzinfo=timezone.utc)
    return PlannedBroadcast(
        broadcast_id=1,
        name="Evening News",
        description="Daily news",
        start_timestamp=start,
        end_timestamp=datetime(2024, 3, 1, 16, 0, tzinfo=timezone.utc),
        privacy_status=privacy_status,
        thumbnail=thumbnail,
        input_url="/media/news.mp4",
    )


@pytest.fixture
def youtube():
    return FakeYouTube()


@pytest.fixture
def client(youtube):
    return YouTubeClient(
        client_id="client-id",
        client_secret="client-secret",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(youtube)),
        clock=FixedClock(NOW),
        chunk_size=2,
    )


@pytest.fixture
def channel():
    return YouTubeChannel(channel_id=4, channel_name="Main", refresh_token="refresh-1")


class TestYouTubeClient:

    @pytest.mark.asyncio
    async def test_set_channel_exchanges_refresh_token(self, client, youtube, channel):
        await client.set_channel(channel)

        assert client.access_token == "access-1"
        body = youtube.requests[0].content.decode()
        assert "refresh_token=refresh-1" in body
        assert "grant_type=refresh_token" in body

    @pytest.mark.asyncio
    async def test_set_channel_error(self, client, youtube, channel):
        youtube.route("POST", "/token", httpx.Response(400, json={"error": "invalid_grant"}))

        with pytest.raises(ProcessOutputError, match="Cannot connect YouTube channel Main: invalid_grant"):
            await client.set_channel(channel)

    def test_snippet_keeps_future_start(self, client):
        snippet = client.create_broadcast_snippet(_broadcast())
        assert snippet["scheduledStartTime"] == "2024-03-01T15:00:00+00:00"
        assert snippet["scheduledEndTime"] == "2024-03-01T16:00:00+00:00"
        assert snippet["title"] == "Evening News"

    def test_snippet_moves_past_start_just_after_now(self, client):
        snippet = client.create_broadcast_snippet(_broadcast(start=datetime(2024, 3, 1, 13, 0, tzinfo=timezone.utc)))
        assert snippet["scheduledStartTime"] == "2024-03-01T14:00:01+00:00"

    @pytest.mark.parametrize("status,expected", [
        (PrivacyStatus.PUBLIC, "public"),
        (PrivacyStatus.UNLISTED, "unlisted"),
        (PrivacyStatus.PRIVATE, "private"),
    ])
    def test_convert_privacy_status(self, status, expected):
        assert YouTubeClient.convert_privacy_status(status) == expected

    @pytest.mark.asyncio
    async def test_create_broadcast(self, client, youtube):
        youtube.route("POST", f"{API}/liveBroadcasts", httpx.Response(200, json={"id": "yt1"}))

        result = await client.create_broadcast(_broadcast())

        assert result == {"id": "yt1"}
        body = json.loads(youtube.requests[0].content)
        assert body["status"]["privacyStatus"] == "unlisted"
        assert body["contentDetails"]["enableAutoStart"] is True

    @pytest.mark.asyncio
    async def test_server_errors_are_retryable(self, client, youtube):
        youtube.route("POST", f"{API}/liveBroadcasts/transition",
                      httpx.Response(503, json={"error": {"message": "backend error"}}))

        with pytest.raises(ProcessOutputError) as exc_info:
            await client.end_live_stream("yt1")

        assert exc_info.value.retryable
        assert exc_info.value.status_code == 503
        assert exc_info.value.message == "backend error"

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retryable(self, client, youtube):
        youtube.route("DELETE", f"{API}/liveBroadcasts", httpx.Response(403, text="forbidden"))

        with pytest.raises(ProcessOutputError) as exc_info:
            await client.remove_live_stream(StreamEvent(broadcast_id=1, channel_id=4, external_stream_id="yt1"))

        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_end_live_stream_transitions_to_complete(self, client, youtube):
        youtube.route("POST", f"{API}/liveBroadcasts/transition", httpx.Response(200, json={}))

        await client.end_live_stream("yt1")

        params = youtube.requests[0].url.params
        assert params["broadcastStatus"] == "complete"
        assert params["id"] == "yt1"

    @pytest.mark.asyncio
    async def test_unknown_broadcast(self, client, youtube):
        youtube.route("GET", f"{API}/liveBroadcasts", httpx.Response(200, json={"items": []}))

        with pytest.raises(InvalidExternalReference, match="No broadcast found for YouTube ID: nope"):
            await client.get_youtube_broadcast("nope")

    @pytest.mark.asyncio
    async def test_thumbnail_is_uploaded_in_chunks(self, client, youtube, tmp_path):
        thumbnail = tmp_path / "thumb.jpg"
        thumbnail.write_bytes(b"abcde")
        session = "https://upload.example.com/session/1"
        ranges = []

        def upload_chunk(request):
            ranges.append(request.headers["Content-Range"])
            return httpx.Response(200 if ranges[-1].startswith("bytes 4-") else 308)

        youtube.route("POST", "/upload/youtube/v3/thumbnails/set",
                      httpx.Response(200, headers={"Location": session}))
        youtube.route("PUT", "/session/1", upload_chunk)

        assert await client.add_thumbnail_to_broadcast("yt1", _broadcast(thumbnail=str(thumbnail)))
        assert ranges == ["bytes 0-1/5", "bytes 2-3/5", "bytes 4-4/5"]
        assert youtube.requests[0].headers["X-Upload-Content-Type"] == "image/jpeg"

    @pytest.mark.asyncio
    async def test_no_thumbnail(self, client, youtube):
        assert not await client.add_thumbnail_to_broadcast("yt1", _broadcast())
        assert not await client.add_thumbnail_to_broadcast("yt1", _broadcast(thumbnail="/does/not/exist.jpg"))
        assert youtube.requests == []

    @pytest.mark.asyncio
    async def test_failed_thumbnail_upload(self, client, youtube, tmp_path):
        thumbnail = tmp_path / "thumb.png"
        thumbnail.write_bytes(b"abc")
        youtube.route("POST", "/upload/youtube/v3/thumbnails/set", httpx.Response(500))

        with pytest.raises(ProcessOutputError):
            await client.add_thumbnail_to_broadcast("yt1", _broadcast(thumbnail=str(thumbnail)))


class TestYouTubeEventApi:

    @pytest.fixture
    def store(self):
        return InMemoryBroadcastStore()

    @pytest.fixture
    def api(self, store, client):
        return YouTubeEventApi(store, client)

    @pytest.mark.asyncio
    async def test_create_live_event(self, api, store, youtube, channel):
        youtube.route("POST", f"{API}/liveBroadcasts", httpx.Response(200, json={"id": "yt1"}))
        youtube.route("POST", f"{API}/liveStreams", httpx.Response(200, json={"id": "stream1"}))
        youtube.route("POST", f"{API}/liveBroadcasts/bind", httpx.Response(200, json={}))

        external_id = await api.create_live_event(_broadcast(), channel)

        assert external_id == "yt1"
        assert youtube.paths() == [
            ("POST", "/token"),
            ("POST", f"{API}/liveBroadcasts"),
            ("POST", f"{API}/liveStreams"),
            ("POST", f"{API}/liveBroadcasts/bind"),
        ]
        bind_params = youtube.requests[-1].url.params
        assert (bind_params["id"], bind_params["streamId"]) == ("yt1", "stream1")

        event = await store.get_stream_event(1, 4)
        assert event.external_stream_id == "yt1"
        assert event.end_signal_sent is False

    @pytest.mark.asyncio
    async def test_failed_create_stores_nothing(self, api, store, youtube, channel):
        youtube.route("POST", f"{API}/liveBroadcasts", httpx.Response(400, json={"error": {"message": "invalid"}}))

        with pytest.raises(ProcessOutputError):
            await api.create_live_event(_broadcast(), channel)

        assert await store.get_stream_event(1, 4) is None

    @pytest.mark.asyncio
    async def test_update_existing_event(self, api, store, youtube, channel):
        await store.save_stream_event(StreamEvent(broadcast_id=1, channel_id=4, external_stream_id="yt1"))
        youtube.route("PUT", f"{API}/liveBroadcasts", httpx.Response(200, json={"id": "yt1"}))

        await api.update_live_event(_broadcast(), channel)

        body = json.loads(youtube.requests[-1].content)
        assert body["id"] == "yt1"
        assert body["snippet"]["title"] == "Evening News"

    @pytest.mark.asyncio
    async def test_update_without_event_creates_one(self, api, store, youtube, channel):
        youtube.route("POST", f"{API}/liveBroadcasts", httpx.Response(200, json={"id": "yt2"}))
        youtube.route("POST", f"{API}/liveStreams", httpx.Response(200, json={"id": "stream2"}))
        youtube.route("POST", f"{API}/liveBroadcasts/bind", httpx.Response(200, json={}))

        await api.update_live_event(_broadcast(), channel)

        assert (await store.get_stream_event(1, 4)).external_stream_id == "yt2"

    @pytest.mark.asyncio
    async def test_remove_without_event_is_a_no_op(self, api, youtube, channel):
        await api.remove_live_event(_broadcast(), channel)
        assert youtube.requests == []

    @pytest.mark.asyncio
    async def test_remove_live_event(self, api, store, youtube, channel):
        await store.save_stream_event(StreamEvent(broadcast_id=1, channel_id=4, external_stream_id="yt1"))
        youtube.route("DELETE", f"{API}/liveBroadcasts", httpx.Response(204))

        await api.remove_live_event(_broadcast(), channel)

        assert youtube.requests[-1].url.params["id"] == "yt1"
        assert await store.get_stream_event(1, 4) is None

    @pytest.mark.asyncio
    async def test_get_stream_url(self, api, store, youtube, channel):
        await store.save_stream_event(StreamEvent(broadcast_id=1, channel_id=4, external_stream_id="yt1"))
        youtube.route("GET", f"{API}/liveBroadcasts",
                      httpx.Response(200, json={"items": [{"id": "yt1", "contentDetails": {"boundStreamId": "s1"}}]}))
        youtube.route("GET", f"{API}/liveStreams", httpx.Response(200, json={"items": [{
            "id": "s1",
            "cdn": {"ingestionInfo": {
                "ingestionAddress": "rtmp://a.rtmp.youtube.com/live2",
                "streamName": "abcd-key",
            }},
        }]}))

        assert await api.get_stream_url(_broadcast(), channel) == "rtmp://a.rtmp.youtube.com/live2/abcd-key"

    @pytest.mark.asyncio
    async def test_get_stream_url_without_event(self, api, youtube, channel):
        assert await api.get_stream_url(_broadcast(), channel) is None
        assert youtube.requests == []

    @pytest.mark.asyncio
    async def test_send_end_signal(self, api, youtube, channel):
        youtube.route("POST", f"{API}/liveBroadcasts/transition", httpx.Response(200, json={}))

        await api.send_end_signal(channel, "yt1")

        assert youtube.paths() == [("POST", "/token"), ("POST", f"{API}/liveBroadcasts/transition")]
        assert youtube.requests[-1].headers["Authorization"] == "Bearer access-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stream", [
        {"id": "s1", "cdn": {}},
        {"id": "s1"},
        {"id": "s1", "cdn": {"ingestionInfo": {"ingestionAddress": "rtmp://a.rtmp.youtube.com/live2"}}},
    ])
    async def test_get_stream_url_without_ingestion_info(self, api, store, youtube, channel, stream):
        await store.save_stream_event(StreamEvent(broadcast_id=1, channel_id=4, external_stream_id="yt1"))
        youtube.route("GET", f"{API}/liveBroadcasts",
                      httpx.Response(200, json={"items": [{"id": "yt1", "contentDetails": {"boundStreamId": "s1"}}]}))
        youtube.route("GET", f"{API}/liveStreams", httpx.Response(200, json={"items": [stream]}))

        assert await api.get_stream_url(_broadcast(), channel) is None

    @pytest.mark.asyncio
    async def test_create_without_broadcast_id(self, api, store, youtube, channel):
        youtube.route("POST", f"{API}/liveBroadcasts", httpx.Response(200, json={"kind": "youtube#liveBroadcast"}))

        with pytest.raises(ProcessOutputError, match="carries no id"):
            await api.create_live_event(_broadcast(), channel)

        assert await store.get_stream_event(1, 4) is None

    @pytest.mark.asyncio
    async def test_unreadable_body_is_a_channel_error(self, api, youtube, channel):
        youtube.route("POST", f"{API}/liveBroadcasts", httpx.Response(200, content=b"<html>maintenance</html>"))

        with pytest.raises(ProcessOutputError, match="unreadable body"):
            await api.create_live_event(_broadcast(), channel)
