"""
YouTube Live integration.

YouTubeClient wraps the YouTube Data API v3 REST endpoints over httpx;
YouTubeEventApi maps the scheduler's live event operations onto it and keeps
the StreamEvent records in the store.
"""

import logging
import mimetypes
import os
from datetime import timedelta
from typing import Any, Dict, List, Optional

import httpx

from config import settings
from clock import Clock, system_clock
from channel_api import ChannelEventAPI
from exceptions import InvalidExternalReference, ProcessOutputError
from models import BaseChannel, PlannedBroadcast, PrivacyStatus, StreamEvent
from store import BroadcastStore

logger = logging.getLogger(__name__)


class YouTubeClient:
    """Thin async client for the live streaming parts of the YouTube API."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        chunk_size: Optional[int] = None,
    ):
        self.client_id = client_id or settings.YOUTUBE_CLIENT_ID
        self.client_secret = client_secret or settings.YOUTUBE_CLIENT_SECRET
        self.api_url = settings.YOUTUBE_API_URL.rstrip("/")
        self.upload_url = settings.YOUTUBE_UPLOAD_URL.rstrip("/")
        self.token_url = settings.YOUTUBE_TOKEN_URL
        self.chunk_size = chunk_size or settings.THUMBNAIL_CHUNK_SIZE
        self.clock = clock or system_clock
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.YOUTUBE_REQUEST_TIMEOUT)
        self.access_token: Optional[str] = None

    async def close(self):
        await self.http_client.aclose()

    async def set_channel(self, channel: BaseChannel):
        """Exchange the channel's refresh token for an access token."""
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": getattr(channel, "refresh_token", ""),
            "grant_type": "refresh_token",
        }
        try:
            response = await self.http_client.post(self.token_url, data=data)
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProcessOutputError(f"Cannot connect YouTube channel {channel.channel_name}: {e}", retryable=True)

        if not isinstance(result, dict):
            raise ProcessOutputError(f"Cannot connect YouTube channel {channel.channel_name}: unexpected token response")
        if "error" in result or "access_token" not in result:
            error = result.get("error", "no access token returned")
            raise ProcessOutputError(f"Cannot connect YouTube channel {channel.channel_name}: {error}")

        self.access_token = result["access_token"]

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            return response.text or f"HTTP {response.status_code}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            response = await self.http_client.request(
                method, f"{self.api_url}/{path}", params=params, json=json, headers=self._headers())
        except httpx.HTTPError as e:
            raise ProcessOutputError(f"YouTube {method} {path} failed: {e}", retryable=True)

        if response.status_code >= 400:
            raise ProcessOutputError(
                self._error_message(response),
                retryable=response.status_code >= 500 or response.status_code == 429,
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            result = response.json()
        except ValueError as e:
            raise ProcessOutputError(f"YouTube {method} {path} returned an unreadable body: {e}")
        if not isinstance(result, dict):
            raise ProcessOutputError(f"YouTube {method} {path} returned an unexpected body")
        return result

    def create_broadcast_snippet(self, broadcast: PlannedBroadcast) -> Dict[str, Any]:
        start = broadcast.start_timestamp
        now = self.clock.now()
        # A start time in the past is rejected by the platform
        if now > start:
            start = now + timedelta(seconds=1)

        return {
            "title": broadcast.name,
            "description": broadcast.description,
            "scheduledStartTime": start.isoformat(),
            "scheduledEndTime": broadcast.end_timestamp.isoformat(),
        }

    @staticmethod
    def convert_privacy_status(privacy_status: PrivacyStatus) -> str:
        if privacy_status == PrivacyStatus.UNLISTED:
            return "unlisted"
        if privacy_status == PrivacyStatus.PRIVATE:
            return "private"
        return "public"

    async def create_broadcast(self, broadcast: PlannedBroadcast) -> Dict[str, Any]:
        body = {
            "kind": "youtube#liveBroadcast",
            "snippet": self.create_broadcast_snippet(broadcast),
            "contentDetails": {
                "monitorStream": {"enableMonitorStream": False},
                "enableAutoStart": True,
            },
            "status": {
                "privacyStatus": self.convert_privacy_status(broadcast.privacy_status),
                "selfDeclaredMadeForKids": False,
            },
        }
        return await self._request(
            "POST", "liveBroadcasts", params={"part": "snippet,contentDetails,status"}, json=body)

    async def add_thumbnail_to_broadcast(self, youtube_broadcast_id: str, broadcast: PlannedBroadcast) -> bool:
        """
        Upload the broadcast's thumbnail in chunks through a resumable upload.

        Returns:
            False when the broadcast has no readable thumbnail file
        """
        thumbnail = broadcast.thumbnail
        if not thumbnail or not os.path.isfile(thumbnail):
            return False

        file_size = os.path.getsize(thumbnail)
        mime_type = mimetypes.guess_type(thumbnail)[0] or "application/octet-stream"

        try:
            response = await self.http_client.post(
                f"{self.upload_url}/thumbnails/set",
                params={"videoId": youtube_broadcast_id, "uploadType": "resumable"},
                headers={
                    **self._headers(),
                    "X-Upload-Content-Type": mime_type,
                    "X-Upload-Content-Length": str(file_size),
                },
            )
            response.raise_for_status()
            session_url = response.headers["Location"]

            offset = 0
            with open(thumbnail, "rb") as handle:
                while True:
                    chunk = handle.read(self.chunk_size)
                    if not chunk:
                        break
                    end = offset + len(chunk) - 1
                    response = await self.http_client.put(
                        session_url,
                        content=chunk,
                        headers={**self._headers(), "Content-Range": f"bytes {offset}-{end}/{file_size}"},
                    )
                    # 308 means the chunk was stored and more are expected
                    if response.status_code == 308:
                        offset = end + 1
                        continue
                    response.raise_for_status()
                    break
        except (httpx.HTTPError, KeyError) as e:
            raise ProcessOutputError(f"Thumbnail upload for {youtube_broadcast_id} failed: {e}")

        logger.info(f"Uploaded thumbnail {thumbnail} for YouTube broadcast {youtube_broadcast_id}")
        return True

    async def end_live_stream(self, external_id: str):
        await self._request(
            "POST",
            "liveBroadcasts/transition",
            params={"broadcastStatus": "complete", "id": external_id, "part": "status"},
        )

    async def remove_live_stream(self, event: StreamEvent):
        await self._request("DELETE", "liveBroadcasts", params={"id": event.external_stream_id})

    async def update_live_stream(self, broadcast: PlannedBroadcast, event: StreamEvent):
        external_id = event.external_stream_id
        if not external_id:
            return

        body = {
            "id": external_id,
            "kind": "youtube#liveBroadcast",
            "snippet": self.create_broadcast_snippet(broadcast),
        }
        await self.add_thumbnail_to_broadcast(external_id, broadcast)
        await self._request("PUT", "liveBroadcasts", params={"part": "snippet"}, json=body)

    async def create_stream(self, title: str) -> Dict[str, Any]:
        body = {
            "kind": "youtube#liveStream",
            "snippet": {"title": title},
            "cdn": {
                "resolution": "variable",
                "frameRate": "variable",
                "ingestionType": "rtmp",
            },
        }
        return await self._request("POST", "liveStreams", params={"part": "snippet,cdn"}, json=body)

    async def bind(self, youtube_broadcast_id: str, stream_id: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "liveBroadcasts/bind",
            params={"id": youtube_broadcast_id, "part": "id,contentDetails", "streamId": stream_id},
        )

    async def get_youtube_broadcast(self, youtube_id: str) -> Dict[str, Any]:
        result = await self._request(
            "GET", "liveBroadcasts", params={"part": "status,contentDetails", "id": youtube_id})
        items = result.get("items") or []
        if not items:
            raise InvalidExternalReference(youtube_id, f"No broadcast found for YouTube ID: {youtube_id}")
        return items[0]

    async def get_stream_url(self, stream_id: str) -> Optional[str]:
        result = await self._request(
            "GET", "liveStreams", params={"part": "snippet,cdn,status", "id": stream_id})
        items = result.get("items") or []
        if not items:
            return None

        ingestion = (items[0].get("cdn") or {}).get("ingestionInfo") or {}
        address = ingestion.get("ingestionAddress")
        stream_name = ingestion.get("streamName")
        if not address or not stream_name:
            logger.warning(f"YouTube stream {stream_id} has no ingestion address yet")
            return None
        return f"{address}/{stream_name}"

    async def get_streams_list(self) -> List[Dict[str, Any]]:
        result = await self._request(
            "GET", "liveBroadcasts", params={"part": "snippet,contentDetails,status", "broadcastStatus": "all"})
        return result.get("items") or []


def _required_id(resource: Dict[str, Any], kind: str) -> str:
    resource_id = resource.get("id")
    if not resource_id:
        raise ProcessOutputError(f"YouTube {kind} response carries no id")
    return resource_id


class YouTubeEventApi(ChannelEventAPI):
    """Live events on YouTube channels."""

    def __init__(self, store: BroadcastStore, client: Optional[YouTubeClient] = None):
        self.store = store
        self.client = client or YouTubeClient()

    async def create_live_event(self, broadcast: PlannedBroadcast, channel: BaseChannel) -> str:
        await self.client.set_channel(channel)

        youtube_broadcast = await self.client.create_broadcast(broadcast)
        youtube_id = _required_id(youtube_broadcast, "liveBroadcasts")
        await self.client.add_thumbnail_to_broadcast(youtube_id, broadcast)

        stream = await self.client.create_stream(broadcast.name)
        await self.client.bind(youtube_id, _required_id(stream, "liveStreams"))

        await self.store.save_stream_event(StreamEvent(
            broadcast_id=broadcast.broadcast_id,
            channel_id=channel.channel_id,
            external_stream_id=youtube_id,
        ))
        logger.info(f"Created YouTube live event {youtube_id} for broadcast {broadcast.broadcast_id} on {channel}")
        return youtube_id

    async def update_live_event(self, broadcast: PlannedBroadcast, channel: BaseChannel) -> None:
        event = await self.store.get_stream_event(broadcast.broadcast_id, channel.channel_id)
        if event is None:
            await self.create_live_event(broadcast, channel)
            return

        await self.client.set_channel(channel)
        await self.client.update_live_stream(broadcast, event)

    async def remove_live_event(self, broadcast: PlannedBroadcast, channel: BaseChannel) -> None:
        event = await self.store.get_stream_event(broadcast.broadcast_id, channel.channel_id)
        if event is None:
            return

        await self.client.set_channel(channel)
        await self.client.remove_live_stream(event)
        await self.store.remove_stream_event(event)

    async def send_end_signal(self, channel: BaseChannel, external_id: str) -> None:
        await self.client.set_channel(channel)
        await self.client.end_live_stream(external_id)

    async def get_stream_url(self, broadcast: PlannedBroadcast, channel: BaseChannel) -> Optional[str]:
        event = await self.store.get_stream_event(broadcast.broadcast_id, channel.channel_id)
        if event is None:
            return None

        await self.client.set_channel(channel)
        youtube_broadcast = await self.client.get_youtube_broadcast(event.external_stream_id)
        stream_id = youtube_broadcast.get("contentDetails", {}).get("boundStreamId")
        if not stream_id:
            return None
        return await self.client.get_stream_url(stream_id)
