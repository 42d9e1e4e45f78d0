"""
Channel event APIs.

Channels that support planned events get a live event registered on their
platform; each platform provides a ChannelEventAPI and the stack picks the
one that matches a channel's type.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from models import BaseChannel, PlannedBroadcast

logger = logging.getLogger(__name__)


class ChannelEventAPI(ABC):
    """Remote live event operations for one kind of channel.

    All methods raise ProcessOutputError when the platform call fails.
    """

    @abstractmethod
    async def create_live_event(self, broadcast: PlannedBroadcast, channel: BaseChannel) -> str:
        """Register a live event, returning its external id."""

    @abstractmethod
    async def update_live_event(self, broadcast: PlannedBroadcast, channel: BaseChannel) -> None:
        pass

    @abstractmethod
    async def remove_live_event(self, broadcast: PlannedBroadcast, channel: BaseChannel) -> None:
        pass

    @abstractmethod
    async def send_end_signal(self, channel: BaseChannel, external_id: str) -> None:
        pass

    @abstractmethod
    async def get_stream_url(self, broadcast: PlannedBroadcast, channel: BaseChannel) -> Optional[str]:
        """Ingest URL the transcoder should push to, if the event exists."""


class ChannelApiStack:
    """Lookup of the ChannelEventAPI for a channel, keyed by channel type."""

    def __init__(self):
        self.apis: Dict[str, ChannelEventAPI] = {}

    def register(self, channel_type: str, api: ChannelEventAPI):
        self.apis[channel_type] = api
        logger.info(f"Registered channel API for {channel_type}: {type(api).__name__}")

    def get_api_for_channel(self, channel: BaseChannel) -> Optional[ChannelEventAPI]:
        if not channel.supports_planned_events:
            return None
        return self.apis.get(getattr(channel, "type", ""))
