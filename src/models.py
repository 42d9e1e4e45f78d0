from pydantic import BaseModel, Field, HttpUrl, field_validator, model_validator
from typing import Annotated, ClassVar, List, Literal, Optional, Dict, Any, Union
from enum import Enum
from datetime import datetime, timezone
import uuid


class PrivacyStatus(str, Enum):
    PUBLIC = "public"
    UNLISTED = "unlisted"
    PRIVATE = "private"


class ChannelType(str, Enum):
    YOUTUBE = "youtube"
    RTMP = "rtmp"


class EventType(str, Enum):
    BROADCAST_STARTED = "broadcast_started"
    BROADCAST_STOPPED = "broadcast_stopped"
    LIVE_EVENT_CREATED = "live_event_created"
    LIVE_EVENT_UPDATED = "live_event_updated"
    LIVE_EVENT_REMOVED = "live_event_removed"
    END_SIGNAL_SENT = "end_signal_sent"
    TICK_FAILED = "tick_failed"


class BaseChannel(BaseModel):
    channel_id: int = 0
    channel_name: str
    # Channels that can host a scheduled live event on the remote platform
    supports_planned_events: ClassVar[bool] = False

    def __str__(self) -> str:
        return self.channel_name


class YouTubeChannel(BaseChannel):
    supports_planned_events: ClassVar[bool] = True

    type: Literal["youtube"] = ChannelType.YOUTUBE.value
    refresh_token: str

    def __str__(self) -> str:
        return f"Youtube: {self.channel_name}"


class RtmpChannel(BaseChannel):
    type: Literal["rtmp"] = ChannelType.RTMP.value
    stream_server: str
    stream_key: str

    @property
    def stream_url(self) -> str:
        return f"{self.stream_server.rstrip('/')}/{self.stream_key}"

    def __str__(self) -> str:
        return f"RTMP: {self.channel_name}"


Channel = Annotated[Union[YouTubeChannel, RtmpChannel], Field(discriminator="type")]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PlannedBroadcast(BaseModel):
    broadcast_id: int = 0
    name: str
    description: str = ""
    start_timestamp: datetime
    end_timestamp: datetime
    privacy_status: PrivacyStatus = PrivacyStatus.PUBLIC
    # Path to an image uploaded as the live event thumbnail
    thumbnail: Optional[str] = None
    # Source media handed to the transcoder
    input_url: str
    output_channels: List[Channel] = Field(default_factory=list)

    @field_validator("start_timestamp", "end_timestamp")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @model_validator(mode="after")
    def check_window(self):
        if self.end_timestamp <= self.start_timestamp:
            raise ValueError("end_timestamp must be after start_timestamp")
        return self

    def is_window_open(self, now: datetime) -> bool:
        """True while the broadcast should be streaming."""
        return self.start_timestamp <= now < self.end_timestamp

    def has_ended(self, now: datetime) -> bool:
        return now >= self.end_timestamp

    def has_channel(self, channel_id: int) -> bool:
        return any(channel.channel_id == channel_id for channel in self.output_channels)


class StreamEvent(BaseModel):
    """A live event registered on a remote platform for one broadcast/channel pair."""
    broadcast_id: int
    channel_id: int
    external_stream_id: str
    end_signal_sent: bool = False


class SchedulerEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    broadcast_id: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = Field(default_factory=dict)


class WebhookConfig(BaseModel):
    url: HttpUrl
    events: List[EventType] = Field(default_factory=lambda: list(EventType))
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: int = Field(default=10, ge=1)
    retry_attempts: int = Field(default=3, ge=0)
    # Empty means every broadcast
    broadcast_ids: List[int] = Field(default_factory=list)

    def accepts(self, event: SchedulerEvent) -> bool:
        if event.event_type not in self.events:
            return False
        # Tick failures concern every broadcast
        if not self.broadcast_ids or event.event_type == EventType.TICK_FAILED:
            return True
        return event.broadcast_id in self.broadcast_ids


class HealthCheck(BaseModel):
    status: str
    version: str
    environment: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    dependencies: Dict[str, str] = Field(default_factory=dict)
