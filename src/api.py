from fastapi import FastAPI, HTTPException, Query, Depends, Header
from contextlib import asynccontextmanager
import logging
from typing import Optional, List
from pydantic import BaseModel, ValidationError
from datetime import datetime

import redis.asyncio as redis

from config import settings, VERSION
from redis_config import get_redis_config, should_use_redis
from models import (
    Channel, ChannelType, EventType, HealthCheck, PlannedBroadcast, PrivacyStatus,
    WebhookConfig,
)
from events import EventManager, build_payload
from exceptions import LiveBroadcastError, SchedulerFatal, StoreError
from store import InMemoryBroadcastStore, RedisBroadcastStore
from channel_api import ChannelApiStack
from youtube import YouTubeEventApi
from broadcast_manager import BroadcastManager
from process_supervisor import ProcessSupervisor
from tick_lock import TickLock
from scheduler import Scheduler

logger = logging.getLogger(__name__)


class BroadcastRequest(BaseModel):
    name: str
    description: str = ""
    start_timestamp: datetime
    end_timestamp: datetime
    privacy_status: PrivacyStatus = PrivacyStatus.PUBLIC
    thumbnail: Optional[str] = None
    input_url: str
    channel_ids: List[int] = []


# Global components
redis_config = get_redis_config()
redis_client = redis.from_url(redis_config["redis_url"], decode_responses=True) if should_use_redis() else None

if redis_client is not None:
    store = RedisBroadcastStore(redis_config["redis_url"], client=redis_client)
else:
    store = InMemoryBroadcastStore()

api_stack = ChannelApiStack()
youtube_api = YouTubeEventApi(store)
api_stack.register(ChannelType.YOUTUBE.value, youtube_api)

broadcast_manager = BroadcastManager(store, api_stack)
supervisor = ProcessSupervisor()
tick_lock = TickLock(redis_client, timeout=redis_config["tick_lock_timeout"])
scheduler = Scheduler(broadcast_manager, supervisor, tick_lock=tick_lock)
event_manager = EventManager(environment=supervisor.environment)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("livebroadcaster starting up...")
    await event_manager.start()

    scheduler.set_event_manager(event_manager)
    broadcast_manager.set_event_manager(event_manager)

    if isinstance(store, RedisBroadcastStore):
        await store.connect()

    if settings.EVENTLOOP_ENABLED:
        await scheduler.start(settings.EVENTLOOP_TIMER)

    yield

    logger.info("livebroadcaster shutting down...")
    await scheduler.stop()
    await event_manager.stop()
    await youtube_api.client.close()
    if isinstance(store, RedisBroadcastStore):
        await store.close()


app = FastAPI(
    title="livebroadcaster",
    description="Schedules live broadcasts and supervises their transcoder processes",
    version=VERSION,
    lifespan=lifespan,
    docs_url=settings.DOCS_URL,
    redoc_url=settings.REDOC_URL,
    openapi_url=settings.OPENAPI_URL,
    root_path=settings.ROOT_PATH,
)


async def verify_token(
    x_api_token: Optional[str] = Header(None, alias="X-API-Token"),
    api_token: Optional[str] = Query(
        None, description="API token (alternative to X-API-Token header)")
):
    """
    Verify API token if API_TOKEN is configured.
    Token can be provided via:
    - X-API-Token header (recommended)
    - api_token query parameter

    If API_TOKEN is not set in environment, authentication is disabled.
    """
    if not settings.API_TOKEN:
        return True

    provided_token = x_api_token or api_token

    if not provided_token:
        raise HTTPException(
            status_code=401,
            detail="API token required. Provide token via X-API-Token header or api_token query parameter.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if provided_token != settings.API_TOKEN:
        raise HTTPException(
            status_code=403,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


@app.get("/", dependencies=[Depends(verify_token)])
async def root():
    return {
        "name": "livebroadcaster",
        "version": VERSION,
        "environment": supervisor.environment,
        "eventloop_enabled": settings.EVENTLOOP_ENABLED,
    }


@app.get("/health", dependencies=[Depends(verify_token)])
async def health_check():
    """Health check endpoint"""
    dependencies = {
        "store": "redis" if isinstance(store, RedisBroadcastStore) else "memory",
        "tick_lock": "locked" if tick_lock.locked else "free",
        "event_manager": "running" if event_manager.is_running else "stopped",
    }
    return HealthCheck(
        status="healthy",
        version=VERSION,
        environment=supervisor.environment,
        dependencies=dependencies,
    )


# Channel Endpoints


@app.post("/channels", dependencies=[Depends(verify_token)])
async def create_channel(channel: Channel):
    try:
        saved = await store.save_channel(channel)
    except StoreError as e:
        raise HTTPException(status_code=500, detail=e.message)
    logger.info(f"Created channel {saved.channel_id}: {saved}")
    return saved


@app.get("/channels", dependencies=[Depends(verify_token)])
async def list_channels():
    return {"channels": await store.list_channels()}


@app.get("/channels/{channel_id}", dependencies=[Depends(verify_token)])
async def get_channel(channel_id: int):
    channel = await store.get_channel(channel_id)
    if channel is None:
        raise HTTPException(status_code=404, detail="Channel not found")
    return channel


@app.put("/channels/{channel_id}", dependencies=[Depends(verify_token)])
async def update_channel(channel_id: int, channel: Channel):
    if await store.get_channel(channel_id) is None:
        raise HTTPException(status_code=404, detail="Channel not found")

    channel.channel_id = channel_id
    return await store.save_channel(channel)


@app.delete("/channels/{channel_id}", dependencies=[Depends(verify_token)])
async def delete_channel(channel_id: int):
    if not await store.delete_channel(channel_id):
        raise HTTPException(status_code=404, detail="Channel not found")
    return {"message": f"Channel {channel_id} deleted"}


# Broadcast Endpoints


async def _build_broadcast(request: BroadcastRequest, broadcast_id: int = 0) -> PlannedBroadcast:
    channels = []
    for channel_id in request.channel_ids:
        channel = await store.get_channel(channel_id)
        if channel is None:
            raise HTTPException(status_code=404, detail=f"Channel {channel_id} not found")
        channels.append(channel)

    try:
        return PlannedBroadcast(
            broadcast_id=broadcast_id,
            name=request.name,
            description=request.description,
            start_timestamp=request.start_timestamp,
            end_timestamp=request.end_timestamp,
            privacy_status=request.privacy_status,
            thumbnail=request.thumbnail,
            input_url=request.input_url,
            output_channels=channels,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@app.post("/broadcasts", dependencies=[Depends(verify_token)])
async def create_broadcast(request: BroadcastRequest):
    """Plan a broadcast and register its live events"""
    broadcast = await _build_broadcast(request)
    broadcast = await store.save_broadcast(broadcast)
    await broadcast_manager.on_create(broadcast)
    logger.info(f"Planned broadcast {broadcast.broadcast_id}: {broadcast.name}")
    return broadcast


@app.get("/broadcasts", dependencies=[Depends(verify_token)])
async def list_broadcasts(planned_only: bool = Query(False, description="Only broadcasts that have not ended")):
    if planned_only:
        broadcasts = await broadcast_manager.get_planned_broadcasts(scheduler.clock.now())
    else:
        broadcasts = await store.list_broadcasts()
    return {"broadcasts": broadcasts}


@app.get("/broadcasts/running", dependencies=[Depends(verify_token)])
async def list_running_broadcasts():
    """Transcoders found in the process table, including other environments"""
    try:
        running = await scheduler.get_running_broadcasts(valid_only=False)
    except SchedulerFatal as e:
        raise HTTPException(status_code=503, detail=e.message)

    return {
        "environment": supervisor.environment,
        "running": [
            {
                "broadcast_id": entry.broadcast_id,
                "channel_id": entry.channel_id,
                "process_id": entry.process_id,
                "environment": entry.environment,
                "valid": entry.is_valid(supervisor.environment),
            }
            for entry in running
        ],
    }


@app.get("/broadcasts/{broadcast_id}", dependencies=[Depends(verify_token)])
async def get_broadcast(broadcast_id: int):
    broadcast = await broadcast_manager.get_broadcast_by_id(broadcast_id)
    if broadcast is None:
        raise HTTPException(status_code=404, detail="Broadcast not found")
    return {
        "broadcast": broadcast,
        "stream_events": await store.list_stream_events(broadcast_id),
    }


@app.put("/broadcasts/{broadcast_id}", dependencies=[Depends(verify_token)])
async def update_broadcast(broadcast_id: int, request: BroadcastRequest):
    """Change a broadcast; live events follow its channel list"""
    if await broadcast_manager.get_broadcast_by_id(broadcast_id) is None:
        raise HTTPException(status_code=404, detail="Broadcast not found")

    broadcast = await _build_broadcast(request, broadcast_id)
    await broadcast_manager.on_update(broadcast)
    return await store.save_broadcast(broadcast)


@app.delete("/broadcasts/{broadcast_id}", dependencies=[Depends(verify_token)])
async def delete_broadcast(broadcast_id: int):
    broadcast = await broadcast_manager.get_broadcast_by_id(broadcast_id)
    if broadcast is None:
        raise HTTPException(status_code=404, detail="Broadcast not found")

    await broadcast_manager.on_delete(broadcast)
    await store.delete_broadcast(broadcast_id)
    return {"message": f"Broadcast {broadcast_id} deleted"}


@app.post("/broadcasts/{broadcast_id}/end-signal", dependencies=[Depends(verify_token)])
async def send_end_signal(broadcast_id: int, channel_id: int = Query(..., description="Channel to signal")):
    event = await broadcast_manager.get_stream_event(broadcast_id, channel_id)
    if event is None:
        raise HTTPException(status_code=404, detail="No live event for this broadcast and channel")
    if event.end_signal_sent:
        return {"message": "End signal already sent", "external_stream_id": event.external_stream_id}

    try:
        await broadcast_manager.send_end_signal(event)
    except LiveBroadcastError as e:
        logger.error(f"Error sending end signal for broadcast {broadcast_id}: {e}")
        raise HTTPException(status_code=502, detail=e.message)

    return {"message": "End signal sent", "external_stream_id": event.external_stream_id}


# Scheduler Endpoints


@app.post("/schedule/apply", dependencies=[Depends(verify_token)])
async def apply_schedule():
    """Run one scheduler tick now"""
    try:
        result = await scheduler.apply_schedule()
    except SchedulerFatal as e:
        raise HTTPException(status_code=500, detail=e.message)

    if result is None:
        raise HTTPException(status_code=409, detail="A schedule tick is already running")
    return result.as_dict()


# Webhook Management Endpoints


@app.post("/webhooks", dependencies=[Depends(verify_token)])
async def add_webhook(webhook: WebhookConfig):
    """Add a new webhook configuration"""
    event_manager.add_webhook(webhook)
    return {
        "message": "Webhook added successfully",
        "webhook_url": str(webhook.url),
        "events": [event.value for event in webhook.events],
        "broadcast_ids": webhook.broadcast_ids,
    }


@app.get("/webhooks", dependencies=[Depends(verify_token)])
async def list_webhooks():
    """List all configured webhooks"""
    webhooks = [
        {
            "url": str(wh.url),
            "events": [event.value for event in wh.events],
            "timeout": wh.timeout,
            "retry_attempts": wh.retry_attempts,
            "broadcast_ids": wh.broadcast_ids,
        }
        for wh in event_manager.webhooks
    ]
    return {"webhooks": webhooks}


@app.delete("/webhooks", dependencies=[Depends(verify_token)])
async def remove_webhook(webhook_url: str = Query(..., description="Webhook URL to remove")):
    """Remove a webhook configuration"""
    if not event_manager.remove_webhook(webhook_url):
        raise HTTPException(status_code=404, detail="Webhook not found")
    return {"message": f"Webhook {webhook_url} removed successfully"}


@app.post("/webhooks/test", dependencies=[Depends(verify_token)])
async def test_webhook(webhook_url: str = Query(..., description="Webhook URL to test")):
    """Send a test notification to a webhook"""
    webhook = event_manager.get_webhook(webhook_url)
    if webhook is None:
        raise HTTPException(status_code=404, detail="Webhook not found")

    event_id, delivered = await event_manager.send_test(webhook)
    return {
        "message": f"Test event sent to {webhook_url}",
        "event_id": event_id,
        "delivered": delivered,
    }


@app.get("/events", dependencies=[Depends(verify_token)])
async def list_events(
    broadcast_id: Optional[int] = Query(None, description="Only events of this broadcast"),
    event_type: Optional[EventType] = Query(None, description="Only events of this type"),
    limit: int = Query(50, ge=1, le=500),
):
    """Most recent scheduler events, oldest first"""
    events = event_manager.recent_events(broadcast_id=broadcast_id, event_type=event_type, limit=limit)
    return {"events": [build_payload(event, event_manager.environment) for event in events]}
