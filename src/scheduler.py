"""
Broadcast Scheduler

Each tick compares the planned broadcasts with the transcoders found in the
process table: processes whose broadcast is gone, has ended or no longer
targets their channel are stopped, and every open broadcast/channel pair
without a process gets one. The snapshot taken at the start of a tick is
never reused by a later one.
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from broadcast_manager import BroadcastManager
from clock import Clock, system_clock
from exceptions import LiveBroadcastError, SchedulerFatal, StoreError
from models import BaseChannel, EventType, PlannedBroadcast, SchedulerEvent
from process_supervisor import ProcessSupervisor
from running_broadcasts import BROADCAST_ID_TAG, CHANNEL_ID_TAG, RunningBroadcast, RunningBroadcastRegistry
from tick_lock import TickLock

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    started: List[Tuple[int, int]] = field(default_factory=list)
    stopped: List[RunningBroadcast] = field(default_factory=list)
    skipped: List[Tuple[int, int]] = field(default_factory=list)

    def as_dict(self) -> Dict:
        return {
            "started": [{"broadcast_id": b, "channel_id": c} for b, c in self.started],
            "stopped": [
                {"broadcast_id": r.broadcast_id, "channel_id": r.channel_id, "process_id": r.process_id}
                for r in self.stopped
            ],
            "skipped": [{"broadcast_id": b, "channel_id": c} for b, c in self.skipped],
        }


def build_input_args(broadcast: PlannedBroadcast) -> str:
    return f"-re -i {shlex.quote(broadcast.input_url)}"


def build_output_args(output_url: str) -> str:
    return f"-c:v libx264 -preset veryfast -c:a aac -f flv {shlex.quote(output_url)}"


class Scheduler:
    def __init__(
        self,
        manager: BroadcastManager,
        supervisor: ProcessSupervisor,
        registry: Optional[RunningBroadcastRegistry] = None,
        clock: Optional[Clock] = None,
        tick_lock: Optional[TickLock] = None,
    ):
        self.manager = manager
        self.supervisor = supervisor
        self.registry = registry or RunningBroadcastRegistry()
        self.clock = clock or system_clock
        self.tick_lock = tick_lock or TickLock()
        self.event_manager = None
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None

    def set_event_manager(self, event_manager):
        """Set the event manager for emitting events"""
        self.event_manager = event_manager

    async def _emit_event(self, event_type: EventType, broadcast_id: int, data: dict):
        if self.event_manager:
            await self.event_manager.emit_event(
                SchedulerEvent(event_type=event_type, broadcast_id=broadcast_id, data=data))

    async def apply_schedule(self) -> Optional[TickResult]:
        """
        Run one tick.

        Returns:
            The tick summary, or None when another tick held the lock

        Raises:
            SchedulerFatal: the planned broadcasts or the process table could not be read
        """
        async with self.tick_lock.acquire() as acquired:
            if not acquired:
                logger.warning("Previous schedule tick still running, skipping this one")
                return None

            try:
                return await self._tick()
            except SchedulerFatal as e:
                logger.error(f"Schedule tick aborted: {e}")
                await self._emit_event(EventType.TICK_FAILED, 0, {"error": str(e)})
                raise

    async def _tick(self) -> TickResult:
        now = self.clock.now()
        try:
            planned = await self.manager.get_planned_broadcasts(now)
        except StoreError as e:
            raise SchedulerFatal(f"Cannot load planned broadcasts: {e.message}")

        running = await self.get_running_broadcasts()
        logger.debug(f"Tick at {now.isoformat()}: {len(planned)} planned, {len(running)} running")

        result = TickResult()
        await self.stop_expired_broadcasts(running, planned, now, result)
        await self.start_planned_broadcasts(running, planned, now, result)

        if result.started or result.stopped:
            logger.info(f"Tick done: {len(result.started)} started, {len(result.stopped)} stopped")
        return result

    async def get_running_broadcasts(self, valid_only: bool = True) -> List[RunningBroadcast]:
        lines = await self.supervisor.list_running()
        running = self.registry.snapshot(lines)
        if not valid_only:
            return running
        return [entry for entry in running if entry.is_valid(self.supervisor.environment)]

    async def stop_expired_broadcasts(
        self,
        running: List[RunningBroadcast],
        planned: List[PlannedBroadcast],
        now: datetime,
        result: TickResult,
    ):
        planned_by_id = {broadcast.broadcast_id: broadcast for broadcast in planned}

        for entry in running:
            broadcast = planned_by_id.get(entry.broadcast_id)
            if broadcast is None:
                reason = "no longer planned"
            elif broadcast.has_ended(now):
                reason = "ended"
            elif not broadcast.has_channel(entry.channel_id):
                reason = "channel removed"
            else:
                continue

            logger.info(
                f"Stopping broadcast {entry.broadcast_id} on channel {entry.channel_id} "
                f"(pid {entry.process_id}): {reason}")
            try:
                await self.supervisor.stop(entry.process_id)
            except OSError as e:
                logger.error(f"Could not stop pid {entry.process_id}: {e}")
                continue

            result.stopped.append(entry)
            await self._emit_event(EventType.BROADCAST_STOPPED, entry.broadcast_id, {
                "channel_id": entry.channel_id,
                "process_id": entry.process_id,
                "reason": reason,
            })
            await self._send_end_signal(entry)

    async def _send_end_signal(self, entry: RunningBroadcast):
        try:
            event = await self.manager.get_stream_event(entry.broadcast_id, entry.channel_id)
            if event is None or event.end_signal_sent:
                return
            await self.manager.send_end_signal(event)
        except LiveBroadcastError as e:
            logger.error(
                f"Could not send end signal for broadcast {entry.broadcast_id} "
                f"on channel {entry.channel_id}: {e}")

    async def start_planned_broadcasts(
        self,
        running: List[RunningBroadcast],
        planned: List[PlannedBroadcast],
        now: datetime,
        result: TickResult,
    ):
        for broadcast in planned:
            if not broadcast.is_window_open(now):
                continue

            for channel in broadcast.output_channels:
                if any(entry.is_broadcasting(broadcast, channel) for entry in running):
                    continue

                output_url = await self.resolve_output_url(broadcast, channel)
                if not output_url:
                    logger.warning(
                        f"No stream URL for broadcast {broadcast.broadcast_id} on {channel}, skipping")
                    result.skipped.append((broadcast.broadcast_id, channel.channel_id))
                    continue

                tags = {
                    BROADCAST_ID_TAG: broadcast.broadcast_id,
                    CHANNEL_ID_TAG: channel.channel_id,
                }
                try:
                    await self.supervisor.start(build_input_args(broadcast), build_output_args(output_url), tags)
                except OSError as e:
                    logger.error(f"Could not start broadcast {broadcast.broadcast_id} on {channel}: {e}")
                    result.skipped.append((broadcast.broadcast_id, channel.channel_id))
                    continue

                result.started.append((broadcast.broadcast_id, channel.channel_id))
                await self._emit_event(EventType.BROADCAST_STARTED, broadcast.broadcast_id, {
                    "channel_id": channel.channel_id,
                    "name": broadcast.name,
                })

    async def resolve_output_url(self, broadcast: PlannedBroadcast, channel: BaseChannel) -> Optional[str]:
        """Ingest URL for a channel: from the platform for planned channels,
        from the channel itself otherwise."""
        if not channel.supports_planned_events:
            return getattr(channel, "stream_url", None)

        api = self.manager.api_stack.get_api_for_channel(channel)
        if api is None:
            return None

        try:
            return await api.get_stream_url(broadcast, channel)
        except LiveBroadcastError as e:
            logger.error(f"Could not resolve stream URL for broadcast {broadcast.broadcast_id} on {channel}: {e}")
            return None

    async def start(self, interval: float):
        """Run apply_schedule every ``interval`` seconds in the background."""
        if self._loop_task and not self._loop_task.done():
            logger.warning("Scheduler loop already running")
            return

        self._running = True
        self._loop_task = asyncio.create_task(self._periodic_schedule(interval))
        logger.info(f"Scheduler loop started (every {interval}s)")

    async def stop(self):
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        logger.info("Scheduler loop stopped")

    async def _periodic_schedule(self, interval: float):
        """Periodic schedule ticks"""
        while self._running:
            try:
                await self.apply_schedule()
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            except SchedulerFatal:
                # Already logged; the next tick tries again
                await asyncio.sleep(interval)
            except Exception as e:
                logger.error(f"Error in periodic schedule: {e}")
                await asyncio.sleep(interval)
