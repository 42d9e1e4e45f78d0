"""
Running broadcast registry.

Rebuilt from the process table on every tick and thrown away afterwards.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from models import BaseChannel, PlannedBroadcast
from process_line import ProcessLineCodec, process_line_codec

logger = logging.getLogger(__name__)

BROADCAST_ID_TAG = "broadcast_id"
CHANNEL_ID_TAG = "channel_id"
ENV_TAG = "env"


@dataclass(frozen=True)
class RunningBroadcast:
    broadcast_id: int
    process_id: int
    channel_id: int
    environment: str

    def is_broadcasting(self, broadcast: PlannedBroadcast, channel: BaseChannel) -> bool:
        return self.broadcast_id == broadcast.broadcast_id and self.channel_id == channel.channel_id

    def is_valid(self, environment: str) -> bool:
        """Only processes of our own environment with complete identity may be acted on."""
        return (
            environment == self.environment
            and self.process_id != 0
            and self.broadcast_id != 0
            and self.channel_id != 0
        )


class RunningBroadcastRegistry:
    def __init__(self, codec: Optional[ProcessLineCodec] = None):
        self.codec = codec or process_line_codec

    def parse(self, line: str) -> Optional[RunningBroadcast]:
        pid = self.codec.extract_leading_pid(line)
        broadcast_id = self.codec.extract_int_tag(line, BROADCAST_ID_TAG)
        channel_id = self.codec.extract_int_tag(line, CHANNEL_ID_TAG)
        environment = self.codec.extract_string_tag(line, ENV_TAG)

        if pid == 0 or not broadcast_id or not channel_id or environment is None:
            return None

        return RunningBroadcast(
            broadcast_id=broadcast_id,
            process_id=pid,
            channel_id=channel_id,
            environment=environment,
        )

    def snapshot(self, raw_process_lines: Iterable[str]) -> List[RunningBroadcast]:
        """
        Turn process listing lines into running broadcasts.

        Lines without a PID, a positive broadcast/channel id or an ``env`` tag
        are left out. Entries of other environments are kept; callers filter
        with :meth:`RunningBroadcast.is_valid`.
        """
        running = []
        for line in raw_process_lines:
            entry = self.parse(line)
            if entry is None:
                logger.debug(f"Ignoring untagged process line: {line}")
                continue
            running.append(entry)
        return running
