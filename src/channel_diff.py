"""Diffing of a broadcast's output channels between two versions."""

from dataclasses import dataclass, field
from typing import Iterable, List

from models import BaseChannel


@dataclass
class ChannelDiff:
    added: List[BaseChannel] = field(default_factory=list)
    unchanged: List[BaseChannel] = field(default_factory=list)
    removed: List[BaseChannel] = field(default_factory=list)


def diff_channels(previous: Iterable[BaseChannel], new: Iterable[BaseChannel]) -> ChannelDiff:
    """
    Split two channel collections, compared by ``channel_id``.

    ``added`` and ``unchanged`` hold the channel objects of ``new``,
    ``removed`` those of ``previous``. Duplicate ids are reported once.
    """
    previous = list(previous)
    new = list(new)
    previous_ids = {channel.channel_id for channel in previous}
    new_ids = {channel.channel_id for channel in new}

    diff = ChannelDiff()
    seen = set()
    for channel in new:
        if channel.channel_id in seen:
            continue
        seen.add(channel.channel_id)
        if channel.channel_id in previous_ids:
            diff.unchanged.append(channel)
        else:
            diff.added.append(channel)

    seen = set()
    for channel in previous:
        if channel.channel_id in seen or channel.channel_id in new_ids:
            continue
        seen.add(channel.channel_id)
        diff.removed.append(channel)

    return diff
