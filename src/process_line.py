"""
Process Line Codec

A transcoder started by the scheduler carries its identity in its own command
line as ``-metadata key=value`` tags. After a restart of the scheduler the
process table is the only record of what is running, so every lookup here is
a total function over the raw ``"<pid> <command line>"`` text: missing or
malformed data yields ``None`` (or ``0`` for the PID), never an exception.
"""

import re
import shlex
import uuid
import logging
from datetime import datetime
from typing import Dict, Mapping, Optional, Any

logger = logging.getLogger(__name__)

DEV_NULL = "/dev/null"

_LEADING_PID = re.compile(r"^\s*(\d+)")
_ANY_TAG = re.compile(r"-metadata (\S+?)=(\S*)")


def _tag_pattern(tag_name: str) -> "re.Pattern[str]":
    return re.compile(r"-metadata " + re.escape(tag_name) + r"=(\S*)")


class ProcessLineCodec:
    """Formats and parses identity-bearing transcoder command lines."""

    def encode(
        self,
        executable: str,
        input_args: str,
        output_args: str,
        tags: Mapping[str, Any],
        log_target: str = DEV_NULL,
    ) -> str:
        """
        Build the shell line that launches a detached transcoder.

        Tags are written in the iteration order of ``tags``. Tag values must
        not contain whitespace; the log target is shell quoted.

        Returns:
            ``"<exe> <input> <output> -metadata k=v ... >> <log> 2>&1 &"``
        """
        metadata = "".join(f" -metadata {key}={value}" for key, value in tags.items())
        return f"{executable} {input_args} {output_args}{metadata} >> {shlex.quote(log_target)} 2>&1 &"

    def log_target(self, directory: Optional[str], now: datetime, prefix: str = "livebroadcaster") -> str:
        """Where transcoder output goes: /dev/null or a unique log file."""
        if not directory:
            return DEV_NULL

        suffix = uuid.uuid4().hex[:13]
        return f"{directory.rstrip('/')}/{prefix}-ffmpeg-{now.strftime('%Y-%m-%d_%H%M')}-{suffix}.log"

    def extract_string_tag(self, command_line: str, tag_name: str) -> Optional[str]:
        """
        Value of the first ``-metadata <tag_name>=`` in the line.

        An explicit empty value (``env=``) is returned as ``""``; a missing
        tag is ``None``.
        """
        if not command_line:
            return None

        match = _tag_pattern(tag_name).search(command_line)
        if not match:
            return None
        return match.group(1)

    def extract_int_tag(self, command_line: str, tag_name: str) -> Optional[int]:
        """Integer value of a tag, or None when missing, empty or non-numeric."""
        value = self.extract_string_tag(command_line, tag_name)
        if not value or not value.isdecimal():
            return None
        return int(value)

    def extract_leading_pid(self, command_line: str) -> int:
        """PID at the start of a process listing line; 0 when there is none."""
        if not command_line:
            return 0

        match = _LEADING_PID.match(command_line)
        if not match:
            return 0
        return int(match.group(1))

    def decode_tags(self, command_line: str) -> Dict[str, str]:
        """All tags in order of appearance; the first occurrence of a key wins."""
        tags: Dict[str, str] = {}
        for key, value in _ANY_TAG.findall(command_line or ""):
            tags.setdefault(key, value)
        return tags


# Global codec instance
process_line_codec = ProcessLineCodec()
