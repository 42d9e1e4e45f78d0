"""
Transcoder process supervision.

Processes are launched detached through the shell so they outlive the
scheduler (which may be a short lived cron invocation). No handle is kept:
the process table, queried by executable name, is the only record of what is
running.
"""

import asyncio
import logging
import os
import signal
from typing import Any, Dict, List, Mapping, Optional

from config import settings
from clock import Clock, system_clock
from exceptions import SchedulerFatal
from process_line import ProcessLineCodec, process_line_codec

logger = logging.getLogger(__name__)

ENV_TAG = "env"


class ProcessSupervisor:
    """Starts, stops and lists tagged transcoder processes."""

    def __init__(
        self,
        environment: Optional[str] = None,
        executable: Optional[str] = None,
        log_directory: Optional[str] = None,
        codec: Optional[ProcessLineCodec] = None,
        clock: Optional[Clock] = None,
        list_timeout: Optional[float] = None,
        start_timeout: Optional[float] = None,
    ):
        self.environment = environment if environment is not None else settings.APP_ENV
        if not self.environment:
            raise SchedulerFatal("Cannot determine the runtime environment (APP_ENV is empty)")

        self.executable = executable or settings.FFMPEG_BINARY
        self.log_directory = log_directory if log_directory is not None else settings.FFMPEG_LOG_DIRECTORY
        self.log_prefix = settings.FFMPEG_LOG_PREFIX
        self.codec = codec or process_line_codec
        self.clock = clock or system_clock
        self.list_timeout = list_timeout if list_timeout is not None else settings.PROCESS_LIST_TIMEOUT
        self.start_timeout = start_timeout if start_timeout is not None else settings.PROCESS_START_TIMEOUT

    def set_log_directory(self, directory: Optional[str]):
        self.log_directory = directory

    def build_command(self, input_args: str, output_args: str, tags: Mapping[str, Any]) -> str:
        """Command line for a new process; the environment tag is always last."""
        process_tags: Dict[str, Any] = {key: value for key, value in tags.items() if key != ENV_TAG}
        process_tags[ENV_TAG] = self.environment

        log_target = self.codec.log_target(self.log_directory, self.clock.now(), self.log_prefix)
        return self.codec.encode(self.executable, input_args, output_args, process_tags, log_target)

    async def start(self, input_args: str, output_args: str, tags: Mapping[str, Any]) -> None:
        """
        Launch a transcoder in the background.

        The shell returns as soon as the process is forked; there is nothing
        to wait on afterwards.
        """
        command = self.build_command(input_args, output_args, tags)
        logger.info(f"Starting transcoder: {command}")

        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )

        try:
            await asyncio.wait_for(process.wait(), timeout=self.start_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Shell for transcoder did not return within {self.start_timeout}s (pid {process.pid})")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    async def stop(self, pid: int) -> None:
        """Send SIGTERM to a process. A PID that no longer exists is not an error."""
        if pid <= 0:
            logger.warning(f"Refusing to signal invalid pid {pid}")
            return

        try:
            os.kill(pid, signal.SIGTERM)
            logger.info(f"Sent SIGTERM to transcoder pid {pid}")
        except ProcessLookupError:
            logger.debug(f"Transcoder pid {pid} already exited")

    async def list_running(self) -> List[str]:
        """
        Query the process table for running transcoders.

        Returns:
            One ``"<pid> <command line>"`` line per process, in listing order.

        Raises:
            SchedulerFatal: the listing could not be run or did not finish in time
        """
        command = ["ps", "-ww", "-C", os.path.basename(self.executable), "-o", "pid=,args="]

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SchedulerFatal(f"Cannot read the process table: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.list_timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise SchedulerFatal(f"Process listing timed out after {self.list_timeout}s")

        # ps exits with 1 when nothing matched
        if process.returncode not in (0, 1):
            error = (stderr or b"").decode(errors="replace").strip()
            raise SchedulerFatal(f"Process listing failed with code {process.returncode}: {error}")

        lines = (stdout or b"").decode(errors="replace").splitlines()
        return [line.rstrip() for line in lines if line.strip()]
