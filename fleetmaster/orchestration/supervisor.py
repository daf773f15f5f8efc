"""Spawn worker processes, enforce timeouts and relay their output."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from fleetmaster.core.message_bus import MessageBus
from fleetmaster.core.models import ExecutionResult
from fleetmaster.worker import AGENT_MARKER_ENV, AGENT_NAME_ENV, IPC_FD_ENV

logger = logging.getLogger(__name__)

SpawnCallback = Callable[[asyncio.subprocess.Process], None]


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def describe_exit(returncode: int) -> str:
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"Terminated by signal {name}"
    return f"Exited with code {returncode}"


class ProcessSupervisor:
    """Run one worker execution as an isolated child process.

    The child receives its identity through ``AGENT_NAME`` and a write end of
    a pipe through ``FLEET_IPC_FD``. Every JSON object line with a ``topic``
    written there is republished on the bus with the worker as sender.
    """

    def __init__(
        self,
        bus: MessageBus,
        *,
        kill_grace_s: float = 5.0,
        extra_env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._bus = bus
        self.kill_grace_s = kill_grace_s
        self._extra_env: Dict[str, str] = dict(extra_env or {})

    @staticmethod
    def build_command(path: Path) -> List[str]:
        if path.suffix == ".py":
            return [sys.executable, str(path)]
        return [str(path)]

    async def run(
        self,
        name: str,
        path: Path,
        timeout_ms: float,
        on_spawn: Optional[SpawnCallback] = None,
    ) -> ExecutionResult:
        start = time.monotonic()
        read_fd, write_fd = os.pipe()
        env = {
            **os.environ,
            **self._extra_env,
            AGENT_NAME_ENV: name,
            AGENT_MARKER_ENV: "1",
            IPC_FD_ENV: str(write_fd),
        }

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(path),
                cwd=str(path.parent),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                pass_fds=(write_fd,),
            )
        except OSError as exc:
            os.close(read_fd)
            logger.error('Failed to spawn agent "%s": %s', name, exc)
            return ExecutionResult(name=name, success=False, duration_ms=_elapsed_ms(start), error=str(exc))
        finally:
            os.close(write_fd)

        if on_spawn is not None:
            on_spawn(process)

        pumps = [
            asyncio.create_task(self._pump_output(name, process.stdout, logging.DEBUG, "")),
            asyncio.create_task(self._pump_output(name, process.stderr, logging.WARNING, "STDERR: ")),
            asyncio.create_task(self._pump_events(name, read_fd)),
        ]

        timed_out = False
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            timed_out = True
            logger.error('Agent "%s" timed out after %sms', name, timeout_ms)
            await self.terminate(process, self.kill_grace_s)
        finally:
            await self._drain(pumps)

        duration_ms = _elapsed_ms(start)
        returncode = process.returncode
        if timed_out:
            return ExecutionResult(
                name=name,
                success=False,
                duration_ms=duration_ms,
                exit_code=returncode,
                timed_out=True,
                error="Timeout",
            )
        if returncode == 0:
            return ExecutionResult(name=name, success=True, duration_ms=duration_ms, exit_code=0)
        return ExecutionResult(
            name=name,
            success=False,
            duration_ms=duration_ms,
            exit_code=returncode if returncode >= 0 else None,
            signal=-returncode if returncode < 0 else None,
            error=describe_exit(returncode),
        )

    @staticmethod
    async def terminate(process: asyncio.subprocess.Process, grace_s: float) -> bool:
        """SIGTERM, then SIGKILL if the process outlives ``grace_s``."""
        if process.returncode is not None:
            return False
        try:
            process.terminate()
        except ProcessLookupError:
            return False
        try:
            await asyncio.wait_for(process.wait(), timeout=grace_s)
        except asyncio.TimeoutError:
            logger.warning("Process %s ignored SIGTERM, sending SIGKILL", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        return True

    async def _drain(self, pumps: List[asyncio.Task]) -> None:
        # A grandchild holding the pipes open must not stall the drain loop.
        _, pending = await asyncio.wait(pumps, timeout=self.kill_grace_s)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)

    @staticmethod
    async def _pump_output(
        name: str,
        stream: Optional[asyncio.StreamReader],
        level: int,
        prefix: str,
    ) -> None:
        if stream is None:
            return
        async for raw in stream:
            line = raw.decode(errors="replace").rstrip()
            if line:
                logger.log(level, "[%s] %s%s", name, prefix, line)

    async def _pump_events(self, name: str, fd: int) -> None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        pipe = os.fdopen(fd, "rb", buffering=0)
        try:
            transport, _ = await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader), pipe
            )
        except Exception:
            pipe.close()
            raise
        try:
            async for raw in reader:
                self._relay(name, raw)
        finally:
            transport.close()

    def _relay(self, name: str, raw: bytes) -> None:
        text = raw.decode(errors="replace").strip()
        if not text:
            return
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("[%s] ignoring non-JSON event line: %s", name, text)
            return
        if isinstance(message, dict) and message.get("topic"):
            self._bus.publish(name, str(message["topic"]), message.get("payload"))
