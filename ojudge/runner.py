import asyncio
import contextlib
import logging
import math
import os
import signal
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from ojudge.config import TIME_LIMIT_MARGIN

logger = logging.getLogger(__name__)

# Grandchildren may keep our pipes open after the process itself is gone
STREAM_DRAIN_TIMEOUT = 1.0  # seconds
EXIT_POLL_INTERVAL = 0.01  # seconds


def kill_process_group(process: asyncio.subprocess.Process):
    """SIGKILL the session the process leads, descendants included."""
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGKILL)


@dataclass
class RunResult:
    exit_status: Optional[int]
    elapsed_ms: float
    timed_out: bool
    stdout: bytes = b""
    stderr: str = ""

    @property
    def spawn_failed(self) -> bool:
        return self.exit_status is None and not self.timed_out


class Deadline:
    """Kill timer for a single process, armed on spawn and cancelled on exit."""

    def __init__(self, time_limit_ms: float, margin: float = TIME_LIMIT_MARGIN):
        self.time_limit_ms = time_limit_ms
        # round() first: 1000 * 1.1 is 1100.0000000000002 in binary floating point
        self.kill_after_ms = max(1, math.ceil(round(time_limit_ms * margin, 6)))
        self.fired = False
        self._handle: Optional[asyncio.TimerHandle] = None

    def arm(self, process: asyncio.subprocess.Process):
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.kill_after_ms / 1000.0, self._fire, process)

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, process: asyncio.subprocess.Process):
        self._handle = None
        if process.returncode is not None:
            return
        self.fired = True
        kill_process_group(process)


async def _feed_stdin(stdin: asyncio.StreamWriter, data: bytes):
    # The process may exit without reading its input
    try:
        if data:
            stdin.write(data)
            await stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        pass
    finally:
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            stdin.close()


async def _drain(task: "asyncio.Future[bytes]") -> bytes:
    try:
        return await asyncio.wait_for(task, timeout=STREAM_DRAIN_TIMEOUT)
    except (asyncio.TimeoutError, OSError):
        return b""


async def _wait_for_exit(process: asyncio.subprocess.Process, waiter: "asyncio.Future[int]"):
    # wait() also waits for the pipes to close, and descendants may hold them open
    while process.returncode is None:
        await asyncio.wait({waiter}, timeout=EXIT_POLL_INTERVAL)


async def run_process(command: str, args: Sequence[str] = (), input_bytes: bytes = b"",
                      time_limit_ms: float = 1000, cwd: Optional[str] = None) -> RunResult:
    """Run one process to completion or until its deadline fires.

    Always returns a RunResult. A process that could not be started has no
    exit status and carries the spawn error in ``stderr``. ``timed_out`` is set
    when the kill timer fired or when the measured wall time exceeds the
    nominal limit.
    """
    start_time = time.perf_counter()
    try:
        process = await asyncio.create_subprocess_exec(
            command, *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            start_new_session=True
        )
    except (OSError, ValueError) as e:
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.warning("Failed to start %s: %s", command, e)
        return RunResult(exit_status=None, elapsed_ms=elapsed_ms, timed_out=False, stderr=str(e))

    deadline = Deadline(time_limit_ms)
    deadline.arm(process)
    stdout_task = asyncio.ensure_future(process.stdout.read())
    stderr_task = asyncio.ensure_future(process.stderr.read())
    feed_task = asyncio.ensure_future(_feed_stdin(process.stdin, input_bytes))
    waiter = asyncio.ensure_future(process.wait())
    try:
        await _wait_for_exit(process, waiter)
        elapsed_ms = (time.perf_counter() - start_time) * 1000
    except BaseException:
        waiter.cancel()
        raise
    finally:
        deadline.cancel()
        # Nothing the submission started may outlive the run
        kill_process_group(process)
        feed_task.cancel()

    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(waiter, timeout=STREAM_DRAIN_TIMEOUT)
    stdout = await _drain(stdout_task)
    stderr = await _drain(stderr_task)
    with contextlib.suppress(asyncio.CancelledError, BrokenPipeError, ConnectionResetError):
        await feed_task

    timed_out = deadline.fired or elapsed_ms > time_limit_ms
    return RunResult(
        exit_status=process.returncode,
        elapsed_ms=elapsed_ms,
        timed_out=timed_out,
        stdout=stdout,
        stderr=stderr.decode("utf-8", errors="replace"),
    )
