"""
Persistent actuator process manager.

One WorkerProcessManager owns one long-lived helper process (keyboard, mouse
or mute) and a FIFO command queue. A single pump task per manager writes one
command at a time to the worker's stdin and waits for its reply line, so two
commands for the same worker are never in flight together.

Line protocol (both directions are newline-terminated UTF-8):
    worker -> host   READY                      once, after initialization
    host -> worker   <seq> <command>
    worker -> host   <seq> <token>              e.g. "17 OK", "18 ERR"
    host -> worker   EXIT                       on shutdown
Replies tagged with any other sequence number are stale (a command that
already timed out) and are discarded.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional, Sequence

from remote_common import (
    ErrorKind, Result, _task_done,
    log_info, log_debug, log_warning, log_error,
)


class WorkerState(Enum):
    NOT_STARTED = auto()
    STARTING = auto()
    READY = auto()
    CLOSED = auto()


@dataclass
class PendingCommand:
    payload: str
    future: asyncio.Future
    submitted_at: float = field(default_factory=time.time)


def _resolve(future: asyncio.Future, result: Result):
    if not future.done():
        future.set_result(result)


class WorkerProcessManager:
    """Owns one actuator process. The queue belongs to the manager and
    survives process restarts; each spawn is a new generation."""

    def __init__(self, name: str, argv: Sequence[str], success_tokens=("OK",),
                 response_timeout: float = 5.0, ready_timeout: float = 15.0,
                 max_restarts: int = 3, restart_delay: float = 0.5, env=None):
        self.name = name
        self.argv = list(argv)
        self.success_tokens = frozenset(success_tokens)
        self.response_timeout = response_timeout
        self.ready_timeout = ready_timeout
        self.max_restarts = max_restarts
        self.restart_delay = restart_delay
        self.env = env

        self.state = WorkerState.NOT_STARTED
        self.generation = 0
        self._queue: deque[PendingCommand] = deque()
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._ready = asyncio.Event()
        self._seq = 0
        self._failed_starts = 0
        self._stopping = False

    @property
    def tag(self):
        return f"[Worker:{self.name}]"

    @property
    def pending(self) -> int:
        """Commands queued or in flight"""
        return len(self._queue)

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    def is_running(self) -> bool:
        return self._pump_task is not None and not self._pump_task.done()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self):
        """Spawn the worker if nothing is running. Idempotent."""
        if self.is_running():
            return
        self._stopping = False
        self.state = WorkerState.STARTING
        self._pump_task = asyncio.create_task(self._pump(), name=f"worker-{self.name}")
        self._pump_task.add_done_callback(_task_done)

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until the current generation reports READY (False on timeout)."""
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def submit(self, payload: str) -> Result:
        """Queue one command and wait for the worker's answer to it."""
        if "\n" in payload:
            return Result.failure(ErrorKind.ACTUATOR_FAULT, "payload contains a newline")
        cmd = PendingCommand(payload, asyncio.get_running_loop().create_future())
        self._queue.append(cmd)
        self._wakeup.set()
        if not self.is_running():
            # NOT_STARTED or CLOSED: self-heal with a fresh process
            await self.start()
        return await cmd.future

    async def stop(self):
        """Send EXIT, terminate the process and fail everything still queued."""
        self._stopping = True
        pump, self._pump_task = self._pump_task, None
        if pump is not None and not pump.done():
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass

        proc = self._proc
        if proc is not None and proc.returncode is None:
            try:
                proc.stdin.write(b"EXIT\n")
                await proc.stdin.drain()
            except (OSError, RuntimeError) as e:
                log_debug(f"{self.tag} EXIT write failed: {e}")
            await self._terminate(proc, grace=1.0)
        self._clear_process()

        self._fail_all(ErrorKind.STOPPED, "worker stopped")
        self.state = WorkerState.CLOSED
        log_info(f"{self.tag} Stopped")

    # ------------------------------------------------------------------
    # Pump
    # ------------------------------------------------------------------

    async def _pump(self):
        try:
            while not self._stopping:
                if self._proc is None:
                    # Crashed or failed to start with nothing pending: wait for the next submit
                    if self.state == WorkerState.CLOSED and not self._queue:
                        return
                    if not await self._spawn():
                        self._failed_starts += 1
                        if self._failed_starts >= self.max_restarts:
                            log_error(f"{self.tag} Failed to start {self._failed_starts} times, "
                                      f"failing {len(self._queue)} queued command(s)")
                            self._failed_starts = 0
                            self._fail_all(ErrorKind.WORKER_UNAVAILABLE, "worker failed to start")
                            return
                        await asyncio.sleep(self.restart_delay)
                        continue
                    self._failed_starts = 0

                if not self._queue:
                    if await self._wait_for_work():
                        await self._reap("exited while idle")
                    continue

                cmd = self._queue[0]
                if cmd.future.done():
                    # Caller gave up before the command was forwarded
                    self._queue.popleft()
                    continue
                result = await self._execute(cmd)
                if self._queue and self._queue[0] is cmd:
                    self._queue.popleft()
                _resolve(cmd.future, result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_error(f"{self.tag} Pump crashed: {e}", exc_info=e)
            if self._proc is not None:
                await self._terminate(self._proc)
                self._clear_process()
            self.state = WorkerState.CLOSED
            self._fail_all(ErrorKind.WORKER_UNAVAILABLE, str(e))

    async def _wait_for_work(self) -> bool:
        """Wait until a command is queued or the process exits.
        Returns True if the process exited."""
        self._wakeup.clear()
        if self._queue:
            return False
        waiter = asyncio.ensure_future(self._wakeup.wait())
        try:
            await asyncio.wait({waiter, self._exit_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not waiter.done():
                waiter.cancel()
        return self._exit_task.done()

    async def _execute(self, cmd: PendingCommand) -> Result:
        proc = self._proc
        self._seq += 1
        seq = self._seq
        try:
            proc.stdin.write(f"{seq} {cmd.payload}\n".encode("utf-8"))
            await proc.stdin.drain()
        except (OSError, RuntimeError) as e:
            await self._reap(f"stdin write failed: {e}")
            return Result.failure(ErrorKind.WORKER_UNAVAILABLE, "worker exited")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.response_timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                raw = await asyncio.wait_for(proc.stdout.readline(), remaining)
            except asyncio.TimeoutError:
                break
            except ValueError as e:
                # Line longer than the StreamReader limit
                return Result.failure(ErrorKind.ACTUATOR_FAULT, f"unreadable response: {e}")
            if not raw:
                await self._reap("exited mid-command")
                return Result.failure(ErrorKind.WORKER_UNAVAILABLE, "worker exited")

            text = raw.decode("utf-8", errors="replace").strip()
            seq_text, _, token = text.partition(" ")
            if not seq_text.isdigit():
                log_warning(f"{self.tag} Malformed response: {text!r}")
                return Result.failure(ErrorKind.ACTUATOR_FAULT, f"malformed response: {text!r}")
            if int(seq_text) != seq:
                log_debug(f"{self.tag} Discarding stale response {text!r} (waiting for #{seq})")
                continue
            if token in self.success_tokens:
                return Result.ok()
            return Result.failure(ErrorKind.ACTUATOR_FAULT, token or "empty response")

        log_warning(f"{self.tag} No response to #{seq} within {self.response_timeout}s")
        return Result.failure(ErrorKind.ACTUATOR_FAULT, "response timeout")

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def _spawn(self) -> bool:
        self.state = WorkerState.STARTING
        self.generation += 1
        log_info(f"{self.tag} Starting (generation {self.generation})")
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
            )
        except OSError as e:
            log_error(f"{self.tag} Spawn failed: {e}")
            self.state = WorkerState.CLOSED
            return False

        self._proc = proc
        self._exit_task = asyncio.ensure_future(proc.wait())
        self._stderr_task = asyncio.create_task(self._drain_stderr(proc))
        self._stderr_task.add_done_callback(_task_done)

        try:
            ready = await asyncio.wait_for(self._read_ready(proc), self.ready_timeout)
        except asyncio.TimeoutError:
            log_warning(f"{self.tag} No READY within {self.ready_timeout}s")
            ready = False
        if not ready:
            await self._terminate(proc)
            self._clear_process()
            self.state = WorkerState.CLOSED
            return False

        self.state = WorkerState.READY
        self._ready.set()
        log_info(f"{self.tag} Ready (pid {proc.pid})")
        return True

    async def _read_ready(self, proc) -> bool:
        while True:
            raw = await proc.stdout.readline()
            if not raw:
                return False
            line = raw.decode("utf-8", errors="replace").strip()
            if line == "READY":
                return True
            log_debug(f"{self.tag} Ignoring pre-READY output: {line!r}")

    async def _drain_stderr(self, proc):
        """Log worker stderr so the pipe never fills up."""
        try:
            async for raw in proc.stderr:
                text = raw.decode("utf-8", errors="replace").rstrip()
                if text:
                    log_warning(f"{self.tag} {text}")
        except (OSError, ValueError) as e:
            log_debug(f"{self.tag} stderr drain ended: {e}")

    async def _reap(self, reason: str):
        """Collect an exited (or exiting) process and mark the handle CLOSED."""
        proc = self._proc
        if proc is None:
            return
        await self._terminate(proc, grace=1.0)
        log_warning(f"{self.tag} Process {reason} (code={proc.returncode})")
        self._clear_process()
        self.state = WorkerState.CLOSED

    async def _terminate(self, proc, grace: float = 0.0):
        if grace and proc.returncode is None:
            try:
                await asyncio.wait_for(proc.wait(), grace)
            except asyncio.TimeoutError:
                pass
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), 2)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
        except ProcessLookupError:
            pass

    def _clear_process(self):
        self._proc = None
        self._ready.clear()
        if self._exit_task is not None and not self._exit_task.done():
            self._exit_task.cancel()
        self._exit_task = None
        self._stderr_task = None

    def _fail_all(self, kind: ErrorKind, detail: str):
        while self._queue:
            _resolve(self._queue.popleft().future, Result.failure(kind, detail))
