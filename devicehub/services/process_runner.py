"""Run an external executable with bounded output and a hard wall-clock limit.

Arguments are always passed as a vector to ``create_subprocess_exec``; no shell
is involved, so nothing in ``args`` is ever interpreted as shell syntax.
stdout and stderr are interleaved into one :class:`TailBuffer` that keeps only
the most recent ``max_output_bytes``.

When the timeout expires the child receives SIGTERM, then SIGKILL if it is
still alive after the kill grace period. On POSIX the child leads its own
process group and the signals go to the whole group, so compiler or uploader
subprocesses spawned by the tool die with it and release the output pipes.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from dataclasses import dataclass, field
from typing import Sequence

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_MS = 120_000
DEFAULT_MAX_OUTPUT_BYTES = 4000
DEFAULT_KILL_GRACE_MS = 3000
_READ_CHUNK = 4096
_POSIX = os.name == "posix"


class ProcessError(Exception):
    """Base class for failed runner invocations."""

    def __init__(self, message: str, *, executable: str, args: Sequence[str], output: bytes = b"") -> None:
        super().__init__(message)
        self.executable = executable
        self.argv = (executable, *args)
        self.output = output

    @property
    def output_text(self) -> str:
        return self.output.decode("utf-8", errors="replace")


class ProcessSpawnError(ProcessError):
    """The executable could not be started (missing, not executable, ...)."""

    def __init__(self, *, executable: str, args: Sequence[str], cause: OSError) -> None:
        super().__init__(
            f"failed to start {executable}: {cause}",
            executable=executable,
            args=args,
        )
        self.cause = cause


class ProcessExitError(ProcessError):
    """The process ran but exited non-zero or was stopped by the timeout."""

    def __init__(
        self,
        *,
        executable: str,
        args: Sequence[str],
        timed_out: bool,
        exit_code: int | None,
        output: bytes,
    ) -> None:
        message = (
            f"{executable} timed out"
            if timed_out
            else f"{executable} exited with code {exit_code}"
        )
        super().__init__(message, executable=executable, args=args, output=output)
        self.timed_out = timed_out
        self.exit_code = exit_code


class TailBuffer:
    """Byte buffer that retains only the last ``limit`` bytes appended."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        self._limit = limit
        self._data = bytearray()

    def append(self, chunk: bytes) -> None:
        if len(chunk) >= self._limit:
            self._data[:] = chunk[-self._limit :]
            return
        self._data += chunk
        overflow = len(self._data) - self._limit
        if overflow > 0:
            del self._data[:overflow]

    def getvalue(self) -> bytes:
        return bytes(self._data)

    def __len__(self) -> int:
        return len(self._data)


@dataclass
class ProcessExecution:
    """State of one invocation; discarded once :meth:`ProcessRunner.run` returns."""

    args: tuple[str, ...]
    output: TailBuffer
    started_at: float = field(default_factory=time.monotonic)
    timed_out: bool = False
    exit_code: int | None = None
    timeout_handle: asyncio.TimerHandle | None = None
    kill_handle: asyncio.TimerHandle | None = None

    def cancel_timers(self) -> None:
        for handle in (self.timeout_handle, self.kill_handle):
            if handle is not None:
                handle.cancel()
        self.timeout_handle = None
        self.kill_handle = None


class ProcessRunner:
    def __init__(
        self,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        kill_grace_ms: int = DEFAULT_KILL_GRACE_MS,
    ) -> None:
        self.timeout_ms = timeout_ms
        self.max_output_bytes = max_output_bytes
        self.kill_grace_ms = kill_grace_ms

    async def run(
        self,
        executable: str,
        args: Sequence[str],
        *,
        timeout_ms: int | None = None,
        max_output_bytes: int | None = None,
    ) -> bytes:
        """Run ``executable`` with ``args`` and return its combined output.

        Raises :class:`ProcessSpawnError` if the process cannot be started and
        :class:`ProcessExitError` if it exits non-zero or times out.
        """

        timeout_ms = timeout_ms if timeout_ms and timeout_ms > 0 else self.timeout_ms
        max_output_bytes = (
            max_output_bytes if max_output_bytes and max_output_bytes > 0 else self.max_output_bytes
        )
        argv = [executable, *args]
        execution = ProcessExecution(args=tuple(args), output=TailBuffer(max_output_bytes))

        logger.info("process.spawn", argv=argv, timeout_ms=timeout_ms)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=_POSIX,
            )
        except OSError as exc:
            logger.warning("process.spawn_failed", executable=executable, error=str(exc))
            raise ProcessSpawnError(executable=executable, args=args, cause=exc) from exc

        loop = asyncio.get_running_loop()
        execution.timeout_handle = loop.call_later(
            timeout_ms / 1000, self._on_timeout, proc, execution
        )
        try:
            _, _, execution.exit_code = await asyncio.gather(
                self._pump(proc.stdout, execution.output),
                self._pump(proc.stderr, execution.output),
                proc.wait(),
            )
        except asyncio.CancelledError:
            logger.warning("process.cancelled", executable=executable, pid=proc.pid)
            _kill(proc)
            await proc.wait()
            raise
        finally:
            execution.cancel_timers()

        duration = time.monotonic() - execution.started_at
        output = execution.output.getvalue()
        if not execution.timed_out and execution.exit_code == 0:
            logger.info(
                "process.exit",
                executable=executable,
                exit_code=0,
                duration_seconds=round(duration, 3),
            )
            return output

        logger.warning(
            "process.failed",
            executable=executable,
            exit_code=execution.exit_code,
            timed_out=execution.timed_out,
            duration_seconds=round(duration, 3),
        )
        raise ProcessExitError(
            executable=executable,
            args=args,
            timed_out=execution.timed_out,
            exit_code=execution.exit_code,
            output=output,
        )

    async def probe(self, executable: str, *, timeout_ms: int | None = None) -> bool:
        """Return True when ``<executable> version`` runs and exits 0."""

        try:
            await self.run(executable, ["version"], timeout_ms=timeout_ms)
        except ProcessError:
            return False
        return True

    def _on_timeout(self, proc: asyncio.subprocess.Process, execution: ProcessExecution) -> None:
        execution.timed_out = True
        logger.warning("process.timeout", pid=proc.pid, args=list(execution.args))
        _terminate(proc)
        execution.kill_handle = asyncio.get_running_loop().call_later(
            self.kill_grace_ms / 1000, _kill, proc
        )

    @staticmethod
    async def _pump(stream: asyncio.StreamReader | None, buffer: TailBuffer) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            buffer.append(chunk)


def _terminate(proc: asyncio.subprocess.Process) -> None:
    _signal(proc, signal.SIGTERM)


def _kill(proc: asyncio.subprocess.Process) -> None:
    _signal(proc, signal.SIGKILL if _POSIX else signal.SIGTERM)


def _signal(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        if _POSIX:
            os.killpg(proc.pid, sig)
        elif proc.returncode is None:
            if sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
    except (ProcessLookupError, PermissionError) as exc:
        logger.debug("process.signal_skipped", pid=proc.pid, signal=int(sig), error=str(exc))
