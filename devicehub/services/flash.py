"""Compile-then-upload workflow driven through the external build tool.

A run moves ``VALIDATING -> PROBING_TOOL -> COMPILING -> UPLOADING -> DONE``
and leaves through ``FAILED`` from any step. Upload is only attempted after a
successful compile in the same run, and nothing but the resolved sketch path
is carried between the two processes. Failed phases are reported, never
retried: re-running a flash has side effects on the board.
"""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AbstractSet, AsyncIterator, Dict, List

import structlog

from ..core.errors import BadInput, ProcessFailure, ToolUnavailable
from ..domain.flash import (
    FlashFailureReason,
    FlashRequest,
    FlashResponse,
    FlashState,
    ValidatedFlashRequest,
)
from ..telemetry import FLASH_IN_PROGRESS, FLASH_OUTCOMES, FLASH_PHASE_DURATION
from .process_runner import ProcessError, ProcessExitError, ProcessRunner
from .validation import resolve_sketch_path, validate_fqbn, validate_serial_port

logger = structlog.get_logger(__name__)

TIMEOUT_MESSAGE = "Flash operation timed out. Please verify the board connection."


class PortLocks:
    """One asyncio lock per serial port so two requests never flash the same board at once."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Counter[str] = Counter()

    @asynccontextmanager
    async def hold(self, port: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(port, asyncio.Lock())
        self._holders[port] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[port] -= 1
            if self._holders[port] <= 0:
                del self._holders[port]
                self._locks.pop(port, None)

    def locked(self, port: str) -> bool:
        lock = self._locks.get(port)
        return lock is not None and lock.locked()


@dataclass
class FlashRun:
    """Progress of one flash request."""

    state: FlashState = FlashState.VALIDATING
    history: List[FlashState] = field(default_factory=lambda: [FlashState.VALIDATING])
    failure_reason: FlashFailureReason | None = None

    def advance(self, state: FlashState) -> None:
        self.state = state
        self.history.append(state)
        logger.info("flash.state", state=state.value)

    def fail(self, reason: FlashFailureReason) -> None:
        self.failure_reason = reason
        self.advance(FlashState.FAILED)
        FLASH_OUTCOMES.labels(outcome=reason.value).inc()


class FlashWorkflow:
    def __init__(
        self,
        runner: ProcessRunner,
        *,
        executable: str,
        project_root: Path,
        allowed_extensions: AbstractSet[str],
        probe_timeout_ms: int | None = None,
        port_locks: PortLocks | None = None,
    ) -> None:
        self._runner = runner
        self._executable = executable
        self._project_root = project_root
        self._allowed_extensions = allowed_extensions
        self._probe_timeout_ms = probe_timeout_ms
        self._port_locks = port_locks or PortLocks()

    def validate(self, request: FlashRequest) -> ValidatedFlashRequest:
        if not request.sketch_path or not request.port:
            raise BadInput("Missing sketchPath or port")
        port = validate_serial_port(request.port)
        fqbn = validate_fqbn(request.fqbn)
        sketch = resolve_sketch_path(
            request.sketch_path,
            project_root=self._project_root,
            allowed_extensions=self._allowed_extensions,
        )
        return ValidatedFlashRequest(sketch=sketch, port=port, fqbn=fqbn)

    async def execute(self, request: FlashRequest, run: FlashRun | None = None) -> FlashResponse:
        run = run or FlashRun()
        try:
            validated = self.validate(request)
        except BadInput:
            run.fail(FlashFailureReason.BAD_INPUT)
            raise

        run.advance(FlashState.PROBING_TOOL)
        if not await self._runner.probe(self._executable, timeout_ms=self._probe_timeout_ms):
            run.fail(FlashFailureReason.TOOL_UNAVAILABLE)
            raise ToolUnavailable(
                f"{self._executable} not available on PATH. Install it and retry."
            )

        async with self._port_locks.hold(validated.port):
            with FLASH_IN_PROGRESS.track_inprogress():
                run.advance(FlashState.COMPILING)
                logger.info("flash.compile.start", sketch=str(validated.sketch), fqbn=validated.fqbn)
                await self._run_phase(
                    "compile",
                    self.compile_args(validated),
                    run=run,
                    reason=FlashFailureReason.COMPILE_ERROR,
                )

                run.advance(FlashState.UPLOADING)
                logger.info("flash.upload.start", sketch=str(validated.sketch), port=validated.port)
                await self._run_phase(
                    "upload",
                    self.upload_args(validated),
                    run=run,
                    reason=FlashFailureReason.UPLOAD_ERROR,
                )

        run.advance(FlashState.DONE)
        FLASH_OUTCOMES.labels(outcome=FlashState.DONE.value).inc()
        return FlashResponse(msg="Upload complete")

    @staticmethod
    def compile_args(validated: ValidatedFlashRequest) -> list[str]:
        args = ["compile", str(validated.sketch)]
        if validated.fqbn:
            args += ["--fqbn", validated.fqbn]
        return args

    @staticmethod
    def upload_args(validated: ValidatedFlashRequest) -> list[str]:
        args = ["upload", str(validated.sketch), "--port", validated.port]
        if validated.fqbn:
            args += ["--fqbn", validated.fqbn]
        return args

    async def _run_phase(
        self,
        phase: str,
        args: list[str],
        *,
        run: FlashRun,
        reason: FlashFailureReason,
    ) -> bytes:
        start = time.perf_counter()
        try:
            output = await self._runner.run(self._executable, args)
        except ProcessError as exc:
            timed_out = isinstance(exc, ProcessExitError) and exc.timed_out
            logger.error(
                f"flash.{phase}.failed",
                timed_out=timed_out,
                exit_code=getattr(exc, "exit_code", None),
                output=exc.output_text,
            )
            run.fail(reason)
            raise ProcessFailure(
                phase,
                timed_out=timed_out,
                message=TIMEOUT_MESSAGE if timed_out else f"Failed to {phase} sketch",
            ) from exc
        finally:
            FLASH_PHASE_DURATION.labels(phase=phase).observe(time.perf_counter() - start)
        logger.info(f"flash.{phase}.done")
        return output
