"""
Capture stream controller.

Turns an unreliable capture provider into a "keep listening" guarantee:
- Caller intent (keep_capturing) is tracked separately from the stream's
  own running state (active)
- When the stream ends while intent holds, one restart is scheduled after a
  short delay; a failed restart is retried once, then reported as fatal
- At most one restart attempt is in flight at a time
- A failed start() is retried once before an error is published

Published events: CAPTURE_STARTED, CAPTURE_ENDED, FINAL_TRANSCRIPT,
PARTIAL_TRANSCRIPT, CAPTURE_ERROR.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from logging_setup import get_logger, Component
from .errors import CaptureError, describe_error
from .event_bus import EventBus, EventType
from .providers import CaptureProvider, CaptureSignal, CaptureSignalKind


class CaptureState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"


@dataclass(frozen=True)
class RestartPolicy:
    """Retry delays in milliseconds."""

    start_retry_ms: int = 100
    restart_delay_ms: int = 100
    restart_retry_ms: int = 200


@dataclass(frozen=True)
class CaptureStatus:
    state: CaptureState
    keep_capturing: bool
    active: bool
    restart_in_flight: bool


class CaptureStreamController:
    def __init__(
        self,
        provider: CaptureProvider,
        bus: EventBus,
        *,
        policy: Optional[RestartPolicy] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        session_id: Optional[str] = None,
    ):
        self._provider = provider
        self._bus = bus
        self._policy = policy or RestartPolicy()
        self._sleep = sleep
        self.logger = get_logger(Component.CAPTURE, session_id=session_id)

        self._state = CaptureState.IDLE
        self._keep_capturing = False
        self._active = False
        self._restart_in_flight = False
        self._retry_task: Optional[asyncio.Task] = None

        provider.bind(self._on_signal)

    @property
    def state(self) -> CaptureState:
        return self._state

    def status(self) -> CaptureStatus:
        return CaptureStatus(
            state=self._state,
            keep_capturing=self._keep_capturing,
            active=self._active,
            restart_in_flight=self._restart_in_flight,
        )

    def is_capturing(self) -> bool:
        return self._state in (CaptureState.ACTIVE, CaptureState.STARTING)

    # --- Public operations ---

    def start(self) -> None:
        if self._state in (CaptureState.ACTIVE, CaptureState.STARTING) or self._restart_in_flight:
            self._keep_capturing = True
            return

        self._keep_capturing = True
        self._state = CaptureState.STARTING
        self.logger.debug("Starting capture stream")

        try:
            self._provider.start()
        except Exception as e:
            self.logger.warning(
                "Capture start failed, retrying",
                error=describe_error(e),
                error_type=type(e).__name__,
                retry_in_ms=self._policy.start_retry_ms,
            )
            self._schedule(self._retry_start())

    def stop(self) -> None:
        self._keep_capturing = False
        self._cancel_retry()
        self._restart_in_flight = False

        if self._active:
            try:
                self._provider.stop()
            except Exception as e:
                self.logger.warning(
                    "Capture stop failed",
                    error=describe_error(e),
                    error_type=type(e).__name__,
                )
        else:
            self._state = CaptureState.IDLE

    # --- Provider signals ---

    def _on_signal(self, signal: CaptureSignal) -> None:
        if signal.kind == CaptureSignalKind.STARTED:
            self._on_stream_started()
        elif signal.kind == CaptureSignalKind.ENDED:
            self._on_stream_ended()
        elif signal.kind == CaptureSignalKind.RESULT:
            self._on_result(signal)
        elif signal.kind == CaptureSignalKind.ERROR:
            error = signal.error or CaptureError("capture provider reported an error")
            self.logger.warning("Capture provider error", error=describe_error(error))
            self._bus.publish(EventType.CAPTURE_ERROR, error=error, fatal=False)

    def _on_stream_started(self) -> None:
        self._active = True
        self._state = CaptureState.ACTIVE
        self.logger.info("Capture stream started")
        self._bus.publish(EventType.CAPTURE_STARTED)

    def _on_stream_ended(self) -> None:
        self._active = False
        self._state = CaptureState.IDLE
        self.logger.info("Capture stream ended", keep_capturing=self._keep_capturing)
        self._bus.publish(EventType.CAPTURE_ENDED)

        if not self._keep_capturing or self._restart_in_flight:
            return

        self._restart_in_flight = True
        self._state = CaptureState.STARTING
        if not self._schedule(self._restart()):
            self._restart_in_flight = False

    def _on_result(self, signal: CaptureSignal) -> None:
        final_text = "".join(s.text for s in signal.segments if s.is_final).strip()
        interim_text = "".join(s.text for s in signal.segments if not s.is_final).strip()

        if final_text:
            self.logger.debug_pii("Final transcript", text=final_text)
            self._bus.publish(EventType.FINAL_TRANSCRIPT, text=final_text)
        if interim_text:
            self._bus.publish(EventType.PARTIAL_TRANSCRIPT, text=interim_text)

    # --- Retry / restart ---

    async def _retry_start(self) -> None:
        await self._sleep(self._policy.start_retry_ms / 1000.0)
        if not self._keep_capturing or self._active:
            return
        try:
            self._provider.start()
        except Exception as e:
            self._state = CaptureState.IDLE
            self._report_failure(e, fatal=False)

    async def _restart(self) -> None:
        try:
            await self._sleep(self._policy.restart_delay_ms / 1000.0)
            if not self._keep_capturing or self._active:
                return

            self._state = CaptureState.STARTING
            try:
                self._provider.start()
                self.logger.debug("Capture stream restart requested")
                return
            except Exception as e:
                self.logger.warning(
                    "Capture restart failed, retrying",
                    error=describe_error(e),
                    error_type=type(e).__name__,
                    retry_in_ms=self._policy.restart_retry_ms,
                )

            await self._sleep(self._policy.restart_retry_ms / 1000.0)
            if not self._keep_capturing or self._active:
                return
            try:
                self._provider.start()
            except Exception as e:
                self._state = CaptureState.IDLE
                self._report_failure(e, fatal=True)
        finally:
            self._restart_in_flight = False

    def _report_failure(self, error: BaseException, *, fatal: bool) -> None:
        wrapped = error if isinstance(error, CaptureError) else CaptureError(str(error), fatal=fatal)
        if fatal:
            wrapped.fatal = True
        self.logger.error(
            "Capture stream could not be started",
            error=describe_error(error),
            error_type=type(error).__name__,
            fatal=fatal,
        )
        self._bus.publish(EventType.CAPTURE_ERROR, error=wrapped, fatal=fatal)

    def _schedule(self, coro) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            self._state = CaptureState.IDLE
            self.logger.error("No running event loop; capture retry not scheduled")
            return False
        self._cancel_retry()
        self._retry_task = loop.create_task(coro)
        return True

    def _cancel_retry(self) -> None:
        if self._retry_task is not None:
            if not self._retry_task.done():
                self._retry_task.cancel()
            self._retry_task = None
