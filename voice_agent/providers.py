"""
Capability provider interfaces for speech capture and synthesis.

The agent never talks to a microphone or a speaker directly. It depends on:
- CaptureProvider: a stream that starts, ends (possibly on its own), and
  delivers interim/final transcript segments
- SynthesisProvider: accepts reply text and reports start/end/error on the bus

Implementations here are host-independent:
- ScriptedCaptureProvider: text is pushed in by code (console, HTTP, tests)
- ScriptedSynthesisProvider: records text; completion is triggered explicitly
- TimedSynthesisProvider: simulates playback time proportional to text length
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence

from logging_setup import get_logger, Component
from .errors import CaptureError, SynthesisError
from .event_bus import EventBus, EventType


logger = get_logger(Component.SYNTHESIS)


class CaptureSignalKind(str, Enum):
    STARTED = "started"
    ENDED = "ended"
    RESULT = "result"
    ERROR = "error"


@dataclass(frozen=True)
class TranscriptSegment:
    text: str
    is_final: bool


@dataclass(frozen=True)
class CaptureSignal:
    """Lifecycle or result notification from a capture provider."""

    kind: CaptureSignalKind
    segments: Sequence[TranscriptSegment] = field(default_factory=tuple)
    error: Optional[BaseException] = None


CaptureListener = Callable[[CaptureSignal], None]


class CaptureProvider(ABC):
    """
    Continuous speech capture stream.

    start() may raise synchronously (e.g. the platform refuses a start while
    a previous stream is still shutting down). Everything else is reported
    through the bound listener. No ordering is guaranteed between the "ended"
    signal and the last result.
    """

    def __init__(self) -> None:
        self._listener: Optional[CaptureListener] = None

    def bind(self, listener: Optional[CaptureListener]) -> None:
        self._listener = listener

    def _signal(self, signal: CaptureSignal) -> None:
        if self._listener is not None:
            self._listener(signal)

    @abstractmethod
    def start(self) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...


class SynthesisProvider(ABC):
    """
    Speech output.

    speak() hands text over for playback; the provider publishes
    SYNTHESIS_STARTED, then SYNTHESIS_ENDED or SYNTHESIS_ERROR on the bus.
    """

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus

    def _started(self) -> None:
        self.bus.publish(EventType.SYNTHESIS_STARTED)

    def _ended(self) -> None:
        self.bus.publish(EventType.SYNTHESIS_ENDED)

    def _failed(self, error: BaseException) -> None:
        self.bus.publish(EventType.SYNTHESIS_ERROR, error=error)

    @abstractmethod
    def speak(self, text: str) -> None:
        ...

    @abstractmethod
    def cancel(self) -> None:
        ...


class ScriptedCaptureProvider(CaptureProvider):
    """
    Capture stream driven by code.

    Starts succeed immediately unless `fail_starts` is set, in which case the
    next `fail_starts` calls to start() raise CaptureError.
    """

    def __init__(self, *, fail_starts: int = 0) -> None:
        super().__init__()
        self.fail_starts = fail_starts
        self.start_calls = 0
        self.stop_calls = 0
        self.running = False

    def start(self) -> None:
        self.start_calls += 1
        if self.fail_starts > 0:
            self.fail_starts -= 1
            raise CaptureError("capture stream is already starting")
        self.running = True
        self._signal(CaptureSignal(CaptureSignalKind.STARTED))

    def stop(self) -> None:
        self.stop_calls += 1
        if self.running:
            self.end_stream()

    def end_stream(self) -> None:
        """The stream ends on its own (silence timeout, platform policy)."""
        self.running = False
        self._signal(CaptureSignal(CaptureSignalKind.ENDED))

    def push_result(self, segments: Sequence[TranscriptSegment]) -> None:
        self._signal(CaptureSignal(CaptureSignalKind.RESULT, segments=tuple(segments)))

    def push_final(self, text: str) -> None:
        self.push_result([TranscriptSegment(text=text, is_final=True)])

    def push_interim(self, text: str) -> None:
        self.push_result([TranscriptSegment(text=text, is_final=False)])

    def fail(self, message: str) -> None:
        self._signal(CaptureSignal(CaptureSignalKind.ERROR, error=CaptureError(message)))


class ScriptedSynthesisProvider(SynthesisProvider):
    """Records spoken text; playback ends only when finish() is called."""

    def __init__(self, bus: EventBus, *, fail_on_speak: bool = False) -> None:
        super().__init__(bus)
        self.fail_on_speak = fail_on_speak
        self.spoken: List[str] = []
        self.cancel_calls = 0
        self.speaking = False

    def speak(self, text: str) -> None:
        if self.fail_on_speak:
            raise SynthesisError("no output device available")
        self.spoken.append(text)
        self.speaking = True
        self._started()

    def finish(self) -> None:
        self.speaking = False
        self._ended()

    def fail(self, message: str) -> None:
        self.speaking = False
        self._failed(SynthesisError(message))

    def cancel(self) -> None:
        self.cancel_calls += 1
        self.speaking = False


class TimedSynthesisProvider(SynthesisProvider):
    """
    Simulated speech output.

    Playback "lasts" len(text) / chars_per_second seconds; on completion the
    reply is handed to `on_spoken` (the console demo prints it there).
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        chars_per_second: float = 15.0,
        on_spoken: Optional[Callable[[str], Any]] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        super().__init__(bus)
        self._chars_per_second = max(chars_per_second, 1.0)
        self._on_spoken = on_spoken
        self._sleep = sleep
        self._playback: Optional[asyncio.Task] = None

    def speak(self, text: str) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._started()
        self._playback = loop.create_task(self._play(text))

    async def _play(self, text: str) -> None:
        duration = len(text) / self._chars_per_second
        logger.debug("Simulated playback started", text_length=len(text), duration_s=round(duration, 2))
        try:
            await self._sleep(duration)
            if self._on_spoken is not None:
                self._on_spoken(text)
        except asyncio.CancelledError:
            logger.debug("Simulated playback cancelled")
            raise
        except Exception as e:
            self._playback = None
            self._failed(SynthesisError(str(e)))
            return
        self._playback = None
        self._ended()

    def cancel(self) -> None:
        if self._playback is not None and not self._playback.done():
            self._playback.cancel()
        self._playback = None
