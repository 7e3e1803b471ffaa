"""
Async stream of partial transcripts over a callback-based speech recogniser.

A recogniser is any object with
    start(on_result: Callable[[str, bool], None], on_error: Callable[[Exception], None])
    stop()
whose callbacks may fire from another thread. TranscriptStream turns it into an
async iterator, and always calls stop() (releasing the microphone) when the
consumer stops, the recogniser errors, or iteration is abandoned.

FrameRecognizer is the recogniser used by the dictation websocket: the
browser runs speech recognition and streams its partial results as frames.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from mediai.models import CamelModel

logger = logging.getLogger(__name__)

_STOP = object()


class TranscriptEvent(CamelModel):
    text: str
    is_final: bool = False


class SpeechRecognitionError(RuntimeError):
    """The client reported a recognition failure (microphone denied, no speech, ...)."""


class FrameRecognizer:
    """
    Recogniser fed by transcript frames from a remote client.

    Recognition runs in the browser; each frame is {"text": ..., "isFinal": ...}
    or {"error": ...}. `receive` returns the next frame and raises when the
    client goes away, which is reported through on_error.
    """

    def __init__(self, receive: Callable[[], Awaitable[Any]]):
        self._receive = receive
        self._reader: Optional[asyncio.Task] = None

    def start(self, on_result, on_error):
        self._reader = asyncio.create_task(self._read(on_result, on_error))

    def stop(self):
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None

    async def _read(self, on_result, on_error):
        try:
            while True:
                frame = await self._receive()
                if not isinstance(frame, dict):
                    continue
                if frame.get("error"):
                    on_error(SpeechRecognitionError(str(frame["error"])))
                    return
                on_result(str(frame.get("text") or ""), bool(frame.get("isFinal")))
        except Exception as e:
            on_error(e)


class TranscriptStream:
    def __init__(self, recognizer):
        self.recognizer = recognizer
        self._queue: Optional[asyncio.Queue] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            raise RuntimeError("Transcript stream already started")

        loop = asyncio.get_running_loop()
        queue = asyncio.Queue()
        self._queue = queue

        def on_result(text: str, is_final: bool = False):
            loop.call_soon_threadsafe(queue.put_nowait, TranscriptEvent(text=text, is_final=is_final))

        def on_error(error: Exception):
            loop.call_soon_threadsafe(queue.put_nowait, error)

        self.recognizer.start(on_result, on_error)
        self._running = True
        logger.info("Speech recognition started")

    async def stop(self):
        if not self._running:
            return
        self._running = False
        try:
            self.recognizer.stop()
        finally:
            self._queue.put_nowait(_STOP)
            logger.info("Speech recognition stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    def __aiter__(self) -> AsyncIterator[TranscriptEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[TranscriptEvent]:
        if not self._running:
            await self.start()
        queue = self._queue
        try:
            while True:
                item = await queue.get()
                if item is _STOP:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            await self.stop()
