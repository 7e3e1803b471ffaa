import asyncio

import pytest

from mediai.speech import FrameRecognizer, SpeechRecognitionError, TranscriptStream


class FakeRecognizer:
    def __init__(self):
        self.on_result = None
        self.on_error = None
        self.started = 0
        self.stopped = 0

    def start(self, on_result, on_error):
        self.started += 1
        self.on_result = on_result
        self.on_error = on_error

    def stop(self):
        self.stopped += 1


async def test_yields_partial_and_final_transcripts():
    recognizer = FakeRecognizer()
    received = []

    async with TranscriptStream(recognizer) as stream:
        recognizer.on_result("my head", False)
        recognizer.on_result("my head hurts", True)
        async for event in stream:
            received.append(event)
            if event.is_final:
                break

    assert [(e.text, e.is_final) for e in received] == [("my head", False), ("my head hurts", True)]
    assert recognizer.stopped == 1
    assert not stream.running


async def test_results_from_another_thread_are_delivered():
    recognizer = FakeRecognizer()
    stream = TranscriptStream(recognizer)
    await stream.start()

    await asyncio.to_thread(recognizer.on_result, "fever since yesterday", True)

    async for event in stream:
        assert event.text == "fever since yesterday"
        break
    await stream.stop()
    assert recognizer.stopped == 1


async def test_recognizer_error_stops_and_propagates():
    recognizer = FakeRecognizer()
    stream = TranscriptStream(recognizer)

    async def consume():
        async for _ in stream:
            pass

    task = asyncio.create_task(consume())
    while recognizer.on_error is None:
        await asyncio.sleep(0)
    recognizer.on_error(RuntimeError("microphone unavailable"))

    with pytest.raises(RuntimeError, match="microphone unavailable"):
        await task
    assert recognizer.stopped == 1


async def test_stop_ends_iteration():
    recognizer = FakeRecognizer()
    stream = TranscriptStream(recognizer)
    await stream.start()

    async def consume():
        return [event.text async for event in stream]

    task = asyncio.create_task(consume())
    recognizer.on_result("cough", False)
    await asyncio.sleep(0)
    await stream.stop()

    assert await task == ["cough"]
    assert recognizer.stopped == 1


async def test_cannot_start_twice():
    stream = TranscriptStream(FakeRecognizer())
    await stream.start()
    with pytest.raises(RuntimeError):
        await stream.start()
    await stream.stop()


async def test_frames_from_a_client_become_transcript_events():
    frames = asyncio.Queue()
    for frame in ({"text": "short of", "isFinal": False}, "ping", {"text": "short of breath", "isFinal": True}):
        frames.put_nowait(frame)

    async with TranscriptStream(FrameRecognizer(frames.get)) as stream:
        received = []
        async for event in stream:
            received.append((event.text, event.is_final))
            if event.is_final:
                break

    assert received == [("short of", False), ("short of breath", True)]


async def test_client_error_frame_ends_the_stream():
    frames = asyncio.Queue()
    frames.put_nowait({"error": "No speech detected"})
    stream = TranscriptStream(FrameRecognizer(frames.get))

    with pytest.raises(SpeechRecognitionError, match="No speech detected"):
        async for _ in stream:
            pass
    assert not stream.running


async def test_client_disconnect_ends_the_stream():
    async def receive():
        raise ConnectionResetError("client went away")

    with pytest.raises(ConnectionResetError):
        async for _ in TranscriptStream(FrameRecognizer(receive)):
            pass
