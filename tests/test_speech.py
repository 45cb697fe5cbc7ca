from __future__ import annotations

import base64
from collections.abc import AsyncIterator

import httpx
import pytest
from conftest import RecordingBroadcaster

from csva.channels.events import AudioChunk
from csva.speech import AudioStreamer, DeepgramTranscriber, ElevenLabsSynthesizer, PlaybackQueue, SpeechError, Transcript


class _ListSynth:
    def __init__(self, chunks: list[bytes], fail_after: int | None = None) -> None:
        self.chunks = chunks
        self.fail_after = fail_after

    async def synthesize(self, text: str) -> AsyncIterator[bytes]:
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index == self.fail_after:
                raise SpeechError("voice quota exceeded")
            yield chunk


def _audio(broadcaster: RecordingBroadcaster) -> list[AudioChunk]:
    return [event for _, event in broadcaster.events if isinstance(event, AudioChunk)]


@pytest.mark.asyncio
async def test_frames_are_published_in_order_with_final_marker() -> None:
    broadcaster = RecordingBroadcaster()
    chunks = [bytes([index]) * 4 for index in range(5)]

    sent = await AudioStreamer(_ListSynth(chunks), broadcaster, queue_size=2).stream("s1", "turn_1", "hello")

    frames = _audio(broadcaster)
    assert sent == 5
    assert [frame.seq for frame in frames] == [0, 1, 2, 3, 4, 5]
    assert [base64.b64decode(frame.audio) for frame in frames[:-1]] == chunks
    assert frames[-1].final and frames[-1].audio == ""
    assert all(frame.turn_id == "turn_1" for frame in frames)


@pytest.mark.asyncio
async def test_synthesis_failure_still_closes_the_stream() -> None:
    broadcaster = RecordingBroadcaster()

    with pytest.raises(SpeechError):
        await AudioStreamer(_ListSynth([b"a", b"b", b"c"], fail_after=2), broadcaster).stream("s1", "turn_1", "x")

    frames = _audio(broadcaster)
    assert [frame.final for frame in frames] == [False, False, True]


@pytest.mark.asyncio
async def test_elevenlabs_streams_response_body() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"mp3-bytes")

    synth = ElevenLabsSynthesizer(
        api_key="key",
        voice_id="voice",
        model_id="eleven_flash_v2_5",
        client=httpx.AsyncClient(transport=httpx.MockTransport(_handler)),
    )

    audio = b"".join([chunk async for chunk in synth.synthesize("Hello")])
    await synth.aclose()

    assert audio == b"mp3-bytes"
    assert seen[0].url.path == "/v1/text-to-speech/voice/stream"
    assert seen[0].headers["xi-api-key"] == "key"


@pytest.mark.asyncio
async def test_elevenlabs_error_status_raises() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(401, text="bad key")))
    synth = ElevenLabsSynthesizer(api_key="key", voice_id="voice", model_id="m", client=client)

    with pytest.raises(SpeechError, match="401"):
        async for _ in synth.synthesize("Hello"):
            pass


def test_playback_queue_is_cut_by_the_next_turn() -> None:
    playback = PlaybackQueue()
    playback.start_turn("turn_1")
    playback.enqueue(AudioChunk(turn_id="turn_1", audio=base64.b64encode(b"one").decode(), seq=0))
    playback.enqueue(AudioChunk(turn_id="turn_1", audio=base64.b64encode(b"two").decode(), seq=1))
    assert len(playback) == 2

    playback.start_turn("turn_2")

    assert len(playback) == 0
    assert playback.interruptions == 1
    assert not playback.enqueue(AudioChunk(turn_id="turn_1", audio=base64.b64encode(b"stale").decode(), seq=2))
    assert playback.enqueue(AudioChunk(turn_id="turn_2", audio=base64.b64encode(b"new").decode(), seq=0))
    assert playback.enqueue(AudioChunk(turn_id="turn_2", audio="", seq=1, final=True))
    assert playback.finished
    assert playback.drain() == [b"new"]


@pytest.mark.asyncio
async def test_deepgram_posts_audio_and_reads_first_alternative() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        payload = {
            "results": {
                "channels": [{"alternatives": [{"transcript": " Do you take walk-ins? ", "confidence": 0.88}]}]
            }
        }
        return httpx.Response(200, json=payload)

    transcriber = DeepgramTranscriber(
        api_key="dg-key",
        language="en",
        client=httpx.AsyncClient(transport=httpx.MockTransport(_handler)),
    )

    transcript = await transcriber.transcribe(b"wav-bytes", content_type="audio/wav")
    await transcriber.aclose()

    assert transcript == Transcript(text="Do you take walk-ins?", confidence=0.88)
    request = seen[0]
    assert request.url.path == "/v1/listen"
    assert request.url.params["model"] == "nova-2"
    assert request.url.params["language"] == "en"
    assert request.url.params["smart_format"] == "true"
    assert request.headers["Authorization"] == "Token dg-key"
    assert request.headers["Content-Type"] == "audio/wav"
    assert request.content == b"wav-bytes"


@pytest.mark.asyncio
async def test_deepgram_without_alternatives_is_an_empty_transcript() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"results": {}})))

    transcript = await DeepgramTranscriber(api_key="dg-key", client=client).transcribe(b"...")

    assert transcript == Transcript(text="")


@pytest.mark.asyncio
async def test_deepgram_failures_raise_speech_error() -> None:
    def _unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    rejecting = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(402, text="no credit")))
    offline = httpx.AsyncClient(transport=httpx.MockTransport(_unreachable))

    with pytest.raises(SpeechError, match="402"):
        await DeepgramTranscriber(api_key="dg-key", client=rejecting).transcribe(b"audio")
    with pytest.raises(SpeechError, match="request failed"):
        await DeepgramTranscriber(api_key="dg-key", client=offline).transcribe(b"audio")
