"""Speech I/O: transcription and synthesis adapters, audio frame streaming and client playback."""

from __future__ import annotations

import asyncio
import base64
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from loguru import logger

from csva.channels.bus import Broadcaster
from csva.channels.events import AudioChunk
from csva.errors import CsvaError

ELEVENLABS_API_BASE = "https://api.elevenlabs.io/v1"
DEEPGRAM_API_BASE = "https://api.deepgram.com/v1"
MAX_SPEECH_CHARS = 5000


class SpeechError(CsvaError):
    """Raised when a speech backend rejects a request."""


class SpeechSynthesizer(Protocol):
    def synthesize(self, text: str) -> AsyncIterator[bytes]: ...


class ElevenLabsSynthesizer:
    """Streaming text-to-speech over the ElevenLabs HTTP stream endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        voice_id: str,
        model_id: str,
        chunk_bytes: int = 16_384,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._voice_id = voice_id
        self._model_id = model_id
        self._chunk_bytes = chunk_bytes
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def synthesize(self, text: str) -> AsyncIterator[bytes]:
        url = f"{ELEVENLABS_API_BASE}/text-to-speech/{self._voice_id}/stream"
        body = {
            "text": text[:MAX_SPEECH_CHARS],
            "model_id": self._model_id,
            "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
        }
        headers = {"xi-api-key": self._api_key, "Accept": "audio/mpeg"}
        async with self._client.stream("POST", url, json=body, headers=headers) as response:
            if response.status_code >= 400:
                detail = (await response.aread()).decode("utf-8", errors="replace")
                raise SpeechError(f"ElevenLabs API error: {response.status_code} - {detail[:200]}")
            async for chunk in response.aiter_bytes(self._chunk_bytes):
                if chunk:
                    yield chunk

    async def aclose(self) -> None:
        await self._client.aclose()


@dataclass(frozen=True)
class Transcript:
    text: str
    confidence: float = 0.0


class SpeechTranscriber(Protocol):
    async def transcribe(self, audio: bytes, *, content_type: str = "audio/webm") -> Transcript: ...


class DeepgramTranscriber:
    """Speech-to-text for one recorded utterance over the Deepgram listen endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "nova-2",
        language: str = "en",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._language = language
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def transcribe(self, audio: bytes, *, content_type: str = "audio/webm") -> Transcript:
        """Transcribe recorded audio.

        Raises:
            SpeechError: If the request fails or Deepgram answers with an error status
        """
        params = {
            "model": self._model,
            "language": self._language,
            "smart_format": "true",
            "punctuate": "true",
        }
        headers = {"Authorization": f"Token {self._api_key}", "Content-Type": content_type}
        try:
            response = await self._client.post(
                f"{DEEPGRAM_API_BASE}/listen", params=params, headers=headers, content=audio
            )
        except httpx.HTTPError as exc:
            raise SpeechError(f"Deepgram request failed: {exc}") from exc
        if response.status_code >= 400:
            raise SpeechError(f"Deepgram API error: {response.status_code} - {response.text[:200]}")
        transcript = _first_alternative(response.json())
        logger.info("speech.transcribe.done bytes={} chars={}", len(audio), len(transcript.text))
        return transcript

    async def aclose(self) -> None:
        await self._client.aclose()


def _first_alternative(payload: Any) -> Transcript:
    try:
        alternative = payload["results"]["channels"][0]["alternatives"][0]
    except (KeyError, IndexError, TypeError):
        return Transcript(text="")
    return Transcript(
        text=str(alternative.get("transcript") or "").strip(),
        confidence=float(alternative.get("confidence") or 0.0),
    )


class AudioStreamer:
    """Bounded producer/consumer between a synthesizer and the broadcast channel.

    The synthesizer fills a queue of at most ``queue_size`` frames; the
    consumer publishes each frame as ``audio:chunk`` in order and always
    closes the stream with a ``final`` frame.
    """

    def __init__(self, synthesizer: SpeechSynthesizer, broadcaster: Broadcaster, *, queue_size: int = 8) -> None:
        self._synthesizer = synthesizer
        self._broadcaster = broadcaster
        self._queue_size = queue_size

    async def stream(self, session_id: str, turn_id: str, text: str) -> int:
        """Synthesize ``text`` and publish it. Returns the number of audio frames sent."""
        queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=self._queue_size)

        async def _produce() -> None:
            try:
                async for chunk in self._synthesizer.synthesize(text):
                    await queue.put(chunk)
            finally:
                await queue.put(None)

        producer = asyncio.create_task(_produce())
        seq = 0
        try:
            while (chunk := await queue.get()) is not None:
                audio = base64.b64encode(chunk).decode("ascii")
                await self._broadcaster.publish(session_id, AudioChunk(turn_id=turn_id, audio=audio, seq=seq))
                seq += 1
            await producer
        finally:
            if not producer.done():
                producer.cancel()
            await self._broadcaster.publish(session_id, AudioChunk(turn_id=turn_id, audio="", seq=seq, final=True))
        logger.info("speech.stream.done frames={}", seq)
        return seq


class PlaybackQueue:
    """Client-side audio frames for the turn currently being spoken.

    Starting a new turn clears whatever is still queued for the previous
    one; frames for any other turn are dropped.
    """

    def __init__(self) -> None:
        self._frames: deque[bytes] = deque()
        self.turn_id: str | None = None
        self.finished = False
        self.interruptions = 0

    def start_turn(self, turn_id: str) -> None:
        if self._frames:
            self.interruptions += 1
        self.clear()
        self.turn_id = turn_id
        self.finished = False

    def clear(self) -> None:
        self._frames.clear()

    def enqueue(self, chunk: AudioChunk) -> bool:
        if chunk.turn_id != self.turn_id:
            return False
        if chunk.final:
            self.finished = True
            return True
        self._frames.append(base64.b64decode(chunk.audio))
        return True

    def drain(self) -> list[bytes]:
        frames = list(self._frames)
        self._frames.clear()
        return frames

    def __len__(self) -> int:
        return len(self._frames)
