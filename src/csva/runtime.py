"""Application runtime: wires settings to the store, hub, loop, worker and queue."""

from __future__ import annotations

from loguru import logger

from csva.channels.bus import ChannelHub
from csva.config import Settings
from csva.core.orchestrator import Orchestrator
from csva.core.worker import TurnWorker
from csva.errors import ConfigurationError
from csva.intake import IntakeService
from csva.jobs import HttpJobQueue, JobQueue, LocalJobQueue
from csva.llm import ChatModel, OpenRouterChatModel
from csva.message_store.service import MessageStore
from csva.reconcile.session import LiveSession
from csva.signing import WebhookSigner
from csva.speech import (
    AudioStreamer,
    DeepgramTranscriber,
    ElevenLabsSynthesizer,
    SpeechSynthesizer,
    SpeechTranscriber,
)
from csva.tools.builtin import build_tool_registry
from csva.tools.knowledge import KnowledgeBase
from csva.tools.registry import ToolRegistry


class AppRuntime:
    """Process-wide collaborators shared by the API and the CLI.

    Without ``webhook_url`` jobs run on an in-process queue; with it they
    are delivered as signed POSTs to the job consumer endpoint.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        model: ChatModel | None = None,
        tools: ToolRegistry | None = None,
        synthesizer: SpeechSynthesizer | None = None,
        transcriber: SpeechTranscriber | None = None,
        store: MessageStore | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or MessageStore(settings.database_path)
        self.knowledge = KnowledgeBase(settings.database_path)
        self.hub = ChannelHub()
        self.tools = tools or build_tool_registry(settings, self.knowledge)
        self.model = model or OpenRouterChatModel(
            api_key=settings.require_openrouter_key(),
            model=settings.model,
            api_base=settings.api_base,
            max_tokens=settings.max_tokens,
            app_url=settings.app_url,
        )
        self.orchestrator = Orchestrator(
            model=self.model,
            tools=self.tools,
            store=self.store,
            max_iterations=settings.max_iterations,
            model_timeout_seconds=settings.model_timeout_seconds,
            tool_timeout_seconds=settings.tool_timeout_seconds,
            system_prompt=settings.system_prompt,
            persist_retries=settings.persist_retries,
        )
        self.transcriber = transcriber or self._default_transcriber()
        self._synthesizer = synthesizer or self._default_synthesizer()
        speech = (
            AudioStreamer(self._synthesizer, self.hub, queue_size=settings.audio_queue_size)
            if self._synthesizer is not None
            else None
        )
        self.worker = TurnWorker(
            store=self.store,
            broadcaster=self.hub,
            orchestrator=self.orchestrator,
            retriever=self.knowledge,
            speech=speech,
            context_results=settings.context_results,
            persist_retries=settings.persist_retries,
        )
        self.signer = WebhookSigner(settings.webhook_secret)
        self.queue: JobQueue
        if settings.webhook_url:
            if not self.signer.configured:
                raise ConfigurationError("CSVA_WEBHOOK_SECRET is required when CSVA_WEBHOOK_URL is set")
            self.queue = HttpJobQueue(settings.webhook_url, self.signer, retries=settings.queue_retries)
        else:
            self.queue = LocalJobQueue(self.worker.handle)
        self.intake = IntakeService(self.store, self.queue, persist_retries=settings.persist_retries)

    def _default_synthesizer(self) -> SpeechSynthesizer | None:
        if not self.settings.speech_enabled:
            return None
        if not self.settings.elevenlabs_api_key:
            logger.warning("runtime.speech.disabled reason=missing_elevenlabs_api_key")
            return None
        return ElevenLabsSynthesizer(
            api_key=self.settings.elevenlabs_api_key,
            voice_id=self.settings.elevenlabs_voice_id,
            model_id=self.settings.elevenlabs_model_id,
            chunk_bytes=self.settings.audio_chunk_bytes,
        )

    def _default_transcriber(self) -> SpeechTranscriber | None:
        if not self.settings.deepgram_api_key:
            return None
        return DeepgramTranscriber(
            api_key=self.settings.deepgram_api_key,
            model=self.settings.deepgram_model,
            language=self.settings.deepgram_language,
        )

    async def start(self) -> None:
        if isinstance(self.queue, LocalJobQueue):
            await self.queue.start()
        logger.info(
            "runtime.start queue={} tools={} speech={} voice_input={}",
            type(self.queue).__name__,
            len(self.tools.descriptors()),
            self._synthesizer is not None,
            self.transcriber is not None,
        )

    async def stop(self) -> None:
        if isinstance(self.queue, LocalJobQueue):
            await self.queue.stop()
        elif isinstance(self.queue, HttpJobQueue):
            await self.queue.aclose()
        if isinstance(self._synthesizer, ElevenLabsSynthesizer):
            await self._synthesizer.aclose()
        if isinstance(self.transcriber, DeepgramTranscriber):
            await self.transcriber.aclose()
        self.store.close()
        logger.info("runtime.stop")

    def session(self, session_id: str) -> LiveSession:
        return LiveSession(session_id, hub=self.hub, store=self.store)
