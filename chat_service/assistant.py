from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Iterable, Optional

from chat_service.ollama_client import stream_chat
from chat_service.prompts import build_system_prompt, normalize_history, to_api_messages
from common.config import ChatSettings
from common.errors import BackendError
from common.schemas import ChatMessage

logger = logging.getLogger(__name__)

Transport = Callable[[list[dict[str, str]], ChatSettings], AsyncIterator[str]]


class ChatAssistant:
    """Answers questions about the transcript with a cancellable streamed reply.

    Request failures are rendered as a single ``Error: ...`` chunk instead
    of being raised, and ``stop_generating()`` ends the stream quietly. None
    of this touches the transcription session.
    """

    def __init__(self, settings: ChatSettings | None = None, transport: Transport = stream_chat) -> None:
        self.settings = settings or ChatSettings()
        self._transport = transport
        self._current: asyncio.Task | None = None
        self.is_loading = False
        self.last_response = ""

    def stop_generating(self) -> None:
        task, self._current = self._current, None
        if task is not None and not task.done():
            logger.info("[chat] Generation cancelled")
            task.cancel()
        self.is_loading = False

    async def ask(
        self,
        question: str,
        transcript: str,
        history: Iterable[ChatMessage] = (),
        system_prompt: Optional[str] = None,
    ) -> AsyncIterator[str]:
        self.stop_generating()
        messages = normalize_history(history, question, self.settings.history_limit)
        prompt = build_system_prompt(
            transcript,
            template=system_prompt or self.settings.system_prompt,
            max_chars=self.settings.transcript_chars,
        )
        logger.info("[chat] Sending %d messages", len(messages))

        queue: asyncio.Queue[str | None] = asyncio.Queue()
        task = asyncio.create_task(self._generate(to_api_messages(prompt, messages), queue))
        self._current = task
        try:
            while True:
                chunk = await queue.get()
                if chunk is None:
                    return
                yield chunk
        finally:
            if not task.done():
                task.cancel()

    async def _generate(self, messages: list[dict[str, str]], queue: asyncio.Queue) -> None:
        self.is_loading = True
        response = ""
        try:
            async for chunk in self._transport(messages, self.settings):
                response += chunk
                queue.put_nowait(chunk)
            self.last_response = response
            logger.info("[chat] Response complete: %s", response[:50])
        except BackendError as exc:
            logger.error("[chat] Error: %s", exc)
            queue.put_nowait(f"Error: {exc}")
        except Exception as exc:
            logger.exception("[chat] Unexpected error")
            queue.put_nowait(f"Error: {exc}")
        finally:
            if self._current is asyncio.current_task():
                self._current = None
                self.is_loading = False
            queue.put_nowait(None)

    async def ask_sync(self, question: str, transcript: str, history: Iterable[ChatMessage] = (),
                       system_prompt: Optional[str] = None) -> str:
        parts = []
        async for chunk in self.ask(question, transcript, history, system_prompt):
            parts.append(chunk)
        return "".join(parts)
