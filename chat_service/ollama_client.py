from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from common.config import ChatSettings
from common.errors import BackendError

logger = logging.getLogger(__name__)


async def stream_chat(
    messages: list[dict[str, str]],
    settings: ChatSettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[str]:
    """Call Ollama /api/chat with streaming and yield content tokens."""
    settings = settings or ChatSettings()
    url = f"{settings.ollama_url}/api/chat"

    payload = {
        "model": settings.model_name,
        "messages": messages,
        "stream": True,
        "options": {
            "temperature": settings.temperature,
            "num_predict": settings.max_tokens,
        },
    }

    try:
        async with httpx.AsyncClient(timeout=settings.request_timeout_s, transport=transport) as client:
            async with client.stream("POST", url, json=payload) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning("Failed to parse streaming response: %s", line)
                        continue
                    if data.get("error"):
                        raise BackendError(data["error"])
                    chunk = data.get("message", {}).get("content", "")
                    if chunk:
                        yield chunk
                    if data.get("done"):
                        return
    except httpx.HTTPStatusError as exc:
        raise BackendError(f"Chat backend returned {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        raise BackendError(f"Chat backend unavailable: {exc}") from exc
