from __future__ import annotations

from typing import Optional

from pydantic_settings import BaseSettings

from common.schemas import (
    AudioInputMode,
    CaptureConfig,
    Credentials,
    StabilityLevel,
    StartMessage,
)

DEFAULT_SYSTEM_PROMPT = """\
You are a helpful meeting assistant. Answer questions based on the meeting transcription provided.
Be concise and direct. If the information is not in the transcription, say so.
Respond in the same language as the user's question."""


class TranscribeSettings(BaseSettings):
    access_key: str = ""
    secret_key: str = ""
    region: str = "us-east-1"
    language_code: str = "en-US"
    sample_rate: int = 16000
    stability_level: StabilityLevel = StabilityLevel.high
    chunk_size: int = 8192
    audio_input_mode: AudioInputMode = AudioInputMode.both
    microphone_id: Optional[str] = None
    show_speaker_label: bool = True
    backend_url: str = "ws://localhost:8001/stream"
    capture_queue_size: int = 64
    shutdown_timeout_s: float = 2.0

    model_config = {"env_prefix": "TRANSCRIBE_"}

    def credentials(self) -> Credentials:
        return Credentials(
            access_key=self.access_key,
            secret_key=self.secret_key,
            region=self.region,
        )

    def capture_config(self) -> CaptureConfig:
        return CaptureConfig(
            mode=self.audio_input_mode,
            microphone_id=self.microphone_id,
            chunk_size=self.chunk_size,
            sample_rate=self.sample_rate,
            queue_size=self.capture_queue_size,
        )

    def start_message(self, stream_id: str) -> StartMessage:
        stabilize = self.stability_level != StabilityLevel.off
        return StartMessage(
            stream_id=stream_id,
            language_code=self.language_code,
            sample_rate_hz=self.sample_rate,
            enable_partial_results_stabilization=stabilize,
            partial_results_stability=self.stability_level if stabilize else None,
            show_speaker_label=self.show_speaker_label,
        )


class ChatSettings(BaseSettings):
    ollama_url: str = "http://localhost:11434"
    model_name: str = "llama3.1"
    temperature: float = 0.3
    max_tokens: int = 500
    history_limit: int = 20
    transcript_chars: int = 6000
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    request_timeout_s: float = 120.0

    model_config = {"env_prefix": "CHAT_"}


class GatewaySettings(BaseSettings):
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"

    model_config = {"env_prefix": "GATEWAY_"}
