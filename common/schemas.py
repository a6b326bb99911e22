from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


# --- Settings-derived inputs ---

class AudioInputMode(str, Enum):
    mic_only = "mic-only"
    system_only = "system-only"
    both = "both"


class StabilityLevel(str, Enum):
    off = "off"
    low = "low"
    medium = "medium"
    high = "high"


class Credentials(BaseModel):
    access_key: str = ""
    secret_key: str = ""
    region: str = ""

    @property
    def is_valid(self) -> bool:
        return bool(self.access_key and self.secret_key and self.region)


class CaptureConfig(BaseModel):
    mode: AudioInputMode = AudioInputMode.both
    microphone_id: Optional[str] = None
    chunk_size: int = 8192
    sample_rate: int = 16000
    queue_size: int = 64

    model_config = {"frozen": True}


# --- Transcription backend wire messages ---

class ClientMessageType(str, Enum):
    start = "start"
    end = "end"


class StartMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.start
    stream_id: str
    language_code: str = "en-US"
    sample_rate_hz: int = 16000
    encoding: str = "pcm"
    enable_partial_results_stabilization: bool = True
    partial_results_stability: Optional[StabilityLevel] = StabilityLevel.high
    show_speaker_label: bool = True
    # audio payload follows as binary frames, not in JSON


class EndMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.end
    stream_id: str


class ServerMessageType(str, Enum):
    transcript = "transcript"
    complete = "complete"
    error = "error"


class ResultItem(BaseModel):
    content: str = ""
    speaker: Optional[str] = None


class Alternative(BaseModel):
    transcript: str = ""
    items: list[ResultItem] = []


class Result(BaseModel):
    result_id: Optional[str] = None
    is_partial: bool = True
    alternatives: list[Alternative] = []


class Transcript(BaseModel):
    results: list[Result] = []


class TranscriptEventMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.transcript
    transcript: Transcript = Transcript()


class ErrorMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.error
    detail: str


# --- Transcript model ---

class TranscriptionEvent(BaseModel):
    text: str
    is_partial: bool
    timestamp: datetime = Field(default_factory=_now)
    speaker_label: Optional[str] = None


class TranscriptSegment(BaseModel):
    speaker: Optional[str] = None
    text: str
    timestamp: datetime = Field(default_factory=_now)


class PartialResult(BaseModel):
    text: str
    speaker: Optional[str] = None


class TranscriptSnapshot(BaseModel):
    segments: list[TranscriptSegment] = []
    partial: Optional[PartialResult] = None
    speakers: dict[str, str] = {}
    display_text: str = ""


# --- Session state ---

class SessionStatus(str, Enum):
    idle = "idle"
    preparing = "preparing"
    recording = "recording"
    stopping = "stopping"
    error = "error"


class SessionState(BaseModel):
    status: SessionStatus = SessionStatus.idle
    message: Optional[str] = None
    warnings: list[str] = []


class SessionEventKind(str, Enum):
    state = "state"
    transcript = "transcript"


class SessionEvent(BaseModel):
    kind: SessionEventKind
    state: SessionState
    display_text: str = ""


# --- Chat ---

class ChatRole(str, Enum):
    user = "user"
    assistant = "assistant"


class ChatMessage(BaseModel):
    role: ChatRole
    content: str


class ChatRequest(BaseModel):
    question: str
    history: list[ChatMessage] = []
    system_prompt: Optional[str] = None


class RenameSpeakerRequest(BaseModel):
    name: str = ""
