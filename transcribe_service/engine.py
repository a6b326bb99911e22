from __future__ import annotations

import logging
from typing import Optional

from common.schemas import PartialResult, TranscriptionEvent, TranscriptSegment, TranscriptSnapshot

logger = logging.getLogger(__name__)


class TranscriptEngine:
    """Folds transcription events into an append-only, speaker-attributed transcript."""

    def __init__(self) -> None:
        self._segments: list[TranscriptSegment] = []
        self._partial: Optional[PartialResult] = None
        self._speakers: dict[str, str] = {}

    @property
    def segments(self) -> list[TranscriptSegment]:
        return [s.model_copy() for s in self._segments]

    @property
    def partial(self) -> Optional[PartialResult]:
        return self._partial

    @property
    def speakers(self) -> dict[str, str]:
        return dict(self._speakers)

    def apply(self, event: TranscriptionEvent) -> None:
        if event.is_partial:
            self._partial = PartialResult(text=event.text, speaker=event.speaker_label)
            return

        self._partial = None
        # Finals arrive one phrase at a time; consecutive ones from the same
        # speaker belong to the same paragraph. Unlabeled finals never merge.
        last_speaker = self._segments[-1].speaker if self._segments else None
        if event.speaker_label is not None and last_speaker == event.speaker_label:
            last = self._segments[-1]
            last.text = f"{last.text} {event.text}"
        else:
            self._segments.append(
                TranscriptSegment(speaker=event.speaker_label, text=event.text, timestamp=event.timestamp)
            )

    def seen_speakers(self) -> set[str]:
        seen = {s.speaker for s in self._segments if s.speaker}
        if self._partial is not None and self._partial.speaker:
            seen.add(self._partial.speaker)
        return seen

    def rename_speaker(self, label: str, name: str) -> None:
        """Map a raw backend label to a display name; an empty name removes it."""
        name = name.strip()
        if not name:
            self._speakers.pop(label, None)
            return
        if label not in self.seen_speakers():
            raise KeyError(label)
        self._speakers[label] = name
        logger.info("Speaker %s renamed to %s", label, name)

    def display_name(self, label: Optional[str]) -> Optional[str]:
        if label is None:
            return None
        return self._speakers.get(label, label)

    def _render(self, speaker: Optional[str], text: str) -> str:
        name = self.display_name(speaker)
        return f"[{name}] {text}" if name else text

    def display_text(self) -> str:
        lines = [self._render(s.speaker, s.text) for s in self._segments]
        if self._partial is not None and self._partial.text:
            lines.append(self._render(self._partial.speaker, self._partial.text))
        return "\n".join(lines)

    def clear(self) -> None:
        self._segments = []
        self._partial = None
        self._speakers = {}

    def snapshot(self) -> TranscriptSnapshot:
        return TranscriptSnapshot(
            segments=self.segments,
            partial=self._partial,
            speakers=self.speakers,
            display_text=self.display_text(),
        )
