"""Append-only chat transcript."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Literal, Sequence

from kommunkb.models import ChatMessage

EntryKind = Literal["user", "assistant", "tool-result", "tool-error"]


@dataclass(frozen=True)
class TranscriptEntry:
    kind: EntryKind
    content: str

    @property
    def role(self) -> Literal["user", "model"]:
        # Tool output is fed back to the model as user-side context.
        return "model" if self.kind == "assistant" else "user"


class Transcript:
    """Ordered list of typed entries; entries are only ever appended."""

    def __init__(self, entries: Sequence[TranscriptEntry] = ()) -> None:
        self._entries: list[TranscriptEntry] = list(entries)

    @classmethod
    def from_history(cls, history: Sequence[ChatMessage]) -> "Transcript":
        transcript = cls()
        for message in history:
            transcript.append("assistant" if message.role == "assistant" else "user", message.content)
        return transcript

    def append(self, kind: EntryKind, content: str) -> TranscriptEntry:
        entry = TranscriptEntry(kind=kind, content=content)
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> tuple[TranscriptEntry, ...]:
        return tuple(self._entries)

    def of_kind(self, kind: EntryKind) -> list[TranscriptEntry]:
        return [entry for entry in self._entries if entry.kind == kind]

    def __iter__(self) -> Iterator[TranscriptEntry]:
        return iter(tuple(self._entries))

    def __len__(self) -> int:
        return len(self._entries)
