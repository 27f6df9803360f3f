from __future__ import annotations

import bisect
import enum
from typing import Iterator


class NormalizedEventType(enum.Enum):
    KeyOn   = 0
    KeyOff  = 1


class NormalizedEvent:
    def __init__(self, ev_type: NormalizedEventType, key: int, program: int, channel: int):
        self.ev_type = ev_type
        self.key = key
        self.program = program
        self.channel = channel

    def to_dict(self) -> dict:
        return {
            "type": self.ev_type.name,
            "key": self.key,
            "program": self.program,
            "channel": self.channel,
        }

    def __repr__(self):
        return f'{self.ev_type.name}(key: {self.key}, program: {self.program}, channel: {self.channel})'

    def __eq__(self, other):
        return isinstance(other, NormalizedEvent) and self.ev_type == other.ev_type and self.key == other.key \
                and self.program == other.program and self.channel == other.channel


class NormalizedTrack:
    """Events keyed by absolute time in seconds, in the order they were produced."""

    def __init__(self):
        self.events: list[tuple[float, NormalizedEvent]] = []

    def append(self, time: float, event: NormalizedEvent):
        self.events.append((time, event))

    def __iter__(self) -> Iterator[tuple[float, NormalizedEvent]]:
        return iter(self.events)

    def __len__(self):
        return len(self.events)

    def __getitem__(self, index):
        return self.events[index]

    def __repr__(self):
        return f'NormalizedTrack(events: {len(self.events)})'

    def to_list(self) -> list[dict]:
        return [{"time": time, **event.to_dict()} for time, event in self.events]


class TempoTimeline:
    """
    Append-only (sample index, microseconds per tick) checkpoints, shared by every
    track pass of one render. A checkpoint recorded while rendering one track is
    replayed when any later pass reaches the same sample index.
    """

    def __init__(self):
        self.checkpoints: list[tuple[int, float]] = []
        self._at: dict[int, float] = {}
        self._indices: list[int] = []

    def record(self, sample_index: int, usec_per_tick: float):
        self.checkpoints.append((sample_index, usec_per_tick))
        if sample_index not in self._at:
            bisect.insort(self._indices, sample_index)
        # several checkpoints at one index: the last recorded wins
        self._at[sample_index] = usec_per_tick

    def at(self, sample_index: int) -> float | None:
        return self._at.get(sample_index)

    def next_index(self, start: int, stop: int) -> int | None:
        """First checkpoint index in [start, stop)."""
        i = bisect.bisect_left(self._indices, start)
        if i < len(self._indices) and self._indices[i] < stop:
            return self._indices[i]
        return None

    def __len__(self):
        return len(self.checkpoints)

    def __iter__(self):
        return iter(self.checkpoints)

    def __repr__(self):
        return f'TempoTimeline({self.checkpoints})'
