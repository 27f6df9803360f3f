from __future__ import annotations

import threading

from ..error import MidiError
from .timeline import NormalizedTrack


class ProgressSnapshot:
    def __init__(self, track: int, track_progress: float,
                 result: list[NormalizedTrack] | None, error: MidiError | None):
        self.track = track
        self.track_progress = track_progress
        self.result = result
        self.error = error

    @property
    def done(self) -> bool:
        return self.result is not None or self.error is not None

    def __repr__(self):
        return f'Progress(track: {self.track}, progress: {self.track_progress:.3f}, ' \
               f'done: {self.done}, error: {self.error})'


class ProgressInfo:
    """
    The only state shared between a render thread and whoever is watching it.
    Written by the renderer, polled by everyone else; every access holds the lock
    just long enough to copy or set a field group.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.track = 0
        self.track_progress = 0.0
        self.result: list[NormalizedTrack] | None = None
        self.error: MidiError | None = None

    def update(self, track: int | None = None, track_progress: float | None = None):
        with self.lock:
            if track is not None:
                self.track = track
            if track_progress is not None:
                self.track_progress = track_progress

    def _finalize(self, result, error):
        with self.lock:
            if self.result is not None or self.error is not None:
                raise RuntimeError('Progress already finalized')
            self.result = result
            self.error = error

    def finish(self, result: list[NormalizedTrack]):
        self._finalize(result, None)

    def fail(self, error: MidiError):
        self._finalize(None, error)

    @property
    def done(self) -> bool:
        with self.lock:
            return self.result is not None or self.error is not None

    def snapshot(self) -> ProgressSnapshot:
        with self.lock:
            return ProgressSnapshot(self.track, self.track_progress, self.result, self.error)

    def __repr__(self):
        return repr(self.snapshot())
