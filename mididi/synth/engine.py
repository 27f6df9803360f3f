from __future__ import annotations

import logging
import math
import wave
from threading import Thread
from typing import Callable

import numpy as np

from ..const import (
    ATTENUATION, CHANNEL_SLOTS, DEFAULT_PROGRAM, DEFAULT_TEMPO, DEFAULT_VOLUME,
    SAMPLE_MAX, SAMPLE_RATE, WRITE_BLOCK,
)
from ..error import MidiError, MidiErrorType, MidiUnsupported
from ..midiparse import (
    ControllerType, MetaEventType, MidiEventType, MidiFile, MidiFormat, MidiTrack, MidiTrackEventType,
)
from .oscillator import oscillator_for_program, render
from .progress import ProgressInfo
from .timeline import NormalizedEvent, NormalizedEventType, NormalizedTrack, TempoTimeline
from .writer import WavWriter


logger = logging.getLogger(__name__)

SECONDS_PER_SAMPLE = 1.0 / SAMPLE_RATE


class PressedKeyInfo:
    def __init__(self, channel: int, key: int, velocity: int):
        # seconds since the note-on, drives the oscillator phase
        self.elapsed_time = 0.0
        self.channel = channel
        self.key = key
        self.velocity = velocity

    def __repr__(self):
        return f'Key(ch: {self.channel}, key: {self.key}, vel: {self.velocity}, t: {self.elapsed_time:.4f})'


def check_renderable(midi_file: MidiFile) -> int:
    """Returns the file's ticks per quarter note, or raises if it cannot be rendered."""
    if midi_file.header.fmt == MidiFormat.SequenceTrack:
        raise MidiUnsupported('Sequential track files (format 2) cannot be rendered')

    count = midi_file.simult_track_count()
    if len(midi_file.tracks) < count:
        raise MidiError(f'Expected {count} tracks to render, file has {len(midi_file.tracks)}')

    match midi_file.header.division:
        case int(tpqn) if tpqn > 0:
            return tpqn

        case int(tpqn):
            raise MidiError(f'Bad MIDI division: {tpqn} ticks per quarter note')

        case (fps, tpf):
            raise MidiUnsupported(f'SMPTE divisions are not supported ({fps} fps, {tpf} ticks per frame)')


class Synthesizer:
    """
    Renders every simultaneous track of a MIDI file into one mixed 16-bit buffer,
    building a normalized key on/off timeline per track on the same sample grid.

    Tracks are rendered one after the other, each from sample 0, and summed into
    the shared buffer with saturation. Tempo changes go into a TempoTimeline shared
    by all passes, so a tempo set in an earlier track also moves later tracks. Each
    pass starts at the tempo the previous pass ended on.
    """

    def __init__(self, midi_file: MidiFile, progress: ProgressInfo | None = None,
                 rng: np.random.Generator | None = None):
        self.midi_file = midi_file
        self.progress = progress or ProgressInfo()
        self.rng = rng or np.random.default_rng()
        self.ticks_per_quarter = check_renderable(midi_file)

        self.samples = np.zeros(0, dtype=np.int16)
        self.tempo = TempoTimeline()
        self.usec_per_tick = self._usec_per_tick(DEFAULT_TEMPO)

    def __repr__(self):
        return f'Synthesizer({self.midi_file.header}, samples: {len(self.samples)})'

    def render(self) -> tuple[np.ndarray, list[NormalizedTrack]]:
        tracks = []
        for index in range(self.midi_file.simult_track_count()):
            self.progress.update(track=index, track_progress=0.0)

            samples, normalized = self._render_track(self.midi_file.tracks[index])
            self._mix(samples)
            tracks.append(normalized)

            logger.debug(f'Track {index}: {len(normalized)} key events, {len(samples)} samples')

        return self.samples, tracks

    def _usec_per_tick(self, tempo: int) -> float:
        return tempo / self.ticks_per_quarter

    def _render_track(self, track: MidiTrack) -> tuple[np.ndarray, NormalizedTrack]:
        programs = [DEFAULT_PROGRAM] * CHANNEL_SLOTS
        volumes = [DEFAULT_VOLUME] * CHANNEL_SLOTS
        pressed: list[PressedKeyInfo] = []
        normalized = NormalizedTrack()
        segments: list[np.ndarray] = []

        sample_pointer = 0
        usec_per_tick = self.usec_per_tick
        if (checkpoint := self.tempo.at(0)) is not None:
            usec_per_tick = checkpoint

        total = len(track)
        for event_index, (dt, ev) in enumerate(track):
            self.progress.update(track_progress=event_index / total)

            start = sample_pointer
            sample_pointer, usec_per_tick = self._advance(sample_pointer, float(dt), usec_per_tick)
            if sample_pointer > start:
                segments.append(self._synthesize(sample_pointer - start, pressed, programs, volumes))

            now = sample_pointer * SECONDS_PER_SAMPLE

            match ev.track_ev_type:
                case MidiTrackEventType.Meta if ev.track_ev.ev_type == MetaEventType.Tempo:
                    if ev.track_ev.tag == 0:
                        raise MidiError('Bad MIDI tempo event. Tempo must be non-zero')
                    usec_per_tick = self._usec_per_tick(ev.track_ev.tag)
                    self.tempo.record(sample_pointer, usec_per_tick)

                case MidiTrackEventType.Midi:
                    midi = ev.track_ev
                    channel = midi.channel

                    if midi.is_note_off:
                        key, _ = midi.tag
                        for i, info in enumerate(pressed):
                            if info.channel == channel and info.key == key:
                                del pressed[i]
                                break
                        normalized.append(now, NormalizedEvent(NormalizedEventType.KeyOff, key, programs[channel], channel))

                    elif midi.is_note_on:
                        key, velocity = midi.tag
                        # a second note-on for a held key stacks another voice
                        pressed.append(PressedKeyInfo(channel, key, velocity))
                        normalized.append(now, NormalizedEvent(NormalizedEventType.KeyOn, key, programs[channel], channel))

                    elif midi.ev_type == MidiEventType.ControllerChange \
                            and midi.tag.controller == ControllerType.ChannelVolumeMSB:
                        volumes[channel] = midi.tag.value

                    elif midi.ev_type == MidiEventType.ProgramChange:
                        programs[channel] = midi.tag

        self.usec_per_tick = usec_per_tick

        if segments:
            return np.concatenate(segments), normalized
        return np.zeros(0, dtype=np.int16), normalized

    def _advance(self, sample_pointer: int, remaining: float, usec_per_tick: float) -> tuple[int, float]:
        """
        Steps one sample at a time while more than one sample's worth of ticks
        remains, counted in closed form between tempo checkpoints. A checkpoint at
        index i takes effect once sample i has been produced. The leftover fraction
        of a sample is dropped.
        """
        tick_per_sample = 1_000_000.0 / usec_per_tick / SAMPLE_RATE

        while remaining > tick_per_sample:
            steps = math.ceil(remaining / tick_per_sample) - 1
            if steps <= 0:
                break

            index = self.tempo.next_index(sample_pointer, sample_pointer + steps)
            if index is None:
                sample_pointer += steps
                remaining -= steps * tick_per_sample
                break

            steps = index - sample_pointer + 1
            sample_pointer += steps
            remaining -= steps * tick_per_sample

            usec_per_tick = self.tempo.at(index)
            tick_per_sample = 1_000_000.0 / usec_per_tick / SAMPLE_RATE

        return sample_pointer, usec_per_tick

    def _synthesize(self, count: int, pressed: list[PressedKeyInfo],
                    programs: list[int], volumes: list[int]) -> np.ndarray:
        if not pressed:
            return np.zeros(count, dtype=np.int16)

        offsets = np.arange(count) * SECONDS_PER_SAMPLE
        mixed = np.zeros(count)

        for info in pressed:
            osc = oscillator_for_program(programs[info.channel])
            signal = render(osc, info.elapsed_time + offsets, info.key, self.rng)
            mixed += signal * (volumes[info.channel] / 127.0) * (info.velocity / 127.0)
            info.elapsed_time += count * SECONDS_PER_SAMPLE

        mixed /= ATTENUATION
        np.clip(mixed, -1.0, 1.0, out=mixed)

        # astype truncates towards zero
        return (mixed * SAMPLE_MAX).astype(np.int16)

    def _mix(self, samples: np.ndarray):
        if len(samples) > len(self.samples):
            grown = np.zeros(len(samples), dtype=np.int16)
            grown[:len(self.samples)] = self.samples
            self.samples = grown

        head = self.samples[:len(samples)].astype(np.int32) + samples
        self.samples[:len(samples)] = np.clip(head, -SAMPLE_MAX, SAMPLE_MAX)


WriterFactory = Callable[[str], WavWriter]


def generate_audio(midi_file: MidiFile, wav_path: str, progress: ProgressInfo,
                   rng: np.random.Generator | None = None,
                   writer_factory: WriterFactory = WavWriter.create):
    """
    Renders `midi_file` to `wav_path`. Never raises: the outcome is published on
    `progress` as either the normalized tracks or the error that stopped the run.
    """
    try:
        synth = Synthesizer(midi_file, progress, rng)
        writer = writer_factory(wav_path)
    except MidiError as e:
        progress.fail(e)
        return
    except (OSError, wave.Error) as e:
        progress.fail(MidiError(str(e), MidiErrorType.IO))
        return

    try:
        samples, tracks = synth.render()
    except MidiError as e:
        progress.fail(e)
        return
    except Exception as e:
        logger.exception(f'Rendering {wav_path} failed')
        progress.fail(MidiError(f'Rendering failed: {e!r}'))
        return

    written = 0
    try:
        for start in range(0, len(samples), WRITE_BLOCK):
            writer.write_samples(samples[start:start + WRITE_BLOCK])
            written = min(start + WRITE_BLOCK, len(samples))
        writer.finalize()
    except (OSError, wave.Error) as e:
        logger.error(f'Writing {wav_path} failed after {written} samples: {e}')
        progress.fail(MidiError(str(e), MidiErrorType.IO))
        return

    progress.finish(tracks)


def render_in_background(midi_file: MidiFile, wav_path: str, progress: ProgressInfo,
                         rng: np.random.Generator | None = None,
                         writer_factory: WriterFactory = WavWriter.create) -> Thread:
    # unsupported files are rejected here, before a thread exists to report them
    check_renderable(midi_file)

    thread = Thread(
        target=generate_audio,
        args=(midi_file, wav_path, progress, rng, writer_factory),
        daemon=True,
    )
    thread.start()
    return thread

