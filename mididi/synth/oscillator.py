from __future__ import annotations

import enum

import numpy as np

from ..const import DRUM_DECAY, SAMPLE_MAX, WAVE_AMPLITUDE


# Equal temperament, A4 (key 69) = 440Hz
NOTE_FREQUENCIES = 440.0 * 2.0 ** ((np.arange(128) - 69) / 12.0)


class Oscillator(enum.Enum):
    Sine        = 0
    Square      = 1
    Sawtooth    = 2
    Drum        = 3


# General MIDI program families, 8 programs each
PROGRAM_FAMILIES = (
    ('Piano',                   Oscillator.Sine),
    ('Chromatic Percussion',    Oscillator.Sine),
    ('Organ',                   Oscillator.Sine),
    ('Guitar',                  Oscillator.Sine),
    ('Bass',                    Oscillator.Sawtooth),
    ('Strings',                 Oscillator.Square),
    ('Ensemble',                Oscillator.Square),
    ('Brass',                   Oscillator.Sawtooth),
    ('Reed',                    Oscillator.Sawtooth),
    ('Pipe',                    Oscillator.Square),
    ('Synth Lead',              Oscillator.Square),
    ('Synth Pad',               Oscillator.Sine),
    ('Synth Effects',           Oscillator.Drum),
    ('Ethnic',                  Oscillator.Sine),
    ('Percussive',              Oscillator.Drum),
    ('Sound Effects',           Oscillator.Drum),
)

PROGRAM_OSCILLATORS = tuple(osc for _, osc in PROGRAM_FAMILIES for _ in range(8))


def oscillator_for_program(program: int) -> Oscillator:
    return PROGRAM_OSCILLATORS[program & 0x7f]


def family_name(program: int) -> str:
    return PROGRAM_FAMILIES[(program & 0x7f) // 8][0]


def note_sine(t: np.ndarray, key: int) -> np.ndarray:
    return np.sin(t * NOTE_FREQUENCIES[key] * 2.0 * np.pi)


def note_square(t: np.ndarray, key: int) -> np.ndarray:
    progress = (t * NOTE_FREQUENCIES[key]) % 1.0
    return np.where(progress >= 0.5, WAVE_AMPLITUDE, -WAVE_AMPLITUDE)


def note_sawtooth(t: np.ndarray, key: int) -> np.ndarray:
    progress = (t * NOTE_FREQUENCIES[key]) % 1.0
    return (progress * 2.0 - 1.0) * WAVE_AMPLITUDE


def note_drum(t: np.ndarray, key: int, rng: np.random.Generator) -> np.ndarray:
    # pitchless noise burst with a linear decay, silent outside the burst
    noise = rng.integers(-SAMPLE_MAX, SAMPLE_MAX, size=t.shape, endpoint=True) / SAMPLE_MAX
    inside = (t >= 0.0) & (t < DRUM_DECAY)
    return np.where(inside, noise * (1.0 - t / DRUM_DECAY), 0.0)


def render(osc: Oscillator, t: np.ndarray, key: int, rng: np.random.Generator) -> np.ndarray:
    match osc:
        case Oscillator.Sine:
            return note_sine(t, key)

        case Oscillator.Square:
            return note_square(t, key)

        case Oscillator.Sawtooth:
            return note_sawtooth(t, key)

        case Oscillator.Drum:
            return note_drum(t, key, rng)
