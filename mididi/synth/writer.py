from __future__ import annotations

import wave

import numpy as np

from ..const import CHANNELS, SAMPLE_RATE, SAMPLE_WIDTH


class WavWriter:
    """16-bit signed mono PCM in a RIFF/WAVE container, written in sample order."""

    def __init__(self, wav: wave.Wave_write, path: str):
        self.wav = wav
        self.path = path
        self.written = 0

    @classmethod
    def create(cls, path: str, sample_rate: int = SAMPLE_RATE) -> WavWriter:
        wav = wave.open(str(path), 'wb')
        wav.setnchannels(CHANNELS)
        wav.setsampwidth(SAMPLE_WIDTH)
        wav.setframerate(sample_rate)
        return cls(wav, path)

    def write_samples(self, samples: np.ndarray):
        self.wav.writeframes(samples.astype('<i2').tobytes())
        self.written += len(samples)

    def finalize(self):
        self.wav.close()

    def __repr__(self):
        return f'WavWriter({self.path}, written: {self.written})'
