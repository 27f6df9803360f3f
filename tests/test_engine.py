import os
import tempfile
import unittest
import wave

import numpy as np

from mididi.const import SAMPLE_RATE
from mididi.error import MidiError, MidiErrorType, MidiUnsupported
from mididi.midiparse import midi_parse
from mididi.synth.engine import Synthesizer, generate_audio, render_in_background
from mididi.synth.progress import ProgressInfo
from mididi.synth.timeline import NormalizedEventType

from .smf import chunk, control, end_of_track, header, note_off, note_on, program, tempo, track


ONE_SAMPLE = 1.0 / SAMPLE_RATE


def song(*tracks, fmt=1, division=480):
    return midi_parse(header(fmt, len(tracks), division) + b''.join(track(*t) for t in tracks))


def render(midi, seed=0):
    return Synthesizer(midi, rng=np.random.default_rng(seed)).render()


def middle_c(off=None):
    """One half-second middle C at 120bpm, followed by half a second of silence."""
    return song([
        tempo(0, 500000),
        note_on(0, 0, 60, 100),
        off or note_off(480, 0, 60),
        end_of_track(480),
    ], fmt=0)


class BrokenRng:
    def integers(self, *args, **kwargs):
        raise RuntimeError('entropy pool empty')


class FailingWriter:
    def __init__(self):
        self.finalized = False

    def write_samples(self, samples):
        raise OSError('No space left on device')

    def finalize(self):
        self.finalized = True


class TestSingleNote(unittest.TestCase):
    def setUp(self):
        self.samples, self.tracks = render(middle_c())

    def test_timeline(self):
        [trk] = self.tracks
        self.assertEqual(len(trk), 2)

        (t_on, on), (t_off, off) = trk
        self.assertEqual(t_on, 0.0)
        self.assertEqual(on.ev_type, NormalizedEventType.KeyOn)
        self.assertEqual((on.key, on.program, on.channel), (60, 0, 0))
        self.assertEqual(off.ev_type, NormalizedEventType.KeyOff)
        self.assertAlmostEqual(t_off, 0.5, delta=2 * ONE_SAMPLE)

    def test_samples(self):
        self.assertEqual(self.samples.dtype, np.int16)
        self.assertAlmostEqual(len(self.samples), SAMPLE_RATE, delta=3)

        tone = self.samples[:22000]
        # full volume, velocity 100, attenuated tenfold
        self.assertGreater(tone.max(), 2500)
        self.assertLessEqual(tone.max(), 2581)
        self.assertTrue((self.samples[22060:] == 0).all())

    def test_pitch(self):
        tone = self.samples[:22000].astype(float)
        spectrum = np.abs(np.fft.rfft(tone))
        peak = np.argmax(spectrum) * SAMPLE_RATE / len(tone)
        self.assertAlmostEqual(peak, 261.63, delta=3.0)

    def test_zero_velocity_note_on_releases(self):
        samples, tracks = render(middle_c(off=note_on(480, 0, 60, 0)))
        self.assertTrue(np.array_equal(samples, self.samples))
        self.assertEqual(tracks[0].events, self.tracks[0].events)


class TestVoices(unittest.TestCase):
    def test_duplicate_note_on_stacks(self):
        samples, [trk] = render(song([
            note_on(0, 0, 69, 127),
            note_on(0, 0, 69, 127),
            note_off(480, 0, 69),
            note_off(480, 0, 69),
            end_of_track(),
        ]))

        self.assertEqual([ev.ev_type for _, ev in trk], [
            NormalizedEventType.KeyOn, NormalizedEventType.KeyOn,
            NormalizedEventType.KeyOff, NormalizedEventType.KeyOff,
        ])
        # two voices, then one left ringing after the first note-off
        self.assertGreater(samples[:17000].max(), 6000)
        self.assertGreater(samples[17700:35000].max(), 3000)
        self.assertLessEqual(samples[17700:35000].max(), 3277)

    def test_program_change(self):
        samples, [trk] = render(song([
            program(0, 0, 40),
            note_on(0, 0, 69, 100),
            note_off(480, 0, 69),
            end_of_track(),
        ]))

        self.assertEqual(trk[0][1].program, 40)
        self.assertEqual(trk[1][1].program, 40)
        self.assertEqual(set(np.unique(np.abs(samples))), {645})

    def test_program_is_per_channel(self):
        _, [trk] = render(song([
            program(0, 1, 40),
            note_on(0, 0, 60, 100),
            note_on(0, 1, 64, 100),
            end_of_track(480),
        ]))
        self.assertEqual([ev.program for _, ev in trk], [0, 40])

    def test_channel_volume(self):
        samples, [trk] = render(song([
            control(0, 0, 7, 0),
            note_on(0, 0, 69, 127),
            note_off(480, 0, 69),
            end_of_track(),
        ]))
        self.assertEqual(len(trk), 2)
        self.assertGreater(len(samples), 0)
        self.assertTrue((samples == 0).all())

    def test_drums_follow_seed(self):
        notes = song([program(0, 9, 118), note_on(0, 9, 38, 127), end_of_track(240)])
        a, _ = render(notes, seed=4)
        b, _ = render(notes, seed=4)
        self.assertTrue(np.array_equal(a, b))
        self.assertTrue((a[int(0.16 * SAMPLE_RATE):] == 0).all())


class TestTempo(unittest.TestCase):
    def _key_off_time(self, trk):
        return [t for t, ev in trk if ev.ev_type == NormalizedEventType.KeyOff][0]

    def test_default_tempo(self):
        _, [trk] = render(song([note_on(0, 0, 60, 100), note_off(480, 0, 60), end_of_track()]))
        # 400000 usec per quarter until a tempo event says otherwise
        self.assertAlmostEqual(self._key_off_time(trk), 0.4, delta=1e-3)

    def test_pass_starts_at_previous_final_tempo(self):
        _, [_, notes] = render(song(
            [tempo(480, 250000), end_of_track()],
            [note_on(0, 0, 60, 100), note_off(480, 0, 60), end_of_track()],
        ))
        self.assertAlmostEqual(self._key_off_time(notes), 0.25, delta=1e-3)

    def test_tempo_change_within_track(self):
        _, [trk] = render(song([
            note_on(0, 0, 60, 100),
            tempo(480, 250000),
            note_off(480, 0, 60),
            end_of_track(),
        ]))
        self.assertAlmostEqual(self._key_off_time(trk), 0.65, delta=1e-3)

    def test_initial_tempo_reaches_later_tracks(self):
        _, [conductor, notes] = render(song(
            [tempo(0, 1000000), end_of_track()],
            [note_on(0, 0, 60, 100), note_off(480, 0, 60), end_of_track()],
        ))
        self.assertEqual(len(conductor), 0)
        self.assertAlmostEqual(self._key_off_time(notes), 1.0, delta=1e-3)

    def test_tempo_change_reaches_later_tracks(self):
        _, [conductor, notes] = render(song(
            [tempo(0, 500000), tempo(480, 250000), end_of_track()],
            [note_on(0, 0, 60, 100), note_off(960, 0, 60), end_of_track()],
        ))
        # 480 ticks at 120bpm, then 480 at 240bpm
        self.assertAlmostEqual(self._key_off_time(notes), 0.75, delta=1e-3)

    def test_tempo_does_not_leak_backwards(self):
        _, [first, _] = render(song(
            [note_on(0, 0, 60, 100), note_off(480, 0, 60), end_of_track()],
            [tempo(0, 1000000), end_of_track()],
        ))
        self.assertAlmostEqual(self._key_off_time(first), 0.4, delta=1e-3)


class TestMixing(unittest.TestCase):
    def test_saturating_add(self):
        synth = Synthesizer(song([end_of_track()]))
        synth._mix(np.array([32000, -32000, 100], dtype=np.int16))
        synth._mix(np.array([32000, -32000, 50, 7], dtype=np.int16))
        self.assertEqual(synth.samples.tolist(), [32767, -32767, 150, 7])

    def test_loud_tracks_clip(self):
        chord = [note_on(0, 0, 69, 127) for _ in range(12)]
        samples, _ = render(song(
            [*chord, note_off(480, 0, 69), end_of_track()],
            [*chord, note_off(480, 0, 69), end_of_track()],
        ))

        self.assertEqual(samples.max(), 32767)
        self.assertEqual(samples.min(), -32767)
        # a quarter period into A4, both tracks at their positive peak
        self.assertEqual(samples[25], 32767)
        self.assertEqual(samples[75], -32767)

    def test_longest_track_sets_length(self):
        samples, _ = render(song(
            [note_on(0, 0, 60, 100), end_of_track(240)],
            [note_on(0, 0, 64, 100), end_of_track(960)],
        ))
        self.assertAlmostEqual(len(samples), 0.8 * SAMPLE_RATE, delta=3)


class TestPreconditions(unittest.TestCase):
    def test_sequence_format(self):
        with self.assertRaises(MidiUnsupported):
            render(song([end_of_track()], [end_of_track()], fmt=2))

    def test_smpte_division(self):
        midi = midi_parse(chunk(b'MThd', bytes([0, 0, 0, 1, 0xe7, 0x28])) + track(end_of_track()))
        with self.assertRaises(MidiUnsupported):
            render(midi)

    def test_zero_division(self):
        with self.assertRaises(MidiError):
            render(song([end_of_track()], division=0))

    def test_missing_tracks(self):
        # format 0 always mixes one track, even when the header declares none
        with self.assertRaises(MidiError) as ctx:
            render(midi_parse(header(0, 0)))
        self.assertNotIsInstance(ctx.exception, MidiUnsupported)

    def test_background_rejects_before_starting(self):
        progress = ProgressInfo()
        with self.assertRaises(MidiUnsupported):
            render_in_background(song([end_of_track()], fmt=2), 'unused.wav', progress)
        self.assertFalse(progress.done)


class TestGenerateAudio(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, 'out.wav')

    def tearDown(self):
        self.tmp.cleanup()

    def test_writes_wav(self):
        progress = ProgressInfo()
        generate_audio(middle_c(), self.path, progress, rng=np.random.default_rng(0))

        snap = progress.snapshot()
        self.assertIsNone(snap.error)
        self.assertEqual(len(snap.result), 1)

        expected, _ = render(middle_c())
        with wave.open(self.path, 'rb') as wav:
            self.assertEqual(wav.getnchannels(), 1)
            self.assertEqual(wav.getsampwidth(), 2)
            self.assertEqual(wav.getframerate(), SAMPLE_RATE)
            self.assertEqual(wav.getnframes(), len(expected))
            written = np.frombuffer(wav.readframes(wav.getnframes()), dtype='<i2')

        self.assertTrue(np.array_equal(written, expected))

    def test_background_render(self):
        progress = ProgressInfo()
        thread = render_in_background(song(
            [tempo(0, 600000), end_of_track()],
            [note_on(0, 0, 60, 100), note_off(480, 0, 60), end_of_track()],
        ), self.path, progress)
        thread.join(timeout=60)

        snap = progress.snapshot()
        self.assertTrue(snap.done)
        self.assertIsNone(snap.error)
        self.assertEqual(snap.track, 1)
        self.assertEqual(len(snap.result), 2)
        self.assertTrue(os.path.exists(self.path))

    def test_write_failure(self):
        progress = ProgressInfo()
        writer = FailingWriter()

        with self.assertLogs('mididi.synth.engine', level='ERROR'):
            generate_audio(middle_c(), self.path, progress, writer_factory=lambda path: writer)

        snap = progress.snapshot()
        self.assertIsNone(snap.result)
        self.assertEqual(snap.error.error_type, MidiErrorType.IO)
        self.assertIn('No space left', snap.error.message)
        self.assertFalse(writer.finalized)

    def test_unwritable_path(self):
        progress = ProgressInfo()
        generate_audio(middle_c(), os.path.join(self.tmp.name, 'missing', 'out.wav'), progress)
        self.assertEqual(progress.snapshot().error.kind, 'IO')

    def test_unsupported_file(self):
        progress = ProgressInfo()
        generate_audio(song([end_of_track()], [end_of_track()], fmt=2), self.path, progress)
        self.assertIsInstance(progress.snapshot().error, MidiUnsupported)
        self.assertFalse(os.path.exists(self.path))

    def test_background_zero_tracks(self):
        progress = ProgressInfo()
        with self.assertRaises(MidiError):
            render_in_background(midi_parse(header(0, 0)), self.path, progress)

        generate_audio(midi_parse(header(0, 0)), self.path, progress)
        self.assertEqual(progress.snapshot().error.kind, 'InvalidMidi')

    def test_zero_tempo_finishes_progress(self):
        midi = middle_c()
        # decoding rejects a zero tempo, so patch one into an already loaded file
        midi.tracks[0].events[0][1].track_ev.tag = 0

        progress = ProgressInfo()
        render_in_background(midi, self.path, progress).join(timeout=60)

        snap = progress.snapshot()
        self.assertTrue(snap.done)
        self.assertIsNone(snap.result)
        self.assertEqual(snap.error.kind, 'InvalidMidi')
        self.assertIn('non-zero', snap.error.message)

    def test_unexpected_failure_finishes_progress(self):
        notes = song([program(0, 9, 118), note_on(0, 9, 38, 127), end_of_track(240)])
        progress = ProgressInfo()

        with self.assertLogs('mididi.synth.engine', level='ERROR'):
            thread = render_in_background(notes, self.path, progress, rng=BrokenRng())
            thread.join(timeout=60)

        self.assertFalse(thread.is_alive())
        snap = progress.snapshot()
        self.assertTrue(snap.done)
        self.assertIsNone(snap.result)
        self.assertIn('entropy pool empty', snap.error.message)


if __name__ == "__main__":
    unittest.main()
