from .engine import PressedKeyInfo, Synthesizer, check_renderable, generate_audio, render_in_background
from .oscillator import NOTE_FREQUENCIES, Oscillator, PROGRAM_OSCILLATORS, oscillator_for_program
from .progress import ProgressInfo, ProgressSnapshot
from .timeline import NormalizedEvent, NormalizedEventType, NormalizedTrack, TempoTimeline
from .writer import WavWriter
