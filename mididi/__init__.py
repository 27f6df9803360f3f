from .error import MidiError, MidiErrorType, MidiUnsupported
from .midiparse import MidiFile, midi_parse, read_midi
from .synth import ProgressInfo, generate_audio, render_in_background

__version__ = "0.1.0"
