# Output waveform: 16-bit signed PCM, mono
SAMPLE_RATE     = 44100
SAMPLE_WIDTH    = 2
CHANNELS        = 1
SAMPLE_MAX      = 32767

# uspqn used until the first tempo event, 150 bpm
DEFAULT_TEMPO   = 400_000

# Mix headroom: voice sum is divided by this, not by the voice count
ATTENUATION     = 10.0

# Peak level of the square and sawtooth oscillators
WAVE_AMPLITUDE  = 0.25

# Length of the noise burst used for percussive programs, in seconds
DRUM_DECAY      = 0.15

# Channel table is indexed by the raw channel nibble
CHANNEL_SLOTS   = 256
DEFAULT_PROGRAM = 0
DEFAULT_VOLUME  = 127

# Samples handed to the waveform writer per call
WRITE_BLOCK     = 4096

# CLI progress poll cadence, seconds
POLL_INTERVAL   = 1 / 60

HOST = "127.0.0.1"
PORT = 3000
