#!/usr/bin/env python3

from __future__ import annotations

import logging
import sys
import time

from .const import POLL_INTERVAL
from .error import MidiError
from .midiparse import MidiFile
from .synth import ProgressInfo, render_in_background
from .synth.oscillator import family_name


def main(argv: list[str] | None = None) -> int:
    prog, *args = sys.argv if argv is None else argv

    verbose = '-v' in args
    args = [arg for arg in args if arg != '-v']

    if len(args) < 2:
        print(f'Usage: {prog} [-v] <input.mid> <output.wav>', file=sys.stderr)
        return 1

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
    )

    in_path, out_path = args[:2]

    try:
        midi_file = MidiFile.read_midi(in_path)
    except MidiError as e:
        print(e, file=sys.stderr)
        return 1

    ntracks = midi_file.simult_track_count()
    progress = ProgressInfo()

    try:
        render_in_background(midi_file, out_path, progress)
    except MidiError as e:
        print(e, file=sys.stderr)
        return 1

    while True:
        snap = progress.snapshot()
        print(f'\rTrack: {snap.track + 1}/{ntracks}, Progress: {snap.track_progress * 100:5.1f}%', end='', flush=True)
        if snap.done:
            break
        time.sleep(POLL_INTERVAL)
    print()

    if snap.error is not None:
        print(snap.error, file=sys.stderr)
        return 1

    for i, track in enumerate(snap.result):
        families = sorted({family_name(ev.program) for _, ev in track})
        if families:
            print(f'Track {i}: {len(track)} key events ({", ".join(families)})')
        else:
            print(f'Track {i}: no key events')
    print(f'Wrote {out_path}')

    return 0


if __name__ == '__main__':
    sys.exit(main())
