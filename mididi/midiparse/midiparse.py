#!/usr/bin/env python3

from __future__ import annotations

import logging
import pprint
import sys

from ..error import MidiError
from . import EventDecoder, read_midi


def main(argv: list[str] | None = None) -> int:
    prog, *args = sys.argv if argv is None else argv

    if '-v' in args:
        EventDecoder.LOG = True
        args.remove('-v')

    if not args:
        print(f'Usage: {prog} [-v] <midi-file>', file=sys.stderr)
        return 1

    logging.basicConfig(level=logging.DEBUG if EventDecoder.LOG else logging.WARNING)

    try:
        midi_file = read_midi(args[0])
    except MidiError as e:
        print(e, file=sys.stderr)
        return 1

    hdr = midi_file.header
    print(f'MIDI Header: fmt={hdr.fmt.name}, tracks={hdr.tracks}, division={hdr.division}')

    for i, trk in enumerate(midi_file.tracks):
        print(f'MIDI Track {i}: {trk.name or "(unnamed)"}, {len(trk)} events')
        pprint.pprint(list(trk.absolute()))

    return 0


if __name__ == '__main__':
    sys.exit(main())
