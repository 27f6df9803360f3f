from __future__ import annotations

import logging
import sys

import flask

from ..const import HOST, PORT
from ..error import MidiError
from ..midiparse import MidiFile
from ..synth import ProgressInfo, render_in_background


app = flask.Flask(__name__)
app.config["PROGRESS"] = ProgressInfo()
app.config["TRACKS"] = 0


def bind(progress: ProgressInfo, tracks: int):
    app.config["PROGRESS"] = progress
    app.config["TRACKS"] = tracks


def error_json(error: MidiError | None):
    if error is None:
        return None
    return {
        "kind": error.kind,
        "message": error.message,
    }


@app.route("/progress")
def get_progress():
    snap = app.config["PROGRESS"].snapshot()
    return flask.jsonify({
        "track": snap.track,
        "tracks": app.config["TRACKS"],
        "track_progress": snap.track_progress,
        "done": snap.done,
        "error": error_json(snap.error),
    })


def _finished_tracks():
    snap = app.config["PROGRESS"].snapshot()
    if snap.error is not None:
        return None, (flask.jsonify({"error": error_json(snap.error)}), 500)
    if snap.result is None:
        return None, (flask.jsonify({"error": None, "done": False}), 409)
    return snap.result, None


@app.route("/timeline")
def get_timeline():
    tracks, failed = _finished_tracks()
    if failed:
        return failed

    return flask.jsonify({
        "tracks": [track.to_list() for track in tracks],
    })


@app.route("/timeline/<int:track>")
def get_track(track):
    tracks, failed = _finished_tracks()
    if failed:
        return failed

    if track >= len(tracks):
        return flask.jsonify({"error": {"kind": "NotFound", "message": f"No track {track}"}}), 404
    return flask.jsonify({
        "track": track,
        "events": tracks[track].to_list(),
    })


def main(argv: list[str] | None = None) -> int:
    prog, *args = sys.argv if argv is None else argv

    if len(args) < 2:
        print(f"Usage: {prog} <input.mid> <output.wav> [port]", file=sys.stderr)
        return 1

    logging.basicConfig(level=logging.WARNING)

    try:
        midi_file = MidiFile.read_midi(args[0])
        progress = ProgressInfo()
        render_in_background(midi_file, args[1], progress)
    except MidiError as e:
        print(e, file=sys.stderr)
        return 1

    bind(progress, midi_file.simult_track_count())
    port = int(args[2]) if len(args) > 2 else PORT
    print(f"Serving render progress on http://{HOST}:{port}")
    app.run(host=HOST, port=port)

    return 0


if __name__ == "__main__":
    sys.exit(main())
