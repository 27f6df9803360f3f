#!/usr/bin/env python3

from __future__ import annotations

import enum
import io
import logging
from typing import BinaryIO, Iterator

from ..error import MidiError, MidiErrorType, MidiUnsupported
from .reader import MidiReader


logger = logging.getLogger(__name__)


class MidiFormat(enum.Enum):
    SingleTrack     = 0
    SimulTrack      = 1
    SequenceTrack   = 2


class MidiSMPTETag:
    """Track start time from an SMPTE offset meta event, payload `hr mn se fr ff`."""

    def __init__(self, hours: int, minutes: int, seconds: int, frames: int, fraction: int):
        self.hours = hours
        self.minutes = minutes
        self.seconds = seconds
        self.frames = frames
        # hundredths of a frame
        self.fraction = fraction

    def _fields(self):
        return self.hours, self.minutes, self.seconds, self.frames, self.fraction

    def __repr__(self):
        return 'SMPTE({:02}:{:02}:{:02}:{:02}.{:02})'.format(*self._fields())

    def __eq__(self, other):
        return isinstance(other, MidiSMPTETag) and self._fields() == other._fields()


# ticks per quarter note, or (frames per second, ticks per frame) for SMPTE timing
MidiDivision = int | tuple[int, int]


class MidiHeader:
    """The MThd chunk: file format, declared track count and time division."""

    def __init__(self, fmt: MidiFormat, tracks: int, division: MidiDivision):
        self.fmt = fmt
        self.tracks = tracks
        self.division = division

    def __repr__(self):
        return f'MidiHeader({self.fmt.name}, tracks: {self.tracks}, division: {self.division})'

    def __eq__(self, other):
        if not isinstance(other, MidiHeader):
            return False
        return (self.fmt, self.tracks, self.division) == (other.fmt, other.tracks, other.division)


class MidiEventType(enum.Enum):
    NoteOff             = 0x8 # 0kkkkkkk 0vvvvvvv : key=[0-127], vel=[0-127]
    NoteOn              = 0x9 # 0kkkkkkk 0vvvvvvv : key=[0-127], vel=[0-127]
    KeyPressure         = 0xa # 0kkkkkkk 0ppppppp : key=[0-127], pressure=[0-127]
    ControllerChange    = 0xb # 0ccccccc 0vvvvvvv : controller=[0-127], controller-value=[0-127]
    ProgramChange       = 0xc # 0ppppppp : program=[0-127]
    ChannelPressure     = 0xd # 0ppppppp : pressure=[0-127]
    PitchWheel          = 0xe # 0lllllll 0hhhhhhh : low7 | high7 << 7 = 14-bit value


class ControllerType(enum.Enum):
    BankSelectMSB                   = 0x00
    ModulationWheel                 = 0x01
    BreathControlMSB                = 0x02
    PortamentoTimeMSB               = 0x05
    DataEntryMSB                    = 0x06
    ChannelVolumeMSB                = 0x07
    PanMSB                          = 0x0a
    ExpressionControllerMSB         = 0x0b
    GeneralPurposeController1MSB    = 0x12
    BankSelectLSB                   = 0x20
    DataEntryLSB                    = 0x26
    DamperPedalOn                   = 0x40 # on/off
    PortamentoOnOff                 = 0x41 # on/off
    EffectsDepth1LSB                = 0x5b
    EffectsDepth3LSB                = 0x5d
    NonRegisteredParameterNumberLSB = 0x62
    NonRegisteredParameterNumberMSB = 0x63
    RegisteredParameterNumberLSB    = 0x64
    RegisteredParameterNumberMSB    = 0x65
    AllSoundOff                     = 0x78 # no value
    ResetAllControllers             = 0x79 # no value
    AllNotesOff                     = 0x7b # no value
    PolyModeOnOffAllNotesOff        = 0x7e # no value


_SWITCH_CONTROLLERS = {ControllerType.DamperPedalOn, ControllerType.PortamentoOnOff}
_MODE_CONTROLLERS = {
    ControllerType.AllSoundOff, ControllerType.ResetAllControllers,
    ControllerType.AllNotesOff, ControllerType.PolyModeOnOffAllNotesOff,
}


class ControllerMessage:
    """
    A decoded control change. `controller` is None when the controller number is not
    one of the known ControllerType values; the raw number is always kept.
    """

    def __init__(self, number: int, value: int):
        self.number = number
        self.raw = value

        try:
            self.controller = ControllerType(number)
        except ValueError:
            self.controller = None

        if self.controller in _SWITCH_CONTROLLERS:
            self.value = value >= 64
        elif self.controller in _MODE_CONTROLLERS:
            self.value = None
        else:
            self.value = value

    def __repr__(self):
        name = self.controller.name if self.controller else f'Controller{self.number:02x}'
        return f'{name}({self.value})'

    def __eq__(self, other):
        return isinstance(other, ControllerMessage) and self.number == other.number and self.raw == other.raw


# (key, velocity) | (key, pressure) | program | pressure | pitch | ControllerMessage
MidiEventTag = int | tuple[int, int] | ControllerMessage


class MidiEvent:
    """
    The data encoded by each event type and associated tag can be found here:
    http://personal.kent.edu/~sbirch/Music_Production/MP-II/MIDI/midi_channel_voice_messages.htm
    """

    def __init__(self, ev_type: MidiEventType, channel: int, tag: MidiEventTag):
        self.ev_type = ev_type
        self.channel = channel
        self.tag     = tag

    @property
    def is_note_on(self) -> bool:
        return self.ev_type == MidiEventType.NoteOn and self.tag[1] != 0

    @property
    def is_note_off(self) -> bool:
        # note-on with zero velocity is a note-off by convention
        return self.ev_type == MidiEventType.NoteOff \
                or (self.ev_type == MidiEventType.NoteOn and self.tag[1] == 0)

    def __repr__(self):
        return f'Midi({self.ev_type},{self.channel:0x},{self.tag})'

    def __eq__(self, other):
        return isinstance(other, MidiEvent) and self.ev_type == other.ev_type \
                and self.channel == other.channel and self.tag == other.tag


class SysExEvent:
    """Payload is discarded, only its length is kept."""

    def __init__(self, ev_len: int):
        self.ev_len = ev_len

    def __repr__(self):
        return f'SysEx({self.ev_len})'

    def __eq__(self, other):
        return isinstance(other, SysExEvent) and self.ev_len == other.ev_len


class MetaEventType(enum.Enum):
    Unknown         = -1
    SequenceNumber  = 0x00 # 02 ss ss
    TextEvent       = 0x01 # len text...
    Copyright       = 0x02 # len text...
    TrackName       = 0x03 # len text...
    InstrumentName  = 0x04 # len text...
    Lyric           = 0x05 # len text...
    Marker          = 0x06 # len text...
    CuePoint        = 0x07 # len text...
    ChannelPrefix   = 0x20 # 01 cc
    EndOfTrack      = 0x2f # 00
    Tempo           = 0x51 # 03 tt tt tt
    SMPTEOffset     = 0x54 # 05 hr mn se fr ff
    TimeSignature   = 0x58 # 04 nn dd cc bb
    KeySignature    = 0x59 # 02 sf mi
    CustomEvent     = 0x7f # len data...


# nn dd cc bb
# numerator = nn
# denominator = 2^dd
# midi clocks per metronome tick = cc
# midi 32nd notes per quarter note = bb
MidiTimeSignature = tuple[int, int, int, int]


# sf mi
# sf: -7 = 7 flats, -1 = 1 flat, 0 = key of C, +1 = 1 sharp, +7 = 7 sharps
# mi: 0 = major key, 1 = minor key
MidiKeySignature = tuple[int, int]


MetaEventTag = int | str | MidiSMPTETag | MidiTimeSignature | MidiKeySignature | bytes | None


class MetaEvent:
    def __init__(self, ev_type: MetaEventType, tag: MetaEventTag):
        self.ev_type = ev_type
        self.tag     = tag

    def __repr__(self):
        return f'Meta({self.ev_type},{self.tag})'

    def __eq__(self, other):
        return isinstance(other, MetaEvent) and self.ev_type == other.ev_type and self.tag == other.tag


class MidiTrackEventType(enum.Enum):
    Midi    = 0
    SysEx   = 1
    Meta    = 2


class MidiTrackEvent:
    def __init__(self, track_ev_type: MidiTrackEventType, track_ev: MidiEvent | SysExEvent | MetaEvent):
        self.track_ev_type = track_ev_type
        self.track_ev = track_ev

    @property
    def is_end_of_track(self) -> bool:
        return self.track_ev_type == MidiTrackEventType.Meta and self.track_ev.ev_type == MetaEventType.EndOfTrack

    def __repr__(self):
        return str(self.track_ev)

    def __eq__(self, other):
        return isinstance(other, MidiTrackEvent) and self.track_ev_type == other.track_ev_type \
                and self.track_ev == other.track_ev


class EventDecoder:
    """
    Decodes one (delta-time, event) record at a time. The running status byte lives
    here and is carried from one call to the next, so one decoder serves one track.
    """

    TEXT_ENCODING = 'utf-8'
    LEGACY_ENCODING = 'latin-1'
    LOG = False

    def __init__(self, reader: MidiReader):
        self.reader = reader
        self.running_status: int | None = None

    def __repr__(self):
        status = 'none' if self.running_status is None else f'{self.running_status:02x}'
        return f'EventDecoder({self.reader}, status: {status})'

    def _log(self, msg):
        if self.LOG:
            logger.debug(msg)

    def read_event(self) -> tuple[int, MidiTrackEvent]:
        start = self.reader.offset
        self._log(f'===== cur: {start:0x} =====')

        delta_time = self.reader.read_vlq()
        self._log(f'Read deltatime: {delta_time:0x}')

        status = self.reader.read_byte()
        self._log(f'Read status byte: {status:02x}')

        match status:
            case 0xff: # meta-event
                ev = MidiTrackEvent(MidiTrackEventType.Meta, self._parse_meta_event(start))

            case _ if status >> 4 == 0xf: # sysex
                ev = MidiTrackEvent(MidiTrackEventType.SysEx, self._parse_sysex_event(status, start))

            case _ if status & 0x80: # midi event, fresh status
                self.running_status = status
                first = self._read_data(start)
                ev = MidiTrackEvent(MidiTrackEventType.Midi, self._parse_midi_event(status, first, start))

            case _: # running status, this byte is already the first data byte
                if self.running_status is None:
                    raise MidiUnsupported(f'Data byte {status:02x} with no running status set', offset=start)
                ev = MidiTrackEvent(MidiTrackEventType.Midi, self._parse_midi_event(self.running_status, status, start))

        self._log(f'Read {self.reader.offset - start} total bytes in event: {ev}')

        return delta_time, ev

    def _read_data(self, start: int) -> int:
        data = self.reader.read_byte()
        if data & 0x80:
            raise MidiError(f'Bad MIDI data byte {data:02x}, high bit must be clear', offset=start)
        return data

    def _decode_text(self, data: bytes, start: int) -> str:
        try:
            return data.decode(self.TEXT_ENCODING)
        except UnicodeDecodeError as e:
            raise MidiError(f'Bad MIDI text event: {e}', offset=start) from e

    def _parse_sysex_event(self, status: int, start: int) -> SysExEvent:
        if status != 0xf0:
            raise MidiUnsupported(f'Unsupported sysex event type: {status:02x}', offset=start)

        # payload runs up to and including the end-of-exclusive marker
        ev_len = 0
        while self.reader.read_byte() != 0xf7:
            ev_len += 1

        self._log(f'Skipped {ev_len} bytes of sysex event data')

        return SysExEvent(ev_len)

    def _parse_meta_event(self, start: int) -> MetaEvent:
        ev_type = self.reader.read_byte()
        ev_len = self.reader.read_vlq()
        # always consume the declared payload so the stream stays aligned
        data = self.reader.read(ev_len)

        self._log(f'Meta event type: {ev_type:02x}, len: {ev_len}, data: {data}')

        match ev_type:
            case MetaEventType.SequenceNumber.value:
                return MetaEvent(MetaEventType.SequenceNumber, int.from_bytes(data, 'big'))

            case MetaEventType.TextEvent.value:
                return MetaEvent(MetaEventType.TextEvent, self._decode_text(data, start))

            case MetaEventType.TrackName.value:
                return MetaEvent(MetaEventType.TrackName, self._decode_text(data, start))

            case MetaEventType.Copyright.value | MetaEventType.InstrumentName.value | MetaEventType.Lyric.value \
                    | MetaEventType.Marker.value | MetaEventType.CuePoint.value:
                return MetaEvent(MetaEventType(ev_type), data.decode(self.LEGACY_ENCODING))

            case MetaEventType.ChannelPrefix.value:
                return MetaEvent(MetaEventType.ChannelPrefix, int.from_bytes(data, 'big'))

            case MetaEventType.EndOfTrack.value:
                self._log('===== End Of Track =====')
                return MetaEvent(MetaEventType.EndOfTrack, None)

            case MetaEventType.Tempo.value:
                if ev_len != 3:
                    raise MidiError(f'Bad MIDI tempo event. Expected 3 bytes, got {ev_len}', offset=start)
                uspqn = int.from_bytes(data, 'big')
                if uspqn == 0:
                    raise MidiError('Bad MIDI tempo event. Tempo must be non-zero', offset=start)
                return MetaEvent(MetaEventType.Tempo, uspqn)

            case MetaEventType.TimeSignature.value:
                if ev_len != 4:
                    raise MidiError(f'Bad MIDI time signature event. Expected 4 bytes, got {ev_len}', offset=start)
                nn, dd, cc, bb = data
                return MetaEvent(MetaEventType.TimeSignature, (nn, 2 ** dd, cc, bb))

            case MetaEventType.SMPTEOffset.value if ev_len == 5:
                return MetaEvent(MetaEventType.SMPTEOffset, MidiSMPTETag(*data))

            case MetaEventType.KeySignature.value if ev_len == 2:
                sf = int.from_bytes(data[:1], 'big', signed=True)
                return MetaEvent(MetaEventType.KeySignature, (sf, data[1]))

            case MetaEventType.CustomEvent.value:
                return MetaEvent(MetaEventType.CustomEvent, data)

            case _:
                logger.warning(f'Unknown MIDI meta event type: {ev_type:02x}, {ev_len} bytes skipped')
                return MetaEvent(MetaEventType.Unknown, ev_type)

    def _parse_midi_event(self, status: int, first: int, start: int) -> MidiEvent:
        ev_type = status >> 4
        channel = status & 0x0f

        self._log(f'MIDI Voice: ev_type: {ev_type:0x}, channel: {channel}')

        match ev_type:
            case MidiEventType.NoteOff.value:
                return MidiEvent(MidiEventType.NoteOff, channel, (first, self._read_data(start)))

            case MidiEventType.NoteOn.value:
                return MidiEvent(MidiEventType.NoteOn, channel, (first, self._read_data(start)))

            case MidiEventType.KeyPressure.value:
                return MidiEvent(MidiEventType.KeyPressure, channel, (first, self._read_data(start)))

            case MidiEventType.ControllerChange.value:
                message = ControllerMessage(first, self._read_data(start))
                if message.controller is None:
                    logger.warning(f'Unknown MIDI controller {first:02x} on channel {channel} at offset 0x{start:x}')
                return MidiEvent(MidiEventType.ControllerChange, channel, message)

            case MidiEventType.ProgramChange.value:
                return MidiEvent(MidiEventType.ProgramChange, channel, first)

            case MidiEventType.ChannelPressure.value:
                return MidiEvent(MidiEventType.ChannelPressure, channel, first)

            case MidiEventType.PitchWheel.value:
                high = self._read_data(start)
                return MidiEvent(MidiEventType.PitchWheel, channel, first | (high << 7))

            case _:
                raise MidiUnsupported(f'Unsupported MIDI event type: {ev_type:0x}', offset=start)


class MidiTrack:
    def __init__(self, events: list[tuple[int, MidiTrackEvent]]):
        self.events = events

    def __repr__(self):
        return f'MTrk(events: {len(self.events)})'

    def __eq__(self, other):
        return isinstance(other, MidiTrack) and self.events == other.events

    def __iter__(self) -> Iterator[tuple[int, MidiTrackEvent]]:
        return iter(self.events)

    def __len__(self):
        return len(self.events)

    def __getitem__(self, index):
        return self.events[index]

    @property
    def name(self) -> str | None:
        for _, ev in self.events:
            if ev.track_ev_type == MidiTrackEventType.Meta and ev.track_ev.ev_type == MetaEventType.TrackName:
                return ev.track_ev.tag
        return None

    def absolute(self) -> Iterator[tuple[int, MidiTrackEvent]]:
        total_ticks = 0
        for dt, ev in self.events:
            total_ticks += dt
            yield total_ticks, ev


class UnknownChunk:
    def __init__(self, magic: bytes, length: int):
        self.magic = magic
        self.length = length

    def __repr__(self):
        return f'Unknown({self.magic!r}, len: {self.length:0x})'


MidiChunk = MidiHeader | MidiTrack | UnknownChunk


def _read_header(reader: MidiReader, length: int) -> MidiHeader:
    start = reader.offset
    if length != 6:
        raise MidiError(f'Bad MIDI header chunk length. Expected 6, got {length}', offset=start)

    raw_fmt = reader.read_int(2)
    try:
        fmt = MidiFormat(raw_fmt)
    except ValueError:
        raise MidiError(f'Unknown midi format {raw_fmt}', offset=start) from None

    tracks = reader.read_int(2)
    hi, lo = reader.read(2)

    if hi & 0x80:
        # SMPTE frame rates are stored as negative two's complement bytes
        fps = -int.from_bytes(bytes([hi]), 'big', signed=True)
        division = fps, lo
    else:
        division = (hi << 8) | lo

    return MidiHeader(fmt, tracks, division)


def _read_track(reader: MidiReader, length: int) -> MidiTrack:
    base = reader.offset
    source = reader.read(length)

    # events are decoded from the chunk's own bytes only, never past them
    decoder = EventDecoder(MidiReader.from_bytes(source, base))

    events = []
    while True:
        dt, ev = decoder.read_event()
        events.append((dt, ev))
        if ev.is_end_of_track:
            break

    trailing = length - decoder.reader.cur
    if trailing:
        logger.debug(f'Ignoring {trailing} bytes after end of track at offset 0x{decoder.reader.offset:x}')

    return MidiTrack(events)


def _read_chunk(reader: MidiReader, index: int) -> MidiChunk:
    try:
        magic = reader.read(4)
        length = reader.read_int(4)

        match magic:
            case b'MThd':
                return _read_header(reader, length)

            case b'MTrk':
                return _read_track(reader, length)

            case _:
                logger.warning(f'Skipping unknown chunk {magic!r} ({length} bytes) at offset 0x{reader.offset - 8:x}')
                reader.skip(length)
                return UnknownChunk(magic, length)

    except MidiError as e:
        e.locate(chunk=index)
        raise


class MidiFile:
    def __init__(self, header: MidiHeader, tracks: list[MidiTrack]):
        self.header = header
        self.tracks = tracks

    def __repr__(self):
        return f'MidiFile({self.header}, {self.tracks})'

    @classmethod
    def from_stream(cls, stream: BinaryIO) -> MidiFile:
        reader = MidiReader(stream)

        header = _read_chunk(reader, 0)
        if not isinstance(header, MidiHeader):
            raise MidiError('A midi file has to start with a header chunk', chunk=0, offset=0)

        # unknown chunks are skipped and do not count towards the track total
        tracks = []
        index = 1
        while len(tracks) < header.tracks:
            chunk = _read_chunk(reader, index)
            index += 1

            match chunk:
                case MidiTrack():
                    tracks.append(chunk)
                case MidiHeader():
                    logger.warning(f'Ignoring extra header chunk {index - 1}')

        return cls(header, tracks)

    @classmethod
    def from_bytes(cls, source: bytes) -> MidiFile:
        return cls.from_stream(io.BytesIO(source))

    @classmethod
    def read_midi(cls, path: str) -> MidiFile:
        try:
            f = open(path, 'rb')
        except OSError as e:
            raise MidiError(str(e), MidiErrorType.IO) from e

        with f:
            return cls.from_stream(f)

    def simult_track_count(self) -> int:
        match self.header.fmt:
            case MidiFormat.SingleTrack | MidiFormat.SequenceTrack:
                return 1

            case MidiFormat.SimulTrack:
                return self.header.tracks


def midi_parse(source: bytes) -> MidiFile:
    return MidiFile.from_bytes(source)


def read_midi(path: str) -> MidiFile:
    return MidiFile.read_midi(path)
