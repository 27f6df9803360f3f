from __future__ import annotations

import io
from typing import BinaryIO

from ..error import MidiError, MidiErrorType


class MidiReader:
    """
    Byte-exact big-endian reads over a binary stream.

    `base` is the absolute file offset of the stream's first byte, so errors raised
    while decoding a buffered chunk still point at the right place in the file.
    """

    def __init__(self, stream: BinaryIO, base: int = 0):
        self.stream = stream
        self.base = base
        self.cur = 0

    @classmethod
    def from_bytes(cls, source: bytes, base: int = 0) -> MidiReader:
        return cls(io.BytesIO(source), base)

    @property
    def offset(self) -> int:
        return self.base + self.cur

    def __repr__(self):
        return f'MidiReader(offset: {self.offset:0x})'

    def read(self, count: int) -> bytes:
        if count == 0:
            return b''

        try:
            data = self.stream.read(count)
        except OSError as e:
            raise MidiError(str(e), MidiErrorType.IO, offset=self.offset) from e

        if not data:
            raise MidiError('Unexpectedly reached end of file', offset=self.offset)
        if len(data) < count:
            raise MidiError(f'Unexpectedly reached end of file, wanted {count} bytes, got {len(data)}',
                            offset=self.offset)

        self.cur += count
        return data

    def read_byte(self) -> int:
        return self.read(1)[0]

    def read_int(self, count: int) -> int:
        return int.from_bytes(self.read(count), 'big')

    def read_vlq(self) -> int:
        # 7 bits per byte, most significant group first, high bit = more follows
        value = 0
        while True:
            current = self.read_byte()
            value = (value << 7) | (current & 0x7f)
            if not current & 0x80:
                return value

    def skip(self, count: int) -> None:
        self.read(count)
