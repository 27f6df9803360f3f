from __future__ import annotations

import enum


class MidiErrorType(enum.Enum):
    IO          = 0
    InvalidMidi = 1


class MidiError(Exception):
    def __init__(self, message: str, error_type: MidiErrorType = MidiErrorType.InvalidMidi,
                 offset: int | None = None, chunk: int | None = None):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.offset = offset
        self.chunk = chunk

    @property
    def kind(self) -> str:
        return self.error_type.name

    def locate(self, offset: int | None = None, chunk: int | None = None) -> MidiError:
        # only fill in context the raising site did not already know
        if self.offset is None:
            self.offset = offset
        if self.chunk is None:
            self.chunk = chunk
        return self

    def __str__(self):
        where = []
        if self.chunk is not None:
            where.append(f'chunk {self.chunk}')
        if self.offset is not None:
            where.append(f'offset 0x{self.offset:x}')

        ret = f'{self.kind}Error: {self.message}'
        if where:
            ret += f' ({", ".join(where)})'
        return ret

    def __repr__(self):
        return f'MidiError({self.kind}, {self.message!r})'

    def __eq__(self, other):
        return isinstance(other, MidiError) and self.error_type == other.error_type \
                and self.message == other.message

    __hash__ = Exception.__hash__


class MidiUnsupported(MidiError):
    """
    Structurally valid input that this decoder or synthesizer does not handle.
    """

    def __init__(self, message: str, offset: int | None = None, chunk: int | None = None):
        super().__init__(message, MidiErrorType.InvalidMidi, offset, chunk)
