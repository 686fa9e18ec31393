"""Reading binary instruction traces, optionally compressed."""

from __future__ import annotations

import bz2
import gzip
import itertools
import lzma
import struct
from collections import deque
from dataclasses import dataclass, field, replace
from typing import IO, Callable, ClassVar, Protocol, Sequence

_NO_ASID = (0xFF, 0xFF)


def _fixed(values: Sequence[int], count: int, name: str) -> tuple[int, ...]:
    if len(values) > count:
        raise ValueError(f"{name} holds at most {count} entries")
    return tuple(values) + (0,) * (count - len(values))


@dataclass(frozen=True)
class TraceRecord:
    """One record of the standard 64-byte trace format."""

    ip: int = 0
    is_branch: int = 0
    branch_taken: int = 0
    destination_registers: tuple[int, ...] = (0, 0)
    source_registers: tuple[int, ...] = (0, 0, 0, 0)
    destination_memory: tuple[int, ...] = (0, 0)
    source_memory: tuple[int, ...] = (0, 0, 0, 0)

    _struct: ClassVar[struct.Struct] = struct.Struct("<QBB2B4B2Q4Q")

    def pack(self) -> bytes:
        """Encode the record in its on-disk layout."""
        return self._struct.pack(
            self.ip,
            self.is_branch,
            self.branch_taken,
            *_fixed(self.destination_registers, 2, "destination_registers"),
            *_fixed(self.source_registers, 4, "source_registers"),
            *_fixed(self.destination_memory, 2, "destination_memory"),
            *_fixed(self.source_memory, 4, "source_memory"),
        )

    @classmethod
    def _from_values(cls, v: tuple[int, ...]) -> TraceRecord:
        return cls(v[0], v[1], v[2], v[3:5], v[5:9], v[9:11], v[11:15])


@dataclass(frozen=True)
class CloudsuiteRecord:
    """One record of the 96-byte trace format that carries address-space ids."""

    ip: int = 0
    is_branch: int = 0
    branch_taken: int = 0
    destination_registers: tuple[int, ...] = (0, 0, 0, 0)
    source_registers: tuple[int, ...] = (0, 0, 0, 0)
    destination_memory: tuple[int, ...] = (0, 0, 0, 0)
    source_memory: tuple[int, ...] = (0, 0, 0, 0)
    asid: tuple[int, ...] = (0, 0)

    _struct: ClassVar[struct.Struct] = struct.Struct("<QBB4B4B6x4Q4Q2B6x")

    def pack(self) -> bytes:
        """Encode the record in its on-disk layout."""
        return self._struct.pack(
            self.ip,
            self.is_branch,
            self.branch_taken,
            *_fixed(self.destination_registers, 4, "destination_registers"),
            *_fixed(self.source_registers, 4, "source_registers"),
            *_fixed(self.destination_memory, 4, "destination_memory"),
            *_fixed(self.source_memory, 4, "source_memory"),
            *_fixed(self.asid, 2, "asid"),
        )

    @classmethod
    def _from_values(cls, v: tuple[int, ...]) -> CloudsuiteRecord:
        return cls(v[0], v[1], v[2], v[3:7], v[7:11], v[11:15], v[15:19], v[19:21])


RecordType = type[TraceRecord] | type[CloudsuiteRecord]


def decode_records(data: bytes, record_type: RecordType = TraceRecord) -> list:
    """Decode whole records from ``data``; a trailing partial record is dropped."""
    size = record_type._struct.size
    usable = len(data) - len(data) % size
    return [record_type._from_values(values) for values in record_type._struct.iter_unpack(data[:usable])]


@dataclass(frozen=True)
class Instruction:
    """An instruction as seen by the core model."""

    ip: int = 0
    is_branch: bool = False
    branch_taken: bool = False
    branch_target: int = 0
    cpu: int = 0
    instr_id: int = 0
    destination_registers: tuple[int, ...] = ()
    source_registers: tuple[int, ...] = ()
    destination_memory: tuple[int, ...] = ()
    source_memory: tuple[int, ...] = ()
    asid: tuple[int, ...] = field(default=_NO_ASID)


def _inflate(cpu: int, record: TraceRecord | CloudsuiteRecord) -> Instruction:
    return Instruction(
        ip=record.ip,
        is_branch=bool(record.is_branch),
        branch_taken=bool(record.branch_taken),
        cpu=cpu,
        destination_registers=tuple(r for r in record.destination_registers if r),
        source_registers=tuple(r for r in record.source_registers if r),
        destination_memory=tuple(m for m in record.destination_memory if m),
        source_memory=tuple(m for m in record.source_memory if m),
        asid=tuple(getattr(record, "asid", _NO_ASID)),
    )


def open_trace(path: str) -> IO[bytes]:
    """Open a trace for binary reading, decompressing by file suffix."""
    name = str(path)
    if name.endswith("gz"):
        return gzip.open(name, "rb")
    if name.endswith("xz"):
        return lzma.open(name, "rb")
    if name.endswith("bz2"):
        return bz2.open(name, "rb")
    return open(name, "rb")


def apply_branch_target(branch: Instruction, target: Instruction) -> Instruction:
    """Set the branch target of ``branch`` from the instruction that follows it."""
    taken_target = target.ip if branch.is_branch and branch.branch_taken else 0
    return replace(branch, branch_target=taken_target)


def set_branch_targets(instrs: Sequence[Instruction]) -> list[Instruction]:
    """Return the instructions with each branch target taken from its successor."""
    updated = [apply_branch_target(branch, target) for branch, target in itertools.pairwise(instrs)]
    return updated + list(instrs[-1:])


class _Reader(Protocol):
    def __call__(self) -> Instruction: ...

    def eof(self) -> bool: ...


class BulkTraceReader:
    """Reads records from a binary stream in batches and yields instructions."""

    _BUFFER_SIZE = 128
    _REFRESH_THRESH = 1

    def __init__(self, cpu: int, stream: IO[bytes], record_type: RecordType = TraceRecord) -> None:
        self.cpu = cpu
        self._stream = stream
        self._record_type = record_type
        self._stream_eof = False
        self._buffer: deque[Instruction] = deque()

    def _read(self, want: int) -> bytes:
        chunks = []
        remaining = want
        while remaining > 0:
            chunk = self._stream.read(remaining)
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def __call__(self) -> Instruction:
        if len(self._buffer) <= self._REFRESH_THRESH:
            want = (self._BUFFER_SIZE - self._REFRESH_THRESH) * self._record_type._struct.size
            data = self._read(want)
            self._stream_eof = len(data) < want
            fresh = [_inflate(self.cpu, record) for record in decode_records(data, self._record_type)]
            self._buffer = deque(set_branch_targets([*self._buffer, *fresh]))

        if not self._buffer:
            raise EOFError("trace is exhausted")
        return self._buffer.popleft()

    def eof(self) -> bool:
        """True once the stream is drained and at most one instruction is held back."""
        return self._stream_eof and len(self._buffer) <= self._REFRESH_THRESH


class RepeatableReader:
    """Wraps a reader factory and starts over whenever the current reader ends."""

    def __init__(self, factory: Callable[[], _Reader]) -> None:
        self._factory = factory
        self._reader = factory()

    def __call__(self) -> Instruction:
        if self._reader.eof():
            self._reader = self._factory()
        return self._reader()

    def eof(self) -> bool:
        """A repeating trace never ends."""
        return False


class TraceReader:
    """Front end that stamps every instruction with a globally unique id."""

    _ids = itertools.count()

    def __init__(self, source: Callable[[], Instruction]) -> None:
        self._source = source

    def __call__(self) -> Instruction:
        return replace(self._source(), instr_id=next(TraceReader._ids))

    def eof(self) -> bool:
        """Whether the source has ended; sources without ``eof`` never end."""
        check = getattr(self._source, "eof", None)
        return bool(check()) if callable(check) else False


def get_tracereader(fname: str, cpu: int, is_cloudsuite: bool, repeat: bool) -> TraceReader:
    """Build a reader for the trace file ``fname``."""
    record_type: RecordType = CloudsuiteRecord if is_cloudsuite else TraceRecord

    def make() -> BulkTraceReader:
        return BulkTraceReader(cpu, open_trace(fname), record_type)

    return TraceReader(RepeatableReader(make) if repeat else make())