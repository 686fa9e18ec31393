"""Conversion of CVP-1 value-prediction traces into the standard trace format."""

from __future__ import annotations

import gzip
import io
import lzma
import sys
from collections import Counter
from dataclasses import dataclass
from enum import IntEnum
from typing import IO, Iterable, Iterator, Sequence

from memwalk.tracereader import TraceRecord

REG_STACK_POINTER = 6
REG_FLAGS = 25
REG_INSTRUCTION_POINTER = 26
REG_AX = 56
NUM_INSTR_SOURCES = 4
NUM_INSTR_DESTINATIONS = 2

_LINK_REGISTER = 30
_MASK64 = (1 << 64) - 1
_XZ_MAGIC = b"\xfd7zXZ\x00"
_GZIP_MAGIC = b"\x1f\x8b"
_FIRST_BUMP_PAGE = 0x1000


class InstClass(IntEnum):
    """Instruction classes recorded in a CVP-1 trace."""

    ALU = 0
    LOAD = 1
    STORE = 2
    COND_BRANCH = 3
    UNCOND_DIRECT_BRANCH = 4
    UNCOND_INDIRECT_BRANCH = 5
    FP = 6
    SLOW_ALU = 7
    UNDEF = 8

    @property
    def is_branch(self) -> bool:
        return self in (InstClass.COND_BRANCH, InstClass.UNCOND_DIRECT_BRANCH, InstClass.UNCOND_INDIRECT_BRANCH)


class OpType(IntEnum):
    """Branch categories assigned during conversion."""

    OP = 2
    RET_UNCOND = 3
    JMP_DIRECT_UNCOND = 4
    JMP_INDIRECT_UNCOND = 5
    CALL_DIRECT_UNCOND = 6
    CALL_INDIRECT_UNCOND = 7
    RET_COND = 8
    JMP_DIRECT_COND = 9
    JMP_INDIRECT_COND = 10
    CALL_DIRECT_COND = 11
    CALL_INDIRECT_COND = 12
    ERROR = 13
    MAX = 14

    @property
    def label(self) -> str:
        return f"OPTYPE_{self.name}"


@dataclass(frozen=True)
class CvpRecord:
    """One decoded record of a CVP-1 trace."""

    pc: int
    inst_class: InstClass
    ea: int = 0
    access_size: int = 0
    taken: int = 0
    target: int = 0
    input_regs: tuple[int, ...] = ()
    output_regs: tuple[int, ...] = ()
    output_values: tuple[int, ...] = ()


def _note(message: str, end: str = "\n") -> None:
    print(message, end=end, file=sys.stderr, flush=True)


def _read_exact(stream: IO[bytes], size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise ValueError("truncated CVP record")
    return data


def _read_u8(stream: IO[bytes]) -> int:
    return _read_exact(stream, 1)[0]


def _read_u64(stream: IO[bytes]) -> int:
    return int.from_bytes(_read_exact(stream, 8), "little")


def _value_width(register: int) -> int:
    if register <= 31 or register == 64:
        return 8
    if 32 <= register < 64:
        return 16
    raise ValueError(f"unexpected output register {register}")


def read_record(stream: IO[bytes]) -> CvpRecord | None:
    """Read one record; None at the end of the trace."""
    head = stream.read(8)
    if len(head) < 8:
        return None
    pc = int.from_bytes(head, "little")

    raw_class = _read_u8(stream)
    try:
        inst_class = InstClass(raw_class)
    except ValueError:
        raise ValueError(f"unknown instruction class {raw_class}") from None

    ea = access_size = taken = target = 0
    if inst_class in (InstClass.LOAD, InstClass.STORE):
        ea = _read_u64(stream)
        access_size = _read_u8(stream)
    elif inst_class.is_branch:
        taken = _read_u8(stream)
        if taken:
            target = _read_u64(stream)
        else:
            target = (pc + 4) & _MASK64
            if inst_class is not InstClass.COND_BRANCH:
                raise ValueError("unconditional branch recorded as not taken")

    input_regs = tuple(_read_exact(stream, _read_u8(stream)))
    output_regs = tuple(_read_exact(stream, _read_u8(stream)))
    output_values = tuple(int.from_bytes(_read_exact(stream, _value_width(reg)), "little") for reg in output_regs)

    return CvpRecord(pc, inst_class, ea, access_size, taken, target, input_regs, output_regs, output_values)


def _iter_records(stream: IO[bytes]) -> Iterator[CvpRecord]:
    while (record := read_record(stream)) is not None:
        yield record


def open_trace_file(path: str) -> IO[bytes]:
    """Open a trace, recognising xz and gzip compression by their magic numbers."""
    if path == "-":
        _note("reading from standard input")
        return sys.stdin.buffer

    with open(path, "rb") as probe:
        magic = probe.read(6)
    if len(magic) < 6:
        raise ValueError(f"{path}: too short to be a trace")

    if magic == _XZ_MAGIC:
        _note(f'opening xz file "{path}"')
        return lzma.open(path, "rb")
    if magic[:2] == _GZIP_MAGIC:
        _note(f'opening gz file "{path}"')
        return gzip.open(path, "rb")
    _note(f'opening file "{path}"')
    return open(path, "rb")


def scan_pages(records: Iterable[CvpRecord]) -> tuple[set[int], set[int]]:
    """Collect the pages holding code and the pages touched by loads and stores."""
    code_pages: set[int] = set()
    data_pages: set[int] = set()
    for record in records:
        code_pages.add(record.pc >> 12)
        if record.inst_class in (InstClass.LOAD, InstClass.STORE):
            data_pages.add(record.ea >> 12)
    return code_pages, data_pages


class AddressRemapper:
    """Moves data addresses off code pages onto pages nobody else uses."""

    def __init__(self, code_pages: Iterable[int], data_pages: Iterable[int]) -> None:
        self.code_pages = frozenset(code_pages)
        self.data_pages = frozenset(data_pages)
        self.remapped: dict[int, int] = {}
        self._bump_page = _FIRST_BUMP_PAGE

    def transform(self, addr: int) -> int:
        """Return ``addr``, relocated if it falls on a code page."""
        page = addr >> 12
        if page not in self.code_pages:
            return addr

        new_page = self.remapped.get(page)
        if new_page is None:
            new_page = self._bump_page
            while new_page in self.code_pages or new_page in self.data_pages:
                new_page += 1
            self._bump_page = new_page + 1
            self.remapped[page] = new_page
            _note(f"[{len(self.remapped)}]", end="")
        return (new_page << 12) | (addr & 0xFFF)


def classify_branch(record: CvpRecord) -> OpType:
    """Categorise a record; non-branches are ``OpType.OP``."""
    if not record.inst_class.is_branch:
        return OpType.OP
    if record.inst_class is InstClass.COND_BRANCH:
        return OpType.JMP_DIRECT_COND
    if not record.target:
        raise ValueError("unconditional branch without a target")

    indirect = record.inst_class is InstClass.UNCOND_INDIRECT_BRANCH
    if record.output_regs == (_LINK_REGISTER,):
        op = OpType.CALL_INDIRECT_UNCOND if indirect else OpType.CALL_DIRECT_UNCOND
    else:
        op = OpType.JMP_INDIRECT_UNCOND if indirect else OpType.JMP_DIRECT_UNCOND

    if record.input_regs == (_LINK_REGISTER,):
        op = OpType.RET_UNCOND
    return op


_IP, _SP, _FLAGS = REG_INSTRUCTION_POINTER, REG_STACK_POINTER, REG_FLAGS

_BRANCH_REGISTERS: dict[OpType, tuple[tuple[int, ...], tuple[int, ...]]] = {
    OpType.JMP_DIRECT_UNCOND: ((_IP,), ()),
    OpType.JMP_DIRECT_COND: ((_IP,), (_IP, _FLAGS)),
    OpType.CALL_INDIRECT_UNCOND: ((_IP, _SP), (_IP, _SP, REG_AX)),
    OpType.CALL_DIRECT_UNCOND: ((_IP, _SP), (_IP, _SP)),
    OpType.JMP_INDIRECT_UNCOND: ((_IP,), (REG_AX,)),
    OpType.RET_UNCOND: ((_IP, _SP), (_SP,)),
}

_REGISTER_RENAMES = {REG_INSTRUCTION_POINTER: 64, REG_STACK_POINTER: 65, REG_FLAGS: 66, 0: 67}


def _padded(values: Sequence[int], count: int) -> tuple[int, ...]:
    return tuple(values) + (0,) * (count - len(values))


def _rename(register: int) -> int:
    return _REGISTER_RENAMES.get(register, register)


def _operand_regs(record: CvpRecord) -> tuple[tuple[int, ...], tuple[int, ...]]:
    return record.input_regs[:NUM_INSTR_SOURCES], record.output_regs or (0,)


def convert_record(record: CvpRecord, remapper: AddressRemapper) -> TraceRecord:
    """Build the standard trace record for one CVP-1 record."""
    op = classify_branch(record)
    if op is not OpType.OP:
        if op not in _BRANCH_REGISTERS:
            raise ValueError(f"cannot convert branch type {op.label}")
        destinations, sources = _BRANCH_REGISTERS[op]
        taken = record.taken if op in (OpType.JMP_DIRECT_UNCOND, OpType.JMP_DIRECT_COND) else 1
        return TraceRecord(
            ip=record.pc,
            is_branch=1,
            branch_taken=taken,
            destination_registers=_padded(destinations, NUM_INSTR_DESTINATIONS),
            source_registers=_padded(sources, NUM_INSTR_SOURCES),
            destination_memory=_padded((), NUM_INSTR_DESTINATIONS),
            source_memory=_padded((), NUM_INSTR_SOURCES),
        )

    inputs, outputs = _operand_regs(record)
    source_memory: tuple[int, ...] = ()
    destination_memory: tuple[int, ...] = ()
    if record.inst_class is InstClass.LOAD:
        source_memory = (remapper.transform(record.ea),)
    elif record.inst_class is InstClass.STORE:
        destination_memory = (remapper.transform(record.ea),)
    elif record.inst_class not in (InstClass.ALU, InstClass.FP, InstClass.SLOW_ALU):
        raise ValueError(f"cannot convert instruction class {record.inst_class.name}")

    return TraceRecord(
        ip=record.pc,
        is_branch=0,
        branch_taken=0,
        destination_registers=_padded((_rename(outputs[0]),), NUM_INSTR_DESTINATIONS),
        source_registers=_padded(tuple(_rename(reg) for reg in inputs), NUM_INSTR_SOURCES),
        destination_memory=_padded(destination_memory, NUM_INSTR_DESTINATIONS),
        source_memory=_padded(source_memory, NUM_INSTR_SOURCES),
    )


def _describe(number: int, record: CvpRecord, op: OpType) -> str:
    text = f"{number} {record.pc:x} "
    if op is not OpType.OP:
        return text + f"{op.label} {record.target:x}"
    kinds = {
        InstClass.LOAD: f"LOAD (0x{record.ea:x})",
        InstClass.STORE: f"STORE (0x{record.ea:x})",
        InstClass.ALU: "ALU",
        InstClass.FP: "FP",
        InstClass.SLOW_ALU: "SLOWALU",
    }
    inputs, outputs = _operand_regs(record)
    text += kinds.get(record.inst_class, "")
    text += "".join(f" I{reg}" for reg in inputs)
    text += "".join(f" O{reg}" for reg in outputs)
    return text


def _with_progress(records: Iterable[CvpRecord]) -> Iterator[CvpRecord]:
    for count, record in enumerate(records, start=1):
        yield record
        if count % 10_000_000 == 0:
            _note(".", end="")
            if count % 600_000_000 == 0:
                _note("")


def convert(path: str, out: IO[bytes], verbose: bool = False) -> Counter[OpType]:
    """Convert the trace at ``path``, writing standard records to ``out``.

    Returns how many records of each branch category were converted.
    """
    if path == "-":
        payload = open_trace_file(path).read()

        def opener() -> IO[bytes]:
            return io.BytesIO(payload)

    else:

        def opener() -> IO[bytes]:
            return open_trace_file(path)

    _note("preprocessing to find code and data pages...")
    with opener() as stream:
        code_pages, data_pages = scan_pages(_with_progress(_iter_records(stream)))
    _note(f"{len(code_pages)} code pages, {len(data_pages)} data pages")

    remapper = AddressRemapper(code_pages, data_pages)
    counts: Counter[OpType] = Counter()
    attempts = 0
    described = 0
    previous_pc = 0
    with opener() as stream:
        while True:
            attempts += 1
            if attempts % 1_000_000 == 0:
                _note(f"{attempts} instructions")

            record = read_record(stream)
            pc = record.pc if record is not None else 0
            if pc == previous_pc:
                _note("hmm, that's weird")
            previous_pc = pc
            if record is None:
                break

            op = classify_branch(record)
            counts[op] += 1
            out.write(convert_record(record, remapper).pack())

            if verbose:
                described += 1
                _note(_describe(described, record, op))

    _note(f"converted {attempts} instructions")
    for op in OpType:
        if op is not OpType.MAX and counts[op]:
            _note(f"{op.label} {counts[op]} {100 * counts[op] / attempts:f}%")
    return counts


def main(argv: Sequence[str] | None = None) -> int:
    """Command entry point: ``[-v] [trace]``, writing records to standard output."""
    args = sys.argv[1:] if argv is None else list(argv)
    verbose = False
    path = "-"
    for arg in args:
        if arg == "-v":
            verbose = True
        else:
            path = arg

    out = sys.stdout.buffer
    try:
        convert(path, out, verbose)
    except OSError as err:
        print(f"{path}: {err.strerror or err}", file=sys.stderr)
        return 1
    finally:
        out.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())