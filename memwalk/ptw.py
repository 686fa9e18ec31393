"""Page table walker with paging-structure caches, fed through request channels."""

from __future__ import annotations

import itertools
from collections import OrderedDict, deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Mapping

from memwalk.operable import Operable
from memwalk.vmem import LOG2_BLOCK_SIZE, LOG2_PAGE_SIZE, PTE_BYTES, VirtualMemory, bitmask, lg2, splice_bits

_NEVER = (1 << 64) - 1
_NO_ASID = (0xFF, 0xFF)
_MAX_PSCL_LEVELS = 16


class AccessType(Enum):
    """Kinds of memory access carried by a request."""

    LOAD = 0
    RFO = 1
    PREFETCH = 2
    WRITE = 3
    TRANSLATION = 4


@dataclass
class Request:
    """A memory request travelling down the hierarchy."""

    address: int = 0
    v_address: int = 0
    data: int = 0
    instr_id: int = 0
    ip: int = 0
    pf_metadata: int = 0
    cpu: int = 0
    type: AccessType = AccessType.LOAD
    asid: tuple[int, int] = _NO_ASID
    is_translated: bool = True
    response_requested: bool = True
    instr_depend_on_me: list[Any] = field(default_factory=list)


@dataclass
class Response:
    """A completed request travelling back up the hierarchy."""

    address: int = 0
    v_address: int = 0
    data: int = 0
    pf_metadata: int = 0
    instr_depend_on_me: list[Any] = field(default_factory=list)

    @classmethod
    def from_request(cls, request: Request, data: int | None = None) -> Response:
        """Build the response that answers ``request``."""
        return cls(
            address=request.address,
            v_address=request.v_address,
            data=request.data if data is None else data,
            pf_metadata=request.pf_metadata,
            instr_depend_on_me=list(request.instr_depend_on_me),
        )


@dataclass
class ChannelStats:
    """Counters of accepted and rejected requests per queue."""

    rq_access: int = 0
    rq_full: int = 0
    wq_access: int = 0
    wq_full: int = 0
    pq_access: int = 0
    pq_full: int = 0


class Channel:
    """Read, write and prefetch queues toward a consumer, plus a return queue."""

    def __init__(self, rq_size: int | None = None, pq_size: int | None = None, wq_size: int | None = None) -> None:
        self.rq_size = rq_size
        self.pq_size = pq_size
        self.wq_size = wq_size
        self.RQ: deque[Request] = deque()
        self.WQ: deque[Request] = deque()
        self.PQ: deque[Request] = deque()
        self.returned: deque[Response] = deque()
        self.sim_stats = ChannelStats()
        self.roi_stats = ChannelStats()

    def _add(self, queue: deque[Request], limit: int | None, request: Request, kind: str) -> bool:
        if limit is not None and len(queue) >= limit:
            setattr(self.sim_stats, f"{kind}_full", getattr(self.sim_stats, f"{kind}_full") + 1)
            return False
        setattr(self.sim_stats, f"{kind}_access", getattr(self.sim_stats, f"{kind}_access") + 1)
        queue.append(request)
        return True

    def add_rq(self, request: Request) -> bool:
        """Queue a read; False if the read queue is full."""
        return self._add(self.RQ, self.rq_size, request, "rq")

    def add_wq(self, request: Request) -> bool:
        """Queue a write; False if the write queue is full."""
        return self._add(self.WQ, self.wq_size, request, "wq")

    def add_pq(self, request: Request) -> bool:
        """Queue a prefetch; False if the prefetch queue is full."""
        return self._add(self.PQ, self.pq_size, request, "pq")


@dataclass(frozen=True)
class PsclEntry:
    """A cached partial walk: where the walk for ``vaddr`` continues at ``level``."""

    vaddr: int
    ptw_addr: int
    level: int


class Pscl:
    """A set-associative, least-recently-used paging-structure cache."""

    def __init__(self, sets: int, ways: int, shamt: int) -> None:
        self.sets = sets
        self.ways = ways
        self.shamt = shamt
        self._sets: list[OrderedDict[int, PsclEntry]] = [OrderedDict() for _ in range(sets)]

    def _locate(self, entry: PsclEntry) -> tuple[OrderedDict[int, PsclEntry], int]:
        tag = entry.vaddr >> self.shamt
        return self._sets[tag & bitmask(lg2(self.sets))], tag

    def check_hit(self, entry: PsclEntry) -> PsclEntry | None:
        """Return the stored entry covering ``entry.vaddr``, marking it recently used."""
        ways, tag = self._locate(entry)
        found = ways.get(tag)
        if found is not None:
            ways.move_to_end(tag)
        return found

    def fill(self, entry: PsclEntry) -> None:
        """Insert ``entry``, replacing a matching or the least recently used one."""
        ways, tag = self._locate(entry)
        if tag in ways:
            ways.move_to_end(tag)
        elif len(ways) >= self.ways:
            ways.popitem(last=False)
        if self.ways > 0:
            ways[tag] = entry


@dataclass
class _WalkEntry:
    address: int
    v_address: int
    data: int
    pf_metadata: int
    cpu: int
    asid: tuple[int, int]
    translation_level: int
    instr_depend_on_me: list[Any] = field(default_factory=list)
    to_return: list[deque[Response]] = field(default_factory=list)
    event_cycle: int = _NEVER

    @classmethod
    def from_request(cls, request: Request, level: int) -> _WalkEntry:
        return cls(
            address=request.address,
            v_address=request.v_address,
            data=0,
            pf_metadata=request.pf_metadata,
            cpu=request.cpu,
            asid=tuple(request.asid),
            translation_level=level,
            instr_depend_on_me=list(request.instr_depend_on_me),
        )


class PageTableWalker(Operable):
    """Walks the page table one level per memory request, using PSCLs to skip levels."""

    def __init__(
        self,
        vmem: VirtualMemory,
        lower_level: Channel,
        upper_levels: Iterable[Channel] = (),
        name: str = "",
        frequency: float = 1.0,
        cpu: int = 0,
        pscl_dims: Mapping[int, tuple[int, int]] | None = None,
        mshr_size: int = 0,
        tag_bandwidth: int = 0,
        fill_bandwidth: int = 0,
        latency: int = 0,
    ) -> None:
        super().__init__(frequency)
        self.vmem = vmem
        self.lower_level = lower_level
        self.upper_levels = list(upper_levels)
        self.name = name
        self.mshr_size = mshr_size
        self.max_read = tag_bandwidth
        self.max_fill = fill_bandwidth
        self.hit_latency = latency

        self.mshr: deque[_WalkEntry] = deque()
        self.finished: deque[_WalkEntry] = deque()
        self.completed: deque[_WalkEntry] = deque()

        self.cr3_addr = vmem.get_pte_pa(cpu, 0, vmem.pt_levels)[0]

        dims = []
        for level, (sets, ways) in (pscl_dims or {}).items():
            if not 0 <= level < _MAX_PSCL_LEVELS:
                raise IndexError(f"PSCL level {level} is out of range")
            if level != 0:
                dims.append((level, sets, ways))
        dims.sort(reverse=True)
        self.pscl = [Pscl(sets, ways, vmem.shamt(level)) for level, sets, ways in dims]

    def _handle_read(self, request: Request, ul: Channel) -> _WalkEntry | None:
        walk_init = PsclEntry(request.v_address, self.cr3_addr, len(self.pscl))
        hits = [cache.check_hit(walk_init) for cache in self.pscl]
        for hit in hits:
            if hit is not None:
                walk_init = hit

        walk_offset = self.vmem.get_offset(request.address, walk_init.level) * PTE_BYTES

        entry = _WalkEntry.from_request(request, walk_init.level)
        entry.address = splice_bits(walk_init.ptw_addr, walk_offset, LOG2_PAGE_SIZE)
        entry.v_address = request.address
        if request.response_requested:
            entry.to_return = [ul.returned]
        return self._step_translation(entry)

    def _handle_fill(self, fill: _WalkEntry) -> _WalkEntry | None:
        pscl_idx = len(self.pscl) - fill.translation_level
        if not 0 <= pscl_idx < len(self.pscl):
            raise IndexError(f"no PSCL for translation level {fill.translation_level}")
        self.pscl[pscl_idx].fill(PsclEntry(fill.v_address, fill.data, fill.translation_level - 1))

        step = replace(
            fill,
            address=fill.data,
            translation_level=fill.translation_level - 1,
            event_cycle=_NEVER,
            instr_depend_on_me=list(fill.instr_depend_on_me),
            to_return=list(fill.to_return),
        )
        return self._step_translation(step)

    def _step_translation(self, source: _WalkEntry) -> _WalkEntry | None:
        packet = Request(
            address=source.address,
            v_address=source.v_address,
            pf_metadata=source.pf_metadata,
            cpu=source.cpu,
            asid=source.asid,
            is_translated=True,
            type=AccessType.TRANSLATION,
        )
        return source if self.lower_level.add_rq(packet) else None

    def _ready_count(self, queue: deque[_WalkEntry], limit: int) -> int:
        count = 0
        for entry in itertools.islice(queue, max(limit, 0)):
            if entry.event_cycle > self.current_cycle:
                break
            count += 1
        return count

    def operate(self) -> int:
        progress = 0

        returned = self.lower_level.returned
        for packet in returned:
            self._finish_packet(packet)
        progress += len(returned)
        returned.clear()

        next_steps: list[_WalkEntry] = []

        fill_bw = self.max_fill
        done = self._ready_count(self.completed, fill_bw)
        for _ in range(done):
            entry = self.completed.popleft()
            for target in entry.to_return:
                target.append(
                    Response(entry.v_address, entry.v_address, entry.data, entry.pf_metadata, list(entry.instr_depend_on_me))
                )
        fill_bw -= done
        progress += done

        ready = self._ready_count(self.finished, fill_bw)
        handled = 0
        for entry in list(itertools.islice(self.finished, ready)):
            step = self._handle_fill(entry)
            if step is None:
                break
            next_steps.append(step)
            handled += 1
        for _ in range(handled):
            self.finished.popleft()
        progress += handled

        tag_bw = self.max_read
        for ul in self.upper_levels:
            accepted = 0
            for request in list(itertools.islice(ul.RQ, max(tag_bw, 0))):
                step = self._handle_read(request, ul)
                if step is None:
                    break
                next_steps.append(step)
                accepted += 1
            for _ in range(accepted):
                ul.RQ.popleft()
            tag_bw -= accepted
            progress += accepted

        self.mshr.extend(next_steps)
        return progress

    def _finish_packet(self, packet: Response) -> None:
        block = packet.address >> LOG2_BLOCK_SIZE
        matched = [e for e in self.mshr if e.address >> LOG2_BLOCK_SIZE == block]
        self.mshr = deque(e for e in self.mshr if e.address >> LOG2_BLOCK_SIZE != block)

        for entry in matched:
            if entry.translation_level > 0:
                entry.data, penalty = self.vmem.get_pte_pa(entry.cpu, entry.v_address, entry.translation_level)
            else:
                entry.data, penalty = self.vmem.va_to_pa(entry.cpu, entry.v_address)
            entry.event_cycle = self.current_cycle + (0 if self.warmup else penalty + self.hit_latency)

        self.finished.extend(e for e in matched if e.translation_level > 0)
        self.completed.extend(e for e in matched if e.translation_level <= 0)

    def begin_phase(self) -> None:
        for ul in self.upper_levels:
            ul.roi_stats = ChannelStats()
            ul.sim_stats = ChannelStats()

    def print_deadlock(self) -> None:
        if not self.mshr:
            print(f"{self.name}_MSHR empty")
            return
        print(f"{self.name}_MSHR")
        for number, entry in enumerate(self.mshr):
            print(
                f"[{self.name}_MSHR] entry: {number} address: {entry.address:#x} v_addr: {entry.v_address:#x} "
                f"translation_level: {entry.translation_level} event_cycle: {entry.event_cycle}"
            )


DEFAULT_PSCL_DIMS: dict[int, tuple[int, int]] = {5: (1, 2), 4: (1, 4), 3: (2, 4), 2: (4, 8)}


def default_ptw(vmem: VirtualMemory, lower_level: Channel, upper_levels: Iterable[Channel] = (), **kwargs: Any) -> PageTableWalker:
    """A walker with the standard configuration; ``pscl_dims`` entries override per level."""
    pscl_dims = {**DEFAULT_PSCL_DIMS, **kwargs.pop("pscl_dims", {})}
    options: dict[str, Any] = {"tag_bandwidth": 2, "fill_bandwidth": 2, "mshr_size": 5}
    options.update(kwargs)
    return PageTableWalker(vmem, lower_level, upper_levels, pscl_dims=pscl_dims, **options)