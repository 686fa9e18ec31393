# memwalk

Parts for simulating the memory side of a processor.

- `memwalk.operable` holds `Operable`, the abstract base class for clocked components.
  Each component has a clock scale. `tick()` calls `operate()` and skips ticks as the
  scale requires. Subclasses can override the hooks `initialize`, `begin_phase`,
  `end_phase` and `print_deadlock`.
- `memwalk.vmem` holds `VirtualMemory`. It assigns physical pages the first time a page
  is touched (`va_to_pa`) and places page-table entries across a configurable number of
  levels (`get_pte_pa`, `shamt`, `get_offset`). Each call returns a minor-fault penalty
  when it creates a new mapping. The module also provides the bit helpers `lg2`,
  `bitmask` and `splice_bits`.
- `memwalk.tracereader` reads binary instruction traces. A trace can be plain, or
  compressed with gzip, xz or bzip2, chosen by the file-name suffix. Two record layouts
  are supported: `TraceRecord` (64 bytes) and `CloudsuiteRecord` (96 bytes). The reader
  returns `Instruction` objects. Each taken branch gets its target from the instruction
  that follows it, and every instruction gets a unique `instr_id`. The building blocks
  are `open_trace`, `decode_records`, `BulkTraceReader`, `RepeatableReader` and
  `TraceReader`. `get_tracereader` puts them together.
- `memwalk.ptw` holds a `PageTableWalker` that walks the page table one memory request
  per level. Set-associative LRU paging-structure caches (`Pscl`) let it skip levels.
  The walker takes `Request`s from upper-level `Channel`s and sends translation reads to
  a lower-level `Channel`. `default_ptw` builds one with this standard configuration:
  - tag bandwidth 2, fill bandwidth 2, MSHR size 5;
  - PSCLs at levels 5 to 2.
- `memwalk.cvp2champsim` converts CVP-1 value-prediction traces into `TraceRecord`s.

## Installation

```
pip install .
```

## Reading a trace

```python
from memwalk.tracereader import get_tracereader

reader = get_tracereader("program.trace.xz", cpu=0, is_cloudsuite=False, repeat=False)
while not reader.eof():
    instr = reader()
    print(hex(instr.ip), instr.is_branch, hex(instr.branch_target))
```

With `repeat=True`, the reader reopens the file when it reaches the end, and `eof()` is
always false.

## Virtual memory and page walks

```python
from memwalk.vmem import VirtualMemory
from memwalk.ptw import Channel, Request, default_ptw

vmem = VirtualMemory(1 << 12, 5, 200, 1 << 33)
paddr, penalty = vmem.va_to_pa(0, 0xdeadbeef)

upper, lower = Channel(), Channel()
walker = default_ptw(vmem, lower, [upper], name="PTW")
upper.add_rq(Request(address=0xdeadbeef, v_address=0xdeadbeef))
walker.operate()          # issues the first translation read into lower.RQ
```

Something else has to serve the lower channel. Take requests from `lower.RQ` and put
`Response`s into `lower.returned`. Each call to `operate()` then moves the walk forward
one step. Once the walk finishes, the answer appears in `upper.returned`.

`VirtualMemory` warns when the physical memory size passed to it is smaller than the
virtual address space it covers.

## Converting CVP-1 traces

```
cvp2champsim [-v] trace.gz > out.trace
```

The input can be xz-compressed, gzip-compressed or uncompressed. The format is detected
from the file's magic number and decompressed in-process. Pass `-` or no file to read
standard input. Converted records go to standard output. Progress messages and counts per
branch type go to standard error. `-v` also describes every record.

## What is not included

The package provides the pieces listed above and nothing more:

- It has no caches, core model, DRAM model or simulation driver. To use the page table
  walker, you supply whatever fills and drains its channels.
- It cannot produce traces from a running program.

## Tests

```
pip install .[test]
pytest
```