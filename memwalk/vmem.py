"""Virtual-to-physical address mapping with a multi-level page table."""

from __future__ import annotations

import warnings

LOG2_PAGE_SIZE = 12
PAGE_SIZE = 1 << LOG2_PAGE_SIZE
LOG2_BLOCK_SIZE = 6
BLOCK_SIZE = 1 << LOG2_BLOCK_SIZE
PTE_BYTES = 8
VMEM_RESERVE_CAPACITY = 1 << 20


def lg2(n: int) -> int:
    """Floor of the base-2 logarithm; 0 for inputs below 2."""
    return max(n.bit_length() - 1, 0)


def bitmask(bits: int) -> int:
    """A mask with the low ``bits`` bits set."""
    return (1 << bits) - 1


def splice_bits(upper: int, lower: int, bits: int) -> int:
    """Take the low ``bits`` bits from ``lower`` and the rest from ``upper``."""
    mask = bitmask(bits)
    return (upper & ~mask) | (lower & mask)


class VirtualMemory:
    """Allocates physical pages on demand for data pages and page-table pages."""

    def __init__(self, pte_page_size: int, pt_levels: int, minor_fault_penalty: int, dram_size: int) -> None:
        if pte_page_size <= 1024:
            raise ValueError("page table page size must exceed 1024 bytes")
        if pte_page_size != 1 << lg2(pte_page_size):
            raise ValueError("page table page size must be a power of two")

        self.pte_page_size = pte_page_size
        self.pt_levels = pt_levels
        self.minor_fault_penalty = minor_fault_penalty

        self.next_ppage = VMEM_RESERVE_CAPACITY
        self.last_ppage = 1 << (LOG2_PAGE_SIZE + lg2(pte_page_size // PTE_BYTES) * pt_levels)
        if self.last_ppage <= VMEM_RESERVE_CAPACITY:
            raise ValueError("virtual memory does not extend past the reserved capacity")

        self._next_pte_page = 0
        self._vpage_to_ppage: dict[tuple[int, int], int] = {}
        self._page_table: dict[tuple[int, int, int], int] = {}

        required_bits = lg2(self.last_ppage)
        if required_bits > 64:
            warnings.warn(f"virtual memory configuration would require {required_bits} bits of addressing.")
        if required_bits > lg2(dram_size):
            warnings.warn("physical memory size is smaller than virtual memory size.")

    def shamt(self, level: int) -> int:
        """Bit position of the index field for the given page-table level."""
        return LOG2_PAGE_SIZE + lg2(self.pte_page_size // PTE_BYTES) * (level - 1)

    def get_offset(self, vaddr: int, level: int) -> int:
        """Index into the page-table page at ``level`` for ``vaddr``."""
        return (vaddr >> self.shamt(level)) & bitmask(lg2(self.pte_page_size // PTE_BYTES))

    def ppage_front(self) -> int:
        """The next free physical page."""
        if self.available_ppages() <= 0:
            raise MemoryError("no physical pages remain")
        return self.next_ppage

    def ppage_pop(self) -> None:
        """Consume the next free physical page."""
        self.next_ppage += PAGE_SIZE

    def available_ppages(self) -> int:
        """Number of physical pages still free."""
        return (self.last_ppage - self.next_ppage) // PAGE_SIZE

    def va_to_pa(self, cpu: int, vaddr: int) -> tuple[int, int]:
        """Translate ``vaddr`` and return ``(paddr, penalty)``."""
        front = self.ppage_front()
        key = (cpu, vaddr >> LOG2_PAGE_SIZE)
        ppage = self._vpage_to_ppage.get(key)
        fault = ppage is None
        if fault:
            ppage = front
            self._vpage_to_ppage[key] = ppage
            self.ppage_pop()

        paddr = splice_bits(ppage, vaddr, LOG2_PAGE_SIZE)
        return paddr, self.minor_fault_penalty if fault else 0

    def get_pte_pa(self, cpu: int, vaddr: int, level: int) -> tuple[int, int]:
        """Physical address of the page-table entry for ``vaddr`` at ``level``."""
        if self._next_pte_page == 0:
            self._next_pte_page = self.ppage_front()
            self.ppage_pop()

        key = (cpu, vaddr >> self.shamt(level), level)
        base = self._page_table.get(key)
        fault = base is None
        if fault:
            base = self._next_pte_page
            self._page_table[key] = base
            self._next_pte_page += self.pte_page_size
            if self._next_pte_page % PAGE_SIZE == 0:
                self._next_pte_page = self.ppage_front()
                self.ppage_pop()

        offset = self.get_offset(vaddr, level)
        paddr = splice_bits(base, offset * PTE_BYTES, lg2(self.pte_page_size))
        return paddr, self.minor_fault_penalty if fault else 0