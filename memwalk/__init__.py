"""Virtual memory, page table walking and instruction trace tools for memory-hierarchy simulation."""

__version__ = "0.1.0"
__all__ = ["operable", "vmem", "tracereader", "ptw", "cvp2champsim"]