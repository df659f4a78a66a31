"""
Batching package for the DataLoader Service.

Collects concurrent ``load(key)`` calls issued within a short window into a
single bulk resolver call and fans the results back out.
"""

from .coalescer import BatchCoalescer, BatchStats

__all__ = ["BatchCoalescer", "BatchStats"]
