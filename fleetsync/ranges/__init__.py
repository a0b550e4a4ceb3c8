"""Range-set algebra shared by log sync and repository replication."""

from .range_set import InvalidRangeError, Range, RangeSet, missing

__all__ = ["InvalidRangeError", "Range", "RangeSet", "missing"]
