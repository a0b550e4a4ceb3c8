"""Compact sets of record and version IDs.

A ``RangeSet`` describes which IDs one side of a sync holds as a sorted list
of disjoint closed intervals, e.g. ``"1-3,5,10"``. Both the log sync protocol
and the repository replication use it to work out what the other side is
missing.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Iterator

_RANGE_PATTERN = re.compile(r"(\d+)(?:-(\d+))?", re.ASCII)


class InvalidRangeError(ValueError):
    """Raised for a malformed range literal or an inverted interval."""


@dataclass(frozen=True, order=True)
class Range:
    """Closed interval ``[low, high]`` of non-negative integers."""

    low: int
    high: int

    def __post_init__(self) -> None:
        if self.low < 0:
            raise InvalidRangeError(f"Range bounds must not be negative: {self.low}")
        if self.low > self.high:
            raise InvalidRangeError(
                f"Range low ({self.low}) is greater than high ({self.high})"
            )

    @classmethod
    def single(cls, value: int) -> "Range":
        return cls(value, value)

    @classmethod
    def parse(cls, text: str) -> "Range":
        """Parse ``"n"`` or ``"low-high"``.

        Raises:
            InvalidRangeError: If the text is not a valid range literal.
        """
        match = _RANGE_PATTERN.fullmatch(text)
        if match is None:
            raise InvalidRangeError(f"Not a valid range: {text!r}")
        low = int(match.group(1))
        high = int(match.group(2)) if match.group(2) is not None else low
        return cls(low, high)

    def contains(self, value: int) -> bool:
        return self.low <= value <= self.high

    def __contains__(self, value: int) -> bool:
        return self.contains(value)

    def __len__(self) -> int:
        return self.high - self.low + 1

    def to_representation(self) -> str:
        if self.low == self.high:
            return str(self.low)
        return f"{self.low}-{self.high}"

    def __str__(self) -> str:
        return self.to_representation()


def _normalize(ranges: Iterable[Range]) -> tuple[Range, ...]:
    """Sort ranges and merge the ones that overlap or touch."""
    merged: list[Range] = []
    for r in sorted(ranges):
        if merged and r.low <= merged[-1].high + 1:
            last = merged[-1]
            if r.high > last.high:
                merged[-1] = Range(last.low, r.high)
        else:
            merged.append(r)
    return tuple(merged)


class RangeSet:
    """Immutable, canonical set of non-negative integers.

    The ranges are kept strictly ascending with a gap of at least two between
    neighbours, so two sets holding the same members always compare equal and
    render the same representation. All algebraic operations return a new
    ``RangeSet``.
    """

    __slots__ = ("_ranges",)

    def __init__(self, ranges: Iterable[Range] = ()):
        self._ranges = _normalize(ranges)

    @classmethod
    def parse(cls, representation: str) -> "RangeSet":
        """Create a set from its textual form, e.g. ``"1-3,5,10"``.

        An empty string yields the empty set.

        Raises:
            InvalidRangeError: On non-numeric values, inverted ranges or
                empty segments between commas.
        """
        if representation == "":
            return cls()
        return cls(Range.parse(token) for token in representation.split(","))

    @classmethod
    def from_values(cls, values: Iterable[int]) -> "RangeSet":
        """Create a set from individual values in any order, duplicates allowed."""
        return cls(Range.single(v) for v in set(values))

    @classmethod
    def from_ranges(cls, ranges: Iterable[Range]) -> "RangeSet":
        return cls(ranges)

    @classmethod
    def span(cls, low: int, high: int) -> "RangeSet":
        """The contiguous set ``low..high``; empty when ``high < low``."""
        if high < low:
            return cls()
        return cls((Range(low, high),))

    @property
    def low(self) -> int:
        """Lowest member, or 0 for the empty set."""
        return self._ranges[0].low if self._ranges else 0

    @property
    def high(self) -> int:
        """Highest member, or 0 for the empty set."""
        return self._ranges[-1].high if self._ranges else 0

    def contains(self, value: int) -> bool:
        lo, hi = 0, len(self._ranges)
        while lo < hi:
            mid = (lo + hi) // 2
            r = self._ranges[mid]
            if value < r.low:
                hi = mid
            elif value > r.high:
                lo = mid + 1
            else:
                return True
        return False

    def __contains__(self, value: object) -> bool:
        return isinstance(value, int) and self.contains(value)

    def union(self, other: "RangeSet") -> "RangeSet":
        """Members present in either set."""
        return RangeSet(self._ranges + other._ranges)

    def difference(self, other: "RangeSet") -> "RangeSet":
        """Members of this set that ``other`` does not hold (``self \\ other``)."""
        result: list[Range] = []
        others = other._ranges
        j = 0
        for r in self._ranges:
            low = r.low
            while j < len(others) and others[j].high < low:
                j += 1
            k = j
            while k < len(others) and others[k].low <= r.high:
                cut = others[k]
                if cut.low > low:
                    result.append(Range(low, cut.low - 1))
                low = max(low, cut.high + 1)
                if low > r.high:
                    break
                k += 1
            if low <= r.high:
                result.append(Range(low, r.high))
        return RangeSet(result)

    def diff_dest(self, dest: "RangeSet") -> "RangeSet":
        """Members of ``dest`` that this set does not hold (``dest \\ self``).

        Called on the remote side's set with the local set as argument, this
        yields the records the remote side still needs::

            remote.diff_dest(local)  # == local - remote
        """
        return dest.difference(self)

    def intersection(self, other: "RangeSet") -> "RangeSet":
        result: list[Range] = []
        a, b = self._ranges, other._ranges
        i = j = 0
        while i < len(a) and j < len(b):
            low = max(a[i].low, b[j].low)
            high = min(a[i].high, b[j].high)
            if low <= high:
                result.append(Range(low, high))
            if a[i].high < b[j].high:
                i += 1
            else:
                j += 1
        return RangeSet(result)

    def __or__(self, other: "RangeSet") -> "RangeSet":
        return self.union(other)

    def __sub__(self, other: "RangeSet") -> "RangeSet":
        return self.difference(other)

    def __and__(self, other: "RangeSet") -> "RangeSet":
        return self.intersection(other)

    def iterator(self) -> Iterator[int]:
        """Ascending iterator over the individual members."""
        for r in self._ranges:
            yield from range(r.low, r.high + 1)

    def reverse_iterator(self) -> Iterator[int]:
        """Descending iterator over the individual members."""
        for r in reversed(self._ranges):
            yield from range(r.high, r.low - 1, -1)

    def range_iterator(self) -> Iterator[Range]:
        """Ascending iterator over the coalesced ranges."""
        return iter(self._ranges)

    def __iter__(self) -> Iterator[int]:
        return self.iterator()

    def __reversed__(self) -> Iterator[int]:
        return self.reverse_iterator()

    def __len__(self) -> int:
        return sum(len(r) for r in self._ranges)

    def __bool__(self) -> bool:
        return bool(self._ranges)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RangeSet):
            return NotImplemented
        return self._ranges == other._ranges

    def __hash__(self) -> int:
        return hash(self._ranges)

    def to_representation(self) -> str:
        return ",".join(r.to_representation() for r in self._ranges)

    def __str__(self) -> str:
        return self.to_representation()

    def __repr__(self) -> str:
        return f"RangeSet({self.to_representation()!r})"


def missing(source: RangeSet, dest: RangeSet) -> RangeSet:
    """Members of ``source`` that ``dest`` lacks.

    Reads left to right: "what is missing from ``dest`` out of ``source``".
    """
    return source.difference(dest)
