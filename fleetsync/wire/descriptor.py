"""Descriptor: which record IDs of one log a side currently holds."""

from dataclasses import dataclass, field

from ..ranges import RangeSet
from . import codec
from .codec import MalformedRecordError


@dataclass(frozen=True)
class Descriptor:
    """Handshake object of the log sync protocol.

    Wire form: ``encode(owner_id) + "," + log_id + "," + ranges``. Only the
    owner ID needs escaping; the range set grammar never contains ``$``.
    """

    owner_id: str
    log_id: int
    ranges: RangeSet = field(default_factory=RangeSet)

    def to_representation(self) -> str:
        return f"{codec.encode(self.owner_id)},{self.log_id},{self.ranges.to_representation()}"

    @classmethod
    def parse(cls, line: str) -> "Descriptor":
        """Parse a single descriptor line.

        ``"owner,5"`` and ``"owner,5,"`` both describe an empty log.

        Raises:
            MalformedRecordError: On missing fields, a non-numeric log ID or an
                unparsable range set.
        """
        parts = line.rstrip("\r\n").split(",", 2)
        if len(parts) < 2:
            raise MalformedRecordError(f"Could not create descriptor from: {line!r}")
        try:
            owner_id = codec.decode(parts[0])
            log_id = codec.parse_int(parts[1])
            ranges = RangeSet.parse(parts[2] if len(parts) == 3 else "")
        except ValueError as e:
            raise MalformedRecordError(
                f"Could not create descriptor from: {line!r}"
            ) from e
        return cls(owner_id, log_id, ranges)

    def __str__(self) -> str:
        return self.to_representation()
