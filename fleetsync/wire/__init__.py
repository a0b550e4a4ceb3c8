"""Line-oriented wire formats for the sync protocols.

Every record is a single line of comma-separated fields; free-text fields are
escaped with :mod:`fleetsync.wire.codec` so they can never introduce a stray
separator.
"""

from .codec import MalformedRecordError, decode, encode
from .descriptor import Descriptor
from .event import Event, now_millis
from .lowest_id import LowestID

__all__ = [
    "Descriptor",
    "Event",
    "LowestID",
    "MalformedRecordError",
    "decode",
    "encode",
    "now_millis",
]
