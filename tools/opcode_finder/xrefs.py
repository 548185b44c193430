"""
Cross-reference tracking for the opcode finder.

Indexes every relative call and jump in the code section by its
resolved destination so callers of an address can be looked up.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from . import config
from .loader import BinaryImage
from .pattern import Pattern


class XRefType(Enum):
    CALL = "call"    # call rel32
    JUMP = "jump"    # jmp rel32


@dataclass(frozen=True)
class XRef:
    """A single cross-reference."""
    source: int
    destination: int
    xref_type: XRefType


_BRANCH_PATTERNS = (
    (XRefType.CALL, Pattern.parse(config.CALL_PATTERN)),
    (XRefType.JUMP, Pattern.parse(config.JUMP_PATTERN)),
)


def function_start_before(image: BinaryImage, address: int,
                          window: int = config.FUNCTION_START_WINDOW) -> int:
    """
    Find the start of the function containing ``address``.

    Scans backward up to ``window`` bytes for the padding byte the
    compiler places between functions and returns the byte after it.
    Returns ``address`` unchanged when no padding is found.
    """
    data = image.raw_data
    for i in range(window + 1):
        pos = address - i
        if pos < 0:
            break
        if pos < len(data) and data[pos] == config.TRAP_BYTE:
            return pos + 1
    return address


class XRefIndex:
    """
    Destination -> sources index over relative calls and jumps.

    The index is built on first query and never changes afterwards; the
    build is guarded so concurrent first queries only scan once.
    """

    def __init__(self, image: BinaryImage):
        self.image = image
        self._to: Optional[Dict[int, List[XRef]]] = None
        self._count = 0
        self._lock = threading.Lock()

    @property
    def is_built(self) -> bool:
        return self._to is not None

    def _ensure_built(self) -> Dict[int, List[XRef]]:
        index = self._to
        if index is not None:
            return index
        with self._lock:
            if self._to is None:
                self._to = self._build()
            return self._to

    def _build(self) -> Dict[int, List[XRef]]:
        text = self.image.code_section()
        data = self.image.raw_data

        index: Dict[int, List[XRef]] = {}
        count = 0
        for xref_type, pattern in _BRANCH_PATTERNS:
            for source in pattern.find_all(data, text.raw_addr, text.raw_end):
                displacement = self.image.read_i32(source + 1)
                destination = source + config.RELATIVE_BRANCH_SIZE + displacement
                index.setdefault(destination, []).append(
                    XRef(source, destination, xref_type))
                count += 1

        self._count = count
        return index

    def get_refs_to(self, address: int) -> List[XRef]:
        """Get all references pointing to an address."""
        return list(self._ensure_built().get(address, []))

    def refs_to(self, address: int) -> List[int]:
        """Get the source address of every call/jump targeting ``address``."""
        return [x.source for x in self._ensure_built().get(address, [])]

    def walk_up_callers(self, address: int, hops: int) -> Optional[int]:
        """
        Follow the first caller ``hops`` levels up from ``address``.

        Every hop but the last continues from the start of the calling
        function; the last hop returns the call site itself.

        Returns None if some level has no caller.
        """
        trace = self.trace_callers(address, hops)
        if not trace:
            return None
        return trace[-1]

    def trace_callers(self, address: int, hops: int) -> List[int]:
        """
        Same walk as walk_up_callers, returning the address reached at
        each hop. The list is empty when a level has no caller.
        """
        hops = max(hops, 1)
        trace = []
        current = address
        for i in range(hops):
            sources = self.refs_to(current)
            if not sources:
                return []
            caller = sources[0]
            if i != hops - 1:
                caller = function_start_before(self.image, caller)
            trace.append(caller)
            current = caller
        return trace

    def count(self) -> int:
        self._ensure_built()
        return self._count

    def count_by_type(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for refs in self._ensure_built().values():
            for r in refs:
                key = r.xref_type.value
                counts[key] = counts.get(key, 0) + 1
        return counts
