"""
Result collection and output for the opcode finder.

Produces:
- The result document (opcodes.json): name -> "0x.." / "0x.. 0x.." / "N/A"
- The per-signature console lines ([+] found, [x] not found)
"""

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from . import config


def format_value(value: int) -> str:
    """Hex-format a value, keeping the sign outside the prefix."""
    if value < 0:
        return f"-0x{-value:X}"
    return f"0x{value:X}"


@dataclass
class ResultEntry:
    """The outcome for one reported name."""
    name: str
    values: List[int] = field(default_factory=list)
    ambiguous: bool = False
    message: str = ""

    @property
    def found(self) -> bool:
        return bool(self.values)

    @classmethod
    def not_found(cls, name: str, message: str = "") -> "ResultEntry":
        return cls(name=name, message=message or f"Cannot find opcode for {name}")

    @classmethod
    def from_values(cls, name: str, values: Iterable[int]) -> "ResultEntry":
        """Build an entry, dropping repeated values and keeping order."""
        unique = list(dict.fromkeys(values))
        if not unique:
            return cls.not_found(name)
        return cls(name=name, values=unique, ambiguous=len(unique) > 1)

    def render(self) -> str:
        if not self.values:
            return config.NOT_FOUND
        return " ".join(format_value(v) for v in self.values)

    def console_line(self) -> str:
        if not self.found:
            return f"[x] {self.message}"
        prefix = "Possible opcodes for " if self.ambiguous else ""
        return f"[+] {prefix}{self.name}: {self.render()}"


class ResultMap:
    """
    Insertion ordered name -> ResultEntry mapping.

    The first entry recorded for a name is kept; later ones are ignored.
    Safe to record into from several threads.
    """

    def __init__(self):
        self._entries: Dict[str, ResultEntry] = {}
        self._lock = threading.Lock()

    def record(self, entry: ResultEntry) -> bool:
        """Insert ``entry`` if its name is new. Returns True if inserted."""
        with self._lock:
            if entry.name in self._entries:
                return False
            self._entries[entry.name] = entry
            return True

    def extend(self, entries: Iterable[ResultEntry]) -> None:
        for entry in entries:
            self.record(entry)

    def get(self, name: str) -> Optional[ResultEntry]:
        return self._entries.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> List[ResultEntry]:
        with self._lock:
            return list(self._entries.values())

    def to_dict(self) -> Dict[str, str]:
        return {e.name: e.render() for e in self.entries()}

    def summary(self) -> dict:
        entries = self.entries()
        found = sum(1 for e in entries if e.found)
        return {
            "total": len(entries),
            "found": found,
            "not_found": len(entries) - found,
            "ambiguous": sum(1 for e in entries if e.ambiguous),
        }


def write_results(results: ResultMap, output_path: str) -> None:
    """Write the result document as JSON."""
    path = Path(output_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(results.to_dict(), f, indent=2)
        f.write("\n")


def print_stats(image, xrefs, results: ResultMap) -> None:
    """Print a summary block."""
    summary = results.summary()

    print(f"\n{'=' * 60}")
    print(f"  Opcode Finder Summary")
    print(f"{'=' * 60}")
    print(f"  Binary: {image.filepath or 'N/A'} ({len(image):,d} bytes)")
    for sec in image.sections:
        print(f"    {sec.name:<8s} raw 0x{sec.raw_addr:08X}  "
              f"size 0x{sec.raw_size:08X}")
    if xrefs.is_built:
        print(f"  Cross-references: {xrefs.count():,d}")
        for xtype, count in sorted(xrefs.count_by_type().items()):
            print(f"    {xtype}: {count:,d}")
    print(f"  Names: {summary['total']:,d}")
    print(f"    found: {summary['found']:,d}")
    print(f"    ambiguous: {summary['ambiguous']:,d}")
    print(f"    not found: {summary['not_found']:,d}")
    print(f"{'=' * 60}")
