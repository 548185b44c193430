"""
Binary image loader for PE executables.

Loads the raw executable into memory and locates the handful of
sections the analysis needs, without modelling the full PE format.
"""

import struct
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from . import config
from .pattern import find_pattern
from .signatures import ReadType


class ImageReadError(ValueError):
    """Raised when a read falls outside the image buffer."""


@dataclass(frozen=True)
class SectionInfo:
    """Location of a section inside the file."""
    name: str
    raw_addr: int
    raw_size: int

    @property
    def raw_end(self) -> int:
        return self.raw_addr + self.raw_size


_READ_FORMATS = {
    ReadType.UINT8: "<B",
    ReadType.UINT16: "<H",
    ReadType.UINT32: "<I",
    ReadType.UINT64: "<Q",
}


@dataclass
class BinaryImage:
    """
    Represents the loaded executable.

    All addresses are raw file offsets into ``raw_data``. The buffer is
    never modified after loading.
    """
    raw_data: bytes
    filepath: str = ""

    sections: List[SectionInfo] = field(default_factory=list)

    _section_by_name: Dict[str, SectionInfo] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        if not self.sections:
            self.sections = locate_sections(self.raw_data)
        self._section_by_name = {s.name: s for s in self.sections}

    def __len__(self) -> int:
        return len(self.raw_data)

    def get_section(self, name: str) -> Optional[SectionInfo]:
        """Get section by name."""
        return self._section_by_name.get(name)

    def code_section(self) -> SectionInfo:
        """Return the .text section, raising LookupError if it was not found."""
        sec = self._section_by_name.get(config.TEXT_SECTION)
        if sec is None:
            raise LookupError(f"Cannot find section {config.TEXT_SECTION}")
        return sec

    def get_section_data(self, section: SectionInfo) -> bytes:
        """Get the raw bytes for a section."""
        return self.raw_data[section.raw_addr:section.raw_end]

    def find(self, pattern, start: int = 0, end: Optional[int] = None) -> List[int]:
        """Find every match of a pattern (or signature string) in the image."""
        return find_pattern(self.raw_data, pattern, start, end)

    def read_bytes(self, offset: int, size: int) -> bytes:
        """Read ``size`` bytes at a file offset."""
        if offset < 0 or size < 0 or offset + size > len(self.raw_data):
            raise ImageReadError(
                f"Read of {size} bytes at 0x{offset:X} is outside the image "
                f"(0x{len(self.raw_data):X} bytes)")
        return self.raw_data[offset:offset + size]

    def _unpack(self, fmt: str, offset: int) -> int:
        data = self.read_bytes(offset, struct.calcsize(fmt))
        return struct.unpack(fmt, data)[0]

    def read_u8(self, offset: int) -> int:
        return self._unpack("<B", offset)

    def read_u16(self, offset: int) -> int:
        return self._unpack("<H", offset)

    def read_u32(self, offset: int) -> int:
        return self._unpack("<I", offset)

    def read_u64(self, offset: int) -> int:
        return self._unpack("<Q", offset)

    def read_i32(self, offset: int) -> int:
        """Read a signed 32-bit little-endian integer."""
        return self._unpack("<i", offset)

    def read_value(self, offset: int, read_type: ReadType) -> Optional[int]:
        """
        Read a value of the width described by ``read_type``.

        Returns None for ReadType.NONE.
        """
        if read_type is ReadType.NONE:
            return None
        return self._unpack(_READ_FORMATS[read_type], offset)


def locate_sections(data: bytes) -> List[SectionInfo]:
    """
    Locate .text, .data and .rdata by walking the PE section table.

    Only the fields needed to find the section table are read. A buffer
    without a valid PE header yields an empty list.
    """
    if len(data) < config.PE_POINTER_OFFSET + 4:
        return []

    nt = struct.unpack_from("<I", data, config.PE_POINTER_OFFSET)[0]
    if nt + config.PE_OPTIONAL_HEADER_OFFSET > len(data):
        return []
    if data[nt:nt + 4] != config.PE_MAGIC:
        return []

    num_sections = struct.unpack_from(
        "<H", data, nt + config.PE_NUM_SECTIONS_OFFSET)[0]
    optional_size = struct.unpack_from(
        "<H", data, nt + config.PE_OPTIONAL_SIZE_OFFSET)[0]

    sections = []
    cursor = nt + config.PE_OPTIONAL_HEADER_OFFSET + optional_size
    for _ in range(num_sections):
        if cursor + config.SECTION_HEADER_SIZE > len(data):
            break

        name = config.KNOWN_SECTIONS.get(
            bytes(data[cursor:cursor + config.SECTION_NAME_SIZE]))
        if name is not None:
            raw_size = struct.unpack_from(
                "<I", data, cursor + config.SECTION_RAW_SIZE_OFFSET)[0]
            raw_addr = struct.unpack_from(
                "<I", data, cursor + config.SECTION_RAW_ADDR_OFFSET)[0]
            sections.append(SectionInfo(name, raw_addr, raw_size))

        cursor += config.SECTION_HEADER_SIZE

    return sections


def load_image(path: str) -> BinaryImage:
    """
    Load an executable from disk.

    Args:
        path: Path to the executable.

    Returns:
        A BinaryImage with its sections located.
    """
    exe_file = Path(path)
    if not exe_file.exists():
        raise FileNotFoundError(f"Executable not found: {path}")

    return BinaryImage(raw_data=exe_file.read_bytes(), filepath=str(exe_file))
