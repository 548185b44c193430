import struct

import pytest

from tools.opcode_finder.loader import BinaryImage

NT_OFFSET = 0x80
OPTIONAL_SIZE = 0xF0

TEXT_RAW = 0x400
TEXT_SIZE = 0x3C00


def build_pe(size: int = 0x4000, sections=None) -> bytearray:
    """
    Build a zero-filled buffer with just enough PE header for the section
    locator. ``sections`` is a list of (name, raw_addr, raw_size).
    """
    if sections is None:
        sections = [(".text", TEXT_RAW, TEXT_SIZE)]

    buf = bytearray(size)
    buf[0:2] = b"MZ"
    struct.pack_into("<I", buf, 0x3C, NT_OFFSET)
    buf[NT_OFFSET:NT_OFFSET + 4] = b"PE\x00\x00"
    struct.pack_into("<H", buf, NT_OFFSET + 4, 0x8664)
    struct.pack_into("<H", buf, NT_OFFSET + 6, len(sections))
    struct.pack_into("<H", buf, NT_OFFSET + 20, OPTIONAL_SIZE)

    cursor = NT_OFFSET + 24 + OPTIONAL_SIZE
    for name, raw_addr, raw_size in sections:
        buf[cursor:cursor + 8] = name.encode().ljust(8, b"\x00")
        struct.pack_into("<IIII", buf, cursor + 8,
                         raw_size, raw_addr + 0xC00, raw_size, raw_addr)
        cursor += 40
    return buf


def put_branch(buf: bytearray, source: int, destination: int,
               opcode: int = 0xE8) -> None:
    """Encode a call (E8) or jmp (E9) rel32 at ``source``."""
    buf[source] = opcode
    struct.pack_into("<i", buf, source + 1, destination - source - 5)


def put_bytes(buf: bytearray, offset: int, text: str) -> None:
    data = bytes.fromhex(text)
    buf[offset:offset + len(data)] = data


@pytest.fixture
def pe_buffer() -> bytearray:
    return build_pe()


@pytest.fixture
def make_image():
    def _make(buf) -> BinaryImage:
        return BinaryImage(raw_data=bytes(buf))
    return _make
