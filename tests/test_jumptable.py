import struct

import pytest

from conftest import build_pe, put_bytes
from tools.opcode_finder.config import BLOCK_SIZE
from tools.opcode_finder.engine import DisasmEngine
from tools.opcode_finder.jumptable import (
    ConfigurationError,
    JumpTable,
    JumpTableError,
    TableEntry,
    TableIdioms,
    build_table,
    read_direct_table,
    read_indirect_table,
    reconstruct,
    scan_idioms,
)
from tools.opcode_finder.loader import BinaryImage
from tools.opcode_finder.signatures import JumpTableType

FUNC = 0x1000


def _disp(offset: int) -> str:
    """Encode the displacement that points at file offset ``offset``."""
    return struct.pack("<i", offset + BLOCK_SIZE).hex()


def _put_i32s(buf, offset, values):
    for i, value in enumerate(values):
        struct.pack_into("<i", buf, offset + i * 4, value)


def _direct_image(min_case_insn="83 E8 05"):
    buf = build_pe()
    table = 0x2000
    put_bytes(buf, FUNC,
              min_case_insn                       # sub eax, 5
              + "8B 8C 82" + _disp(table)         # mov ecx, [rdx+rax*4+T]
              + "CC")
    _put_i32s(buf, table, [10, -1, 20])
    put_bytes(buf, table + 12, "CC CC CC CC")
    return BinaryImage(raw_data=bytes(buf)), table


def test_direct_table_reconstruction():
    image, _ = _direct_image()

    table = reconstruct(image, FUNC, 0x40, JumpTableType.DIRECT, "Direct")

    assert table.as_dict() == {
        5: 10 - BLOCK_SIZE,
        6: -1 - BLOCK_SIZE,
        7: 20 - BLOCK_SIZE,
    }


def test_direct_table_with_lea_minimum_case():
    # lea eax, [rcx-5]
    image, _ = _direct_image("8D 41 FB")
    table = reconstruct(image, FUNC, 0x40, JumpTableType.DIRECT)
    assert [e.case_value for e in table] == [5, 6, 7]


def test_decoding_stops_at_trap():
    buf = build_pe()
    put_bytes(buf, FUNC, "83 E8 05 CC 8B 8C 82" + _disp(0x2000))
    image = BinaryImage(raw_data=bytes(buf))

    instructions = DisasmEngine(image).decode_function(FUNC, 0x40)

    assert [insn.mnemonic for insn in instructions] == ["sub"]
    with pytest.raises(JumpTableError):
        reconstruct(image, FUNC, 0x40, JumpTableType.DIRECT, "Stopped")


def test_decoding_respects_size_bound():
    image, _ = _direct_image()
    instructions = DisasmEngine(image).decode_function(FUNC, 3)
    assert [str(insn) for insn in instructions] == ["sub eax, 5"]


def test_scan_idioms_collects_in_stream_order():
    image, table_base = _direct_image()
    instructions = DisasmEngine(image).decode_function(FUNC, 0x40)

    idioms = scan_idioms(instructions)

    assert idioms.minimum_cases == [5]
    assert idioms.jump_tables == [table_base]
    assert idioms.indirect_tables == []


def test_unrelated_instructions_are_ignored():
    buf = build_pe()
    put_bytes(buf, FUNC,
              "83 E9 05"                          # sub ecx, 5
              + "8D 41 05"                        # lea eax, [rcx+5]
              + "8B 8C 81" + _disp(0x2000)        # mov ecx, [rcx+rax*4+T]
              + "8B 0C 85" + _disp(0x2400)        # mov ecx, [rax*4+T]
              + "0F B6 84 42" + _disp(0x2800)     # movzx eax, byte [rdx+rax*2+I]
              + "CC")
    image = BinaryImage(raw_data=bytes(buf))

    idioms = scan_idioms(DisasmEngine(image).decode_function(FUNC, 0x40))

    assert idioms.minimum_cases == []
    assert idioms.jump_tables == [0x2000]
    assert idioms.indirect_tables == []


def test_minimum_case_is_signed():
    buf = build_pe()
    put_bytes(buf, FUNC, "2D 00 00 00 80 CC")   # sub eax, 0x80000000
    image = BinaryImage(raw_data=bytes(buf))

    idioms = scan_idioms(DisasmEngine(image).decode_function(FUNC, 0x40))

    assert idioms.minimum_cases == [-0x80000000]


def test_direct_read_stops_at_padding_pair():
    buf = bytearray(0x40)
    _put_i32s(buf, 0x10, [0x100, 0x200])
    put_bytes(buf, 0x18, "CC CC 00 00")
    entries = read_direct_table(BinaryImage(raw_data=bytes(buf)), 3, 0x10)

    assert entries == [
        TableEntry(3, 0x100 - BLOCK_SIZE),
        TableEntry(4, 0x200 - BLOCK_SIZE),
    ]


def test_direct_read_stops_at_end_of_image():
    buf = bytearray(0x18)
    _put_i32s(buf, 0x10, [0x100, 0x200])
    entries = read_direct_table(BinaryImage(raw_data=bytes(buf)), 0, 0x10)
    assert [e.case_value for e in entries] == [0, 1]


def test_indirect_read_through_byte_table():
    buf = bytearray(0x40)
    put_bytes(buf, 0x10, "00 01 00")
    _put_i32s(buf, 0x20, [100, 200])
    image = BinaryImage(raw_data=bytes(buf))

    entries = read_indirect_table(image, 10, 0x10, 0x20, 3)

    assert {e.case_value: e.location for e in entries} == {
        10: 100 - BLOCK_SIZE,
        11: 200 - BLOCK_SIZE,
        12: 100 - BLOCK_SIZE,
    }


def test_indirect_table_reconstruction():
    buf = build_pe()
    indirect, dense, next_indirect, next_dense = 0x2000, 0x2100, 0x2200, 0x2003
    put_bytes(buf, FUNC,
              "8D 41 F6"                                  # lea eax, [rcx-0xa]
              + "0F B6 84 02" + _disp(indirect)           # movzx eax, byte [rdx+rax+I]
              + "8B 8C 82" + _disp(dense)                 # mov ecx, [rdx+rax*4+T]
              + "0F B6 84 02" + _disp(next_indirect)
              + "8B 8C 82" + _disp(next_dense)
              + "CC")
    put_bytes(buf, indirect, "00 01 00")
    _put_i32s(buf, dense, [100, 200])
    image = BinaryImage(raw_data=bytes(buf))

    table = reconstruct(image, FUNC, 0x80, JumpTableType.INDIRECT, "Indirect")

    assert table.as_dict() == {
        10: 100 - BLOCK_SIZE,
        11: 200 - BLOCK_SIZE,
        12: 100 - BLOCK_SIZE,
    }


def test_indirect_count_mismatch_is_an_error():
    idioms = TableIdioms(minimum_cases=[0], indirect_tables=[],
                         jump_tables=[0x10])
    with pytest.raises(JumpTableError):
        build_table(BinaryImage(raw_data=bytes(0x40)), idioms,
                    JumpTableType.INDIRECT, "Mismatch")


def test_no_jump_table_is_an_error():
    with pytest.raises(JumpTableError):
        build_table(BinaryImage(raw_data=bytes(0x40)), TableIdioms(),
                    JumpTableType.DIRECT, "Empty")


def test_missing_minimum_case_is_an_error():
    idioms = TableIdioms(jump_tables=[0x10])
    with pytest.raises(JumpTableError):
        build_table(BinaryImage(raw_data=bytes(0x40)), idioms,
                    JumpTableType.DIRECT, "NoCase")


def test_table_kind_none_is_a_configuration_error():
    idioms = TableIdioms(minimum_cases=[0], jump_tables=[0x10])
    with pytest.raises(ConfigurationError):
        build_table(BinaryImage(raw_data=bytes(0x40)), idioms,
                    JumpTableType.NONE, "NoKind")


def test_zero_function_size_is_a_configuration_error():
    image, _ = _direct_image()
    with pytest.raises(ConfigurationError):
        reconstruct(image, FUNC, 0, JumpTableType.DIRECT, "NoSize")


def test_several_tables_keep_first_entry_per_case():
    buf = bytearray(0x40)
    _put_i32s(buf, 0x00, [0x100, 0x200])
    put_bytes(buf, 0x08, "CC CC CC CC")
    _put_i32s(buf, 0x10, [0x300, 0x400])
    put_bytes(buf, 0x18, "CC CC CC CC")
    idioms = TableIdioms(minimum_cases=[0, 1], jump_tables=[0x00, 0x10])

    table = build_table(BinaryImage(raw_data=bytes(buf)), idioms,
                        JumpTableType.DIRECT)

    assert table.as_dict() == {
        0: 0x100 - BLOCK_SIZE,
        1: 0x200 - BLOCK_SIZE,
        2: 0x400 - BLOCK_SIZE,
    }


def test_jump_table_location_queries():
    table = JumpTable([
        TableEntry(1, 0x100),
        TableEntry(2, 0x120),
        TableEntry(3, 0x120),
        TableEntry(1, 0x500),
    ])

    assert len(table) == 3
    assert table.at_location(0x120) == [TableEntry(2, 0x120), TableEntry(3, 0x120)]
    assert table.nearest_below(0x130) == TableEntry(2, 0x120)
    assert table.nearest_below(0x100) == TableEntry(1, 0x100)
    assert table.nearest_below(0x99) is None
    assert table.nearest_below(0x190, window=0x10) is None
    assert [e.case_value for e in table.all_below(0x140)] == [2, 3, 1]
