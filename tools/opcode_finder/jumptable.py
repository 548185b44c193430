"""
Jump table reconstruction.

Recovers the switch tables a compiler emitted for a dispatch function:

1. Decode the function with the disassembly engine
2. Collect minimum case values, indirection table bases and jump table
   bases from a small set of instruction idioms, in stream order
3. Pair them positionally and read the table bytes from the image

Direct tables map ``case - minimum`` straight to a 4 byte slot.
Indirect tables first look up a byte index, then use that to pick the
slot in a smaller dense table.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from . import config
from .engine import DisasmEngine, Instruction
from .loader import BinaryImage
from .signatures import JumpTableType


class JumpTableError(ValueError):
    """Raised when no usable jump table can be recovered."""


class ConfigurationError(RuntimeError):
    """Raised when a signature is shaped in a way nothing can handle."""


@dataclass(frozen=True)
class TableEntry:
    """One recovered jump table slot."""
    case_value: int
    location: int


@dataclass
class TableIdioms:
    """Values collected from the instruction stream, in order of appearance."""
    minimum_cases: List[int] = field(default_factory=list)
    indirect_tables: List[int] = field(default_factory=list)
    jump_tables: List[int] = field(default_factory=list)


class JumpTable:
    """
    Ordered table entries for one probed function, unique per case value.
    """

    def __init__(self, entries: Iterable[TableEntry] = ()):
        self.entries: List[TableEntry] = []
        self._cases = set()
        self._by_location: Dict[int, List[TableEntry]] = {}
        for entry in entries:
            self.add(entry)

    def add(self, entry: TableEntry) -> bool:
        """Add an entry; a case value already present is ignored."""
        if entry.case_value in self._cases:
            return False
        self._cases.add(entry.case_value)
        self.entries.append(entry)
        self._by_location.setdefault(entry.location, []).append(entry)
        return True

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def at_location(self, location: int) -> List[TableEntry]:
        """Entries whose handler starts exactly at ``location``."""
        return list(self._by_location.get(location, []))

    def nearest_below(self, address: int,
                      window: int = config.TABLE_SEARCH_WINDOW) -> Optional[TableEntry]:
        """First entry found scanning ``address``, ``address - 1``, ... down to ``address - window``."""
        for offset in range(window + 1):
            hits = self._by_location.get(address - offset)
            if hits:
                return hits[0]
        return None

    def all_below(self, address: int,
                  window: int = config.TABLE_SEARCH_WINDOW) -> List[TableEntry]:
        """Every entry located within ``window`` bytes below ``address``."""
        found = []
        for offset in range(window + 1):
            found.extend(self._by_location.get(address - offset, []))
        return found

    def as_dict(self) -> Dict[int, int]:
        return {e.case_value: e.location for e in self.entries}


def _is_reg(insn: Instruction, index: int, name: str) -> bool:
    op = insn.operand(index)
    return op is not None and op.is_reg and op.reg == name


def _signed32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value & 0x80000000 else value


def scan_idioms(instructions: Iterable[Instruction],
                block_size: int = config.BLOCK_SIZE) -> TableIdioms:
    """
    Collect table parameters from the decoded instruction stream.

    Recognised forms (dispatch register eax, index rax):

        sub eax, imm                        minimum case = imm
        lea eax, [reg - disp]               minimum case = disp
        movzx eax, byte ptr [reg + rax + X] indirection table at X - block
        mov ecx, dword ptr [reg + rax*4 + X] jump table at X - block
    """
    idioms = TableIdioms()
    dispatch = config.DISPATCH_REGISTER
    index = config.INDEX_REGISTER

    for insn in instructions:
        if len(insn.operands) != 2:
            continue
        src = insn.operands[1]

        if insn.mnemonic == "sub" and _is_reg(insn, 0, dispatch) and src.is_imm:
            idioms.minimum_cases.append(_signed32(src.imm))
            continue

        if insn.mnemonic == "lea" and _is_reg(insn, 0, dispatch) \
                and src.is_mem and src.mem_disp < 0:
            idioms.minimum_cases.append(-src.mem_disp)
            continue

        if insn.mnemonic == "movzx" and _is_reg(insn, 0, dispatch) \
                and src.is_mem and src.size == 1 \
                and src.mem_base is not None and src.mem_index == index \
                and src.mem_scale == 1:
            idioms.indirect_tables.append(src.mem_disp - block_size)
            continue

        if insn.mnemonic == "mov" and _is_reg(insn, 0, config.TABLE_LOAD_REGISTER) \
                and src.is_mem and src.mem_base is not None \
                and src.mem_index == index \
                and src.mem_scale == config.TABLE_ENTRY_SIZE:
            idioms.jump_tables.append(src.mem_disp - block_size)

    return idioms


def read_direct_table(image: BinaryImage, minimum_case: int, table_base: int,
                      block_size: int = config.BLOCK_SIZE) -> List[TableEntry]:
    """
    Read a direct table starting at ``table_base``.

    Slots are read until one starts with two padding bytes or runs past
    the end of the image.
    """
    data = image.raw_data
    entries = []
    slot = table_base
    case = minimum_case
    while 0 <= slot and slot + config.TABLE_ENTRY_SIZE <= len(data):
        if data[slot] == config.TRAP_BYTE and data[slot + 1] == config.TRAP_BYTE:
            break
        entries.append(TableEntry(case, image.read_i32(slot) - block_size))
        slot += config.TABLE_ENTRY_SIZE
        case += 1
    return entries


def read_indirect_table(image: BinaryImage, minimum_case: int,
                        indirect_base: int, table_base: int, extent: int,
                        block_size: int = config.BLOCK_SIZE) -> List[TableEntry]:
    """
    Read ``extent`` cases through a byte indirection table.

    Case ``minimum_case + k`` uses the slot selected by the k-th byte of
    the indirection table.
    """
    entries = []
    for k in range(max(extent, 0)):
        slot_index = image.read_u8(indirect_base + k)
        location = image.read_i32(
            table_base + slot_index * config.TABLE_ENTRY_SIZE) - block_size
        entries.append(TableEntry(minimum_case + k, location))
    return entries


def build_table(image: BinaryImage, idioms: TableIdioms, kind: JumpTableType,
                name: str = "",
                block_size: int = config.BLOCK_SIZE) -> JumpTable:
    """
    Pair the collected idioms and materialise every table entry.

    Args:
        image: The image holding the table bytes.
        idioms: Parameters collected by scan_idioms.
        kind: Direct or indirect.
        name: Signature name, used in error messages.

    Returns:
        The combined JumpTable.
    """
    if kind is JumpTableType.NONE:
        raise ConfigurationError(f"{name} has SubInfo but no JumpTableType")

    jump_tables = idioms.jump_tables
    if not jump_tables:
        raise JumpTableError(f"No jumptable was found for {name}.")

    table = JumpTable()

    if kind is JumpTableType.INDIRECT:
        indirect_tables = idioms.indirect_tables
        if len(indirect_tables) != len(jump_tables):
            raise JumpTableError(
                f"The size of indirect table doesn't match to jump table. "
                f"Function: {name}")
        for idx in range(len(jump_tables) - 1):
            minimum_case = _minimum_case(idioms, idx, name)
            extent = jump_tables[idx + 1] - indirect_tables[idx]
            for entry in read_indirect_table(image, minimum_case,
                                             indirect_tables[idx],
                                             jump_tables[idx], extent,
                                             block_size):
                table.add(entry)
        return table

    for idx, table_base in enumerate(jump_tables):
        minimum_case = _minimum_case(idioms, idx, name)
        for entry in read_direct_table(image, minimum_case, table_base, block_size):
            table.add(entry)
    return table


def _minimum_case(idioms: TableIdioms, idx: int, name: str) -> int:
    if idx >= len(idioms.minimum_cases):
        raise JumpTableError(f"No minimum case value for table #{idx} of {name}.")
    return idioms.minimum_cases[idx]


def reconstruct(image: BinaryImage, address: int, function_size: int,
                kind: JumpTableType, name: str = "",
                engine: Optional[DisasmEngine] = None,
                block_size: int = config.BLOCK_SIZE) -> JumpTable:
    """
    Recover the jump table of the function at ``address``.

    Raises JumpTableError when nothing usable is found.
    """
    if function_size <= 0:
        raise ConfigurationError(f"{name} has SubInfo but no FunctionSize")

    engine = engine or DisasmEngine(image)
    instructions = engine.decode_function(address, function_size)
    idioms = scan_idioms(instructions, block_size)
    return build_table(image, idioms, kind, name, block_size)
