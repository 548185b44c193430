"""
Disassembly engine using Capstone.

Decodes a bounded window of x86-64 code into Instruction records with
structured operands, so callers can match instruction idioms on the
mnemonic, operand kinds and registers rather than on rendered text.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from capstone import Cs, CS_ARCH_X86, CS_MODE_32, CS_MODE_64, CsInsn
from capstone import CS_OP_IMM, CS_OP_MEM, CS_OP_REG

from . import config
from .loader import BinaryImage

_CS_MODES = {32: CS_MODE_32, 64: CS_MODE_64}


@dataclass
class Operand:
    """Parsed instruction operand."""
    type: str  # "reg", "imm", "mem"
    size: int = 0
    # For reg:
    reg: Optional[str] = None
    # For imm:
    imm: Optional[int] = None
    # For mem: [base + index*scale + disp]
    mem_base: Optional[str] = None
    mem_index: Optional[str] = None
    mem_scale: int = 1
    mem_disp: int = 0

    @property
    def is_reg(self) -> bool:
        return self.type == "reg"

    @property
    def is_imm(self) -> bool:
        return self.type == "imm"

    @property
    def is_mem(self) -> bool:
        return self.type == "mem"


@dataclass
class Instruction:
    """A decoded instruction with metadata."""
    address: int
    size: int
    mnemonic: str
    op_str: str
    operands: List[Operand] = field(default_factory=list)

    @property
    def is_trap(self) -> bool:
        return self.mnemonic in config.TRAP_MNEMONICS

    def operand(self, index: int) -> Optional[Operand]:
        if index < len(self.operands):
            return self.operands[index]
        return None

    def __str__(self) -> str:
        return f"{self.mnemonic} {self.op_str}".strip()


class DisasmEngine:
    """
    x86 disassembly engine backed by Capstone.

    Instructions are decoded on demand from a window of the image; nothing
    is cached between calls.
    """

    def __init__(self, image: BinaryImage, mode: int = config.CS_MODE):
        self.image = image
        self._cs = Cs(CS_ARCH_X86, _CS_MODES[mode])
        self._cs.detail = True

    def _convert_operand(self, cs_insn: CsInsn, op) -> Operand:
        if op.type == CS_OP_REG:
            return Operand("reg", size=op.size, reg=cs_insn.reg_name(op.reg))
        if op.type == CS_OP_IMM:
            return Operand("imm", size=op.size, imm=op.imm)
        if op.type == CS_OP_MEM:
            return Operand(
                "mem",
                size=op.size,
                mem_base=cs_insn.reg_name(op.mem.base) if op.mem.base else None,
                mem_index=cs_insn.reg_name(op.mem.index) if op.mem.index else None,
                mem_scale=op.mem.scale,
                mem_disp=op.mem.disp,
            )
        return Operand("other", size=op.size)

    def _classify_instruction(self, cs_insn: CsInsn) -> Instruction:
        """Convert a Capstone instruction to our Instruction type."""
        return Instruction(
            address=cs_insn.address,
            size=cs_insn.size,
            mnemonic=cs_insn.mnemonic,
            op_str=cs_insn.op_str,
            operands=[self._convert_operand(cs_insn, op)
                      for op in cs_insn.operands],
        )

    def decode_function(self, address: int, size: int) -> List[Instruction]:
        """
        Decode instructions from ``address`` for at most ``size`` bytes.

        Decoding stops at the first trap (int3), at the first byte
        sequence Capstone cannot decode, or when the window is exhausted.
        """
        end = min(address + size, len(self.image.raw_data))
        if address < 0 or address >= end:
            return []

        code = self.image.raw_data[address:end]
        result = []
        for cs_insn in self._cs.disasm(code, address):
            insn = self._classify_instruction(cs_insn)
            if insn.is_trap:
                break
            result.append(insn)
        return result
