"""
Configuration constants for the opcode finder.

Defines the PE header offsets, section names, instruction encodings,
layout constants and search windows used throughout the analysis.
"""

# ============================================================
# PE Header Layout
# ============================================================

# Offset of e_lfanew (pointer to the NT headers) in the DOS header
PE_POINTER_OFFSET = 0x3C

# NT header signature "PE\0\0"
PE_MAGIC = b"PE\x00\x00"

# Offsets relative to the NT headers
PE_NUM_SECTIONS_OFFSET = 6
PE_OPTIONAL_SIZE_OFFSET = 20
PE_OPTIONAL_HEADER_OFFSET = 24

# IMAGE_SECTION_HEADER
SECTION_HEADER_SIZE = 40
SECTION_NAME_SIZE = 8
SECTION_RAW_SIZE_OFFSET = 16
SECTION_RAW_ADDR_OFFSET = 20

# ============================================================
# Section Definitions
# ============================================================

TEXT_SECTION = ".text"
DATA_SECTION = ".data"
RDATA_SECTION = ".rdata"

# Sections we care about, keyed by their zero-padded 8 byte name field
KNOWN_SECTIONS = {
    TEXT_SECTION.encode().ljust(SECTION_NAME_SIZE, b"\x00"): TEXT_SECTION,
    DATA_SECTION.encode().ljust(SECTION_NAME_SIZE, b"\x00"): DATA_SECTION,
    RDATA_SECTION.encode().ljust(SECTION_NAME_SIZE, b"\x00"): RDATA_SECTION,
}

# ============================================================
# Image Layout
# ============================================================

# Difference between the RVA of section 0 and its raw file offset.
# Table entries and RIP-less displacements are RVAs; subtracting this
# turns them into file offsets.
BLOCK_SIZE = 0xC00

# int 3 / inter-function padding
TRAP_BYTE = 0xCC

# Positional deltas tried when matching a caller against a table entry.
# The compiler may move a split-off code chunk by exactly one block.
LAYOUT_DELTAS = (0, BLOCK_SIZE, -BLOCK_SIZE)

# ============================================================
# Search Windows
# ============================================================

# How far back from an address to look for the padding byte that marks
# the start of the enclosing function
FUNCTION_START_WINDOW = 0x50

# How far below an address to look for a table entry location
TABLE_SEARCH_WINDOW = 0x50

# ============================================================
# Relative Branch Encodings
# ============================================================

# call rel32 / jmp rel32
CALL_PATTERN = "E8 ? ? ? ?"
JUMP_PATTERN = "E9 ? ? ? ?"
RELATIVE_BRANCH_SIZE = 5

# ============================================================
# Jump Table Idioms
# ============================================================

# Register holding the switch value and the register used to index tables
DISPATCH_REGISTER = "eax"
INDEX_REGISTER = "rax"

# Destination of the table-indexed move that loads the handler RVA
TABLE_LOAD_REGISTER = "ecx"

# Size of one jump table slot
TABLE_ENTRY_SIZE = 4

# ============================================================
# Disassembly Engine Settings
# ============================================================

# x86-64 mode
CS_MODE = 64

TRAP_MNEMONICS = {"int3"}

# ============================================================
# Input / Output
# ============================================================

DEFAULT_CONFIG_FILENAME = "config.json"
DEFAULT_RESULT_FILENAME = "opcodes.json"

# Value written for a name whose opcode could not be determined
NOT_FOUND = "N/A"
