import pytest

from evmlift.analysis.cfg_builder import CFGBuilder
from evmlift.config import AnalysisConfig
from evmlift.core.instruction import make_instruction
from evmlift.core.opcodes import Opcode


def assemble(*items):
    """
    Build an instruction stream from mnemonics.

    Items are ``"NAME"``, ``("NAME", operand)`` or ``"label:"``; an operand
    written ``"@label"`` is replaced by the label's pc. Labels only mark a pc,
    the JUMPDEST has to be written out.

    Returns:
        (instructions, labels)
    """
    labels = {}
    pc = 0
    for item in items:
        if isinstance(item, str) and item.endswith(":"):
            labels[item[:-1]] = pc
            continue
        name = item[0] if isinstance(item, tuple) else item
        pc += make_instruction(pc, Opcode[name], 0).size

    instructions = []
    pc = 0
    for item in items:
        if isinstance(item, str) and item.endswith(":"):
            continue
        name, operand = item if isinstance(item, tuple) else (item, None)
        if isinstance(operand, str):
            operand = labels[operand[1:]]
        instr = make_instruction(pc, Opcode[name], operand)
        instructions.append(instr)
        pc = instr.next_pc
    return instructions, labels


def build(instructions, **options):
    return CFGBuilder(instructions, AnalysisConfig(**options)).build()


SINGLE_SELECTOR = (
    ("PUSH1", 0),
    "CALLDATALOAD",
    ("PUSH1", 0xE0),
    "SHR",
    ("PUSH4", 0xAABBCCDD),
    "EQ",
    ("PUSH1", "@handler"),
    "JUMPI",
    "handler:",
    "JUMPDEST",
    ("PUSH1", 1),
    ("PUSH1", 0),
    "SSTORE",
    "STOP",
)

# SINGLE_SELECTOR as raw bytecode
SINGLE_SELECTOR_HEX = "0x600035" "60e01c" "63aabbccdd" "14" "600f" "57" "5b" "6001" "6000" "55" "00"

TWO_SELECTORS = (
    ("PUSH1", 0),
    "CALLDATALOAD",
    ("PUSH1", 0xE0),
    "SHR",
    "DUP1",
    ("PUSH4", 0x11111111),
    "EQ",
    ("PUSH1", "@first"),
    "JUMPI",
    "second_check:",
    "DUP1",
    ("PUSH4", 0x22222222),
    "EQ",
    ("PUSH1", "@second"),
    "JUMPI",
    "fallback:",
    ("PUSH1", 0),
    "DUP1",
    "REVERT",
    "first:",
    "JUMPDEST",
    ("PUSH1", 0x2A),
    ("PUSH1", 0),
    "SSTORE",
    "STOP",
    "second:",
    "JUMPDEST",
    ("PUSH1", 4),
    "CALLDATALOAD",
    ("PUSH1", 1),
    "SSTORE",
    "STOP",
)

# i = 0; do { i += 1 } while (10 > i)
COUNTED_LOOP = (
    ("PUSH1", 0),
    "loop:",
    "JUMPDEST",
    ("PUSH1", 1),
    "ADD",
    "DUP1",
    ("PUSH1", 10),
    "GT",
    ("PUSH1", "@loop"),
    "JUMPI",
    "done:",
    "STOP",
)

UNRESOLVED_JUMP = (
    ("PUSH1", 0),
    "CALLDATALOAD",
    "JUMP",
    "JUMPDEST",
    "STOP",
)

# Both selectors call helper(), which returns arg0 + 1 to the caller's label:
# the first stores it in stor_0, the second in stor_1
SHARED_HELPER = (
    ("PUSH1", 0),
    "CALLDATALOAD",
    ("PUSH1", 0xE0),
    "SHR",
    "DUP1",
    ("PUSH4", 0x11111111),
    "EQ",
    ("PUSH1", "@first"),
    "JUMPI",
    "DUP1",
    ("PUSH4", 0x22222222),
    "EQ",
    ("PUSH1", "@second"),
    "JUMPI",
    ("PUSH1", 0),
    "DUP1",
    "REVERT",
    "first:",
    "JUMPDEST",
    ("PUSH1", "@ret1"),
    ("PUSH1", "@helper"),
    "JUMP",
    "second:",
    "JUMPDEST",
    ("PUSH1", "@ret2"),
    ("PUSH1", "@helper"),
    "JUMP",
    "helper:",
    "JUMPDEST",
    ("PUSH1", 4),
    "CALLDATALOAD",
    ("PUSH1", 1),
    "ADD",
    "SWAP1",
    "JUMP",
    "ret1:",
    "JUMPDEST",
    ("PUSH1", 0),
    "SSTORE",
    "STOP",
    "ret2:",
    "JUMPDEST",
    ("PUSH1", 1),
    "SSTORE",
    "STOP",
)

# require(msg.value == 0); stor_0 = 1
REQUIRE_GUARD = (
    "CALLVALUE",
    "ISZERO",
    ("PUSH1", "@ok"),
    "JUMPI",
    ("PUSH1", 0),
    "DUP1",
    "REVERT",
    "ok:",
    "JUMPDEST",
    ("PUSH1", 1),
    ("PUSH1", 0),
    "SSTORE",
    "STOP",
)


@pytest.fixture
def single_selector():
    return assemble(*SINGLE_SELECTOR)


@pytest.fixture
def two_selectors():
    return assemble(*TWO_SELECTORS)


@pytest.fixture
def counted_loop():
    return assemble(*COUNTED_LOOP)


@pytest.fixture
def unresolved_jump():
    return assemble(*UNRESOLVED_JUMP)


@pytest.fixture
def shared_helper():
    return assemble(*SHARED_HELPER)


@pytest.fixture
def require_guard():
    return assemble(*REQUIRE_GUARD)
