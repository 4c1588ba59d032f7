"""
Disassembler adapter: raw bytecode to ``Instruction`` records via pyevmasm.
"""
from typing import Tuple, Union

import structlog
from eth_utils import decode_hex
from pyevmasm import disassemble_all

from .core.instruction import Instruction, make_instruction, validate_instructions
from .exceptions import MalformedInput

logger = structlog.get_logger()

# Room for the immediate of a PUSH32 cut off by the end of the code
PUSH_PADDING = b"\x00" * 32


def parse_bytecode(code: Union[str, bytes, bytearray]) -> bytes:
    """Accept raw bytes or a hex string with or without the ``0x`` prefix."""
    if isinstance(code, (bytes, bytearray)):
        return bytes(code)
    text = "".join(code.split())
    try:
        return decode_hex(text)
    except (ValueError, TypeError) as e:
        raise MalformedInput(f"bytecode is not valid hex: {e}") from e


def instructions_from_bytecode(code: Union[str, bytes, bytearray]) -> Tuple[Instruction, ...]:
    """
    Disassemble ``code`` into a contiguous instruction stream starting at pc 0.

    Undefined bytes keep their value (they halt the path when executed) and
    a PUSH truncated by the end of the code reads the missing bytes as zero.

    Args:
        code: Bytecode as bytes or hex text

    Returns:
        Tuple of Instruction in program order
    """
    raw = parse_bytecode(code)
    instructions = []
    for decoded in disassemble_all(raw + PUSH_PADDING):
        if decoded.pc >= len(raw):
            break
        # pyevmasm maps bytes unknown to its fork onto INVALID, so take the raw byte
        opcode = raw[decoded.pc]
        operand = decoded.operand if decoded.has_operand else None
        instructions.append(make_instruction(decoded.pc, opcode, operand))
    logger.debug("Disassembled bytecode", size=len(raw), instructions=len(instructions))
    return validate_instructions(instructions)


def disassemble(code: Union[str, bytes, bytearray]) -> str:
    """Human readable listing, one instruction per line."""
    return "\n".join(str(instr) for instr in instructions_from_bytecode(code))
