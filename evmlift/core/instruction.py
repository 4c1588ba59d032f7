from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from ..exceptions import MalformedInput
from .opcodes import (
    HALTING_OPCODES,
    JUMP_OPCODES,
    Opcode,
    is_known,
    is_push,
    opcode_name,
    push_size,
)


@dataclass(frozen=True)
class Instruction:
    pc: int
    opcode: int
    operand: Optional[int] = None
    size: int = 1

    @property
    def name(self) -> str:
        return opcode_name(self.opcode)

    @property
    def next_pc(self) -> int:
        return self.pc + self.size

    @property
    def is_push(self) -> bool:
        return is_push(self.opcode)

    @property
    def is_jump(self) -> bool:
        return self.opcode in JUMP_OPCODES

    @property
    def is_jumpdest(self) -> bool:
        return self.opcode == Opcode.JUMPDEST

    @property
    def is_halting(self) -> bool:
        """True for opcodes that end a path, including undefined bytes."""
        return self.opcode in HALTING_OPCODES or not is_known(self.opcode)

    def to_bytes(self) -> bytes:
        """Re-encode the instruction (opcode byte followed by its immediate)."""
        width = self.size - 1
        if width <= 0:
            return bytes((self.opcode,))
        return bytes((self.opcode,)) + (self.operand or 0).to_bytes(width, "big")

    def to_dict(self):
        data = {"pc": self.pc, "opcode": self.name}
        if self.operand is not None:
            data["operand"] = hex(self.operand)
        return data

    def __str__(self) -> str:
        if self.operand is not None and self.is_push:
            return f"{self.pc:#06x}: {self.name} {self.operand:#x}"
        return f"{self.pc:#06x}: {self.name}"


def make_instruction(pc: int, opcode: int, operand: Optional[int] = None) -> Instruction:
    """Build an instruction whose size follows from its opcode."""
    width = push_size(opcode)
    if is_push(opcode) and opcode != Opcode.PUSH0:
        operand = 0 if operand is None else operand
        if operand >> (8 * width):
            raise MalformedInput(f"operand {operand:#x} does not fit {opcode_name(opcode)}", pc=pc)
    return Instruction(pc=pc, opcode=opcode, operand=operand, size=1 + width)


def validate_instructions(instructions: Iterable[Instruction]) -> Tuple[Instruction, ...]:
    """
    Check that the instruction stream is an ordered, contiguous cover of the
    code starting at pc 0.

    Args:
        instructions: Instructions in program order

    Returns:
        The instructions as a tuple

    Raises:
        MalformedInput: on a gap, an overlap or a non-positive size
    """
    result: List[Instruction] = []
    expected_pc = 0
    for instr in instructions:
        if instr.size < 1:
            raise MalformedInput(f"instruction at {instr.pc:#x} has size {instr.size}", pc=instr.pc)
        if instr.pc < expected_pc:
            raise MalformedInput(
                f"instruction at {instr.pc:#x} overlaps the previous one (expected {expected_pc:#x})",
                pc=instr.pc,
            )
        if instr.pc > expected_pc:
            raise MalformedInput(f"gap before instruction at {instr.pc:#x}", pc=instr.pc)
        result.append(instr)
        expected_pc = instr.next_pc
    return tuple(result)
