from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .effects import Effect, HaltRecord
from .instruction import Instruction
from .symbolic import SymbolicValue


class Terminator(Enum):
    JUMP = "jump"
    CONDITIONAL_JUMP = "conditional-jump"
    FALLTHROUGH = "fallthrough"
    RETURN = "return"
    REVERT = "revert"
    INVALID = "invalid"
    SELFDESTRUCT = "selfdestruct"

    @property
    def is_halting(self) -> bool:
        return self in (
            Terminator.RETURN,
            Terminator.REVERT,
            Terminator.INVALID,
            Terminator.SELFDESTRUCT,
        )


class EdgeKind(Enum):
    UNCONDITIONAL = "unconditional"
    BRANCH_TRUE = "branch-true"
    BRANCH_FALSE = "branch-false"
    FALL_THROUGH = "fall-through"


EDGE_ORDER = {kind: index for index, kind in enumerate(EdgeKind)}


@dataclass(frozen=True)
class BasicBlock:
    """A maximal straight-line run of instructions; identity is ``start_pc``."""

    start_pc: int
    end_pc: int  # pc of the last instruction
    instructions: Tuple[Instruction, ...]
    terminator: Terminator
    unresolved_jump: bool = False

    @property
    def id(self) -> str:
        return f"block_{self.start_pc:#x}"

    @property
    def last_instruction(self) -> Instruction:
        return self.instructions[-1]

    @property
    def next_pc(self) -> int:
        return self.last_instruction.next_pc

    def __contains__(self, pc: int) -> bool:
        return self.start_pc <= pc <= self.end_pc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start_pc,
            "end": self.end_pc,
            "terminator": self.terminator.value,
            "unresolved_jump": self.unresolved_jump,
            "instructions": [str(instr) for instr in self.instructions],
        }


@dataclass(frozen=True)
class Edge:
    source: int
    target: int
    kind: EdgeKind

    def sort_key(self):
        return (self.source, EDGE_ORDER[self.kind], self.target)

    def to_dict(self) -> Dict[str, Any]:
        return {"from": self.source, "to": self.target, "kind": self.kind.value}


@dataclass(frozen=True)
class BlockSummary:
    """Symbolic effects of one execution of a block."""

    start_pc: int
    effects: Tuple[Effect, ...] = ()
    condition: Optional[SymbolicValue] = None
    jump_target: Optional[SymbolicValue] = None
    halt: Optional[HaltRecord] = None
    exit_stack: Tuple[SymbolicValue, ...] = field(default=(), compare=False)
    generalized: bool = False
