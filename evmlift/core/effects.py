"""
Side effects observed while executing a block.

The executor appends these to ``MachineState.effects``; the CFG builder keeps
the list of the first run of every block as that block's summary and the
lifter turns them into statements.
"""
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from .symbolic import SymbolicValue


@dataclass(frozen=True)
class StorageWrite:
    pc: int
    slot: SymbolicValue
    value: SymbolicValue
    transient: bool = False


@dataclass(frozen=True)
class MemoryWrite:
    pc: int
    offset: SymbolicValue
    value: SymbolicValue
    size: int = 32


@dataclass(frozen=True)
class MemoryCopy:
    pc: int
    source: str  # calldata, code, returndata, extcode, memory
    dest: SymbolicValue
    offset: SymbolicValue
    size: SymbolicValue
    address: Optional[SymbolicValue] = None


@dataclass(frozen=True)
class CallRecord:
    pc: int
    kind: str  # call, callcode, delegatecall, staticcall, create, create2
    target: Optional[SymbolicValue]
    value: Optional[SymbolicValue]
    gas: Optional[SymbolicValue]
    args_offset: SymbolicValue
    args_size: SymbolicValue
    result: SymbolicValue
    selector: Optional[int] = None
    arguments: Optional[Tuple[SymbolicValue, ...]] = None


@dataclass(frozen=True)
class LogRecord:
    pc: int
    topics: Tuple[SymbolicValue, ...]
    offset: SymbolicValue
    size: SymbolicValue
    data: Optional[Tuple[SymbolicValue, ...]] = None


@dataclass(frozen=True)
class HaltRecord:
    """How a path ended: the opcode plus the returned / reverted payload."""

    pc: int
    opcode: str  # STOP, RETURN, REVERT, INVALID, SELFDESTRUCT
    offset: Optional[SymbolicValue] = None
    size: Optional[SymbolicValue] = None
    data: Optional[Tuple[SymbolicValue, ...]] = None
    raw: Optional[bytes] = None
    beneficiary: Optional[SymbolicValue] = None


Effect = Union[StorageWrite, MemoryWrite, MemoryCopy, CallRecord, LogRecord]
