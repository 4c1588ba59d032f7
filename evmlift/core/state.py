# core/state.py
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import structlog

from ..exceptions import StackOverflow, StackUnderflow
from .effects import Effect
from .symbolic import (
    DYNAMIC_ADDRESS,
    MEMORY,
    STORAGE,
    TRANSIENT,
    Concrete,
    PathConstraint,
    SymbolicValue,
    input_value,
    value_of,
)

logger = structlog.get_logger()

WORD_SIZE = 32
# Largest payload decoded word by word (return data, call arguments, logs)
MAX_PAYLOAD_BYTES = 32 * 64


def _versioned(space: str, writes: int) -> str:
    return space if not writes else f"{space}@{writes}"


@dataclass
class MachineState:
    """
    The state of one explored path.

    Memory maps a concrete start offset to ``(size, value)``; entries never
    overlap. Storage maps concrete slots to values. Writes at symbolic
    addresses drop every earlier concrete entry of the same space (the
    ``*_epoch`` counters distinguish unknown values read before and after).
    Reads at symbolic addresses are tagged with the number of writes to their
    space so far: a read separated from another by any write never aliases it.
    """

    pc: int = 0
    stack: List[SymbolicValue] = field(default_factory=list)
    memory: Dict[int, Tuple[int, SymbolicValue]] = field(default_factory=dict)
    storage: Dict[int, SymbolicValue] = field(default_factory=dict)
    transient: Dict[int, SymbolicValue] = field(default_factory=dict)
    path_constraints: List[PathConstraint] = field(default_factory=list)
    effects: List[Effect] = field(default_factory=list)
    call_depth: int = 0
    fork_depth: int = 0
    instructions_executed: int = 0
    max_stack_depth: int = 1024
    memory_epoch: int = 0
    storage_epoch: int = 0
    memory_writes: int = 0
    storage_writes: int = 0
    transient_writes: int = 0

    def clone(self) -> "MachineState":
        # Values are immutable and shared; only the containers are copied.
        return MachineState(
            pc=self.pc,
            stack=self.stack[:],
            memory=self.memory.copy(),
            storage=self.storage.copy(),
            transient=self.transient.copy(),
            path_constraints=self.path_constraints[:],
            effects=self.effects[:],
            call_depth=self.call_depth,
            fork_depth=self.fork_depth,
            instructions_executed=self.instructions_executed,
            max_stack_depth=self.max_stack_depth,
            memory_epoch=self.memory_epoch,
            storage_epoch=self.storage_epoch,
            memory_writes=self.memory_writes,
            storage_writes=self.storage_writes,
            transient_writes=self.transient_writes,
        )

    # Stack

    def push(self, value: SymbolicValue):
        if len(self.stack) >= self.max_stack_depth:
            raise StackOverflow(f"stack limit {self.max_stack_depth} reached", pc=self.pc)
        self.stack.append(value)

    def pop(self) -> SymbolicValue:
        if not self.stack:
            raise StackUnderflow("pop from empty stack", pc=self.pc)
        return self.stack.pop()

    def pop_many(self, count: int) -> List[SymbolicValue]:
        """Pop ``count`` items, top of stack first."""
        if len(self.stack) < count:
            raise StackUnderflow(
                f"need {count} stack items, have {len(self.stack)}", pc=self.pc
            )
        items = self.stack[-count:] if count else []
        del self.stack[len(self.stack) - count :]
        return list(reversed(items))

    def dup(self, n: int):
        if len(self.stack) < n:
            raise StackUnderflow(f"DUP{n} on stack of {len(self.stack)}", pc=self.pc)
        self.push(self.stack[-n])

    def swap(self, n: int):
        if len(self.stack) < n + 1:
            raise StackUnderflow(f"SWAP{n} on stack of {len(self.stack)}", pc=self.pc)
        self.stack[-1], self.stack[-1 - n] = self.stack[-1 - n], self.stack[-1]

    # Memory

    def _clear_range(self, offset: int, size: int):
        end = offset + size
        overlapping = [
            start
            for start, (length, _) in self.memory.items()
            if start < end and start + length > offset
        ]
        for start in overlapping:
            length, old = self.memory.pop(start)
            if not isinstance(old, Concrete):
                continue
            # Keep the bytes of a concrete entry that the new write does not cover
            data = old.value.to_bytes(length, "big")
            if start < offset:
                head = data[: offset - start]
                self.memory[start] = (len(head), Concrete(int.from_bytes(head, "big")))
            if start + length > end:
                tail = data[end - start :]
                self.memory[end] = (len(tail), Concrete(int.from_bytes(tail, "big")))

    def invalidate_memory(self, offset: Optional[SymbolicValue] = None, size: Optional[SymbolicValue] = None):
        """Forget memory contents that a write of unknown content may have touched."""
        self.memory_writes += 1
        start = value_of(offset) if offset is not None else None
        length = value_of(size) if size is not None else None
        if start is not None and length is not None:
            self._clear_range(start, length)
        elif start is not None:
            tail = max((k + n for k, (n, _) in self.memory.items()), default=start)
            if tail > start:
                self._clear_range(start, tail - start)
        else:
            self.memory.clear()
            self.memory_epoch += 1

    def memory_store(self, offset: SymbolicValue, value: SymbolicValue, size: int = WORD_SIZE):
        self.memory_writes += 1
        start = value_of(offset)
        if start is None:
            logger.debug("symbolic memory write", pc=self.pc, offset=str(offset))
            self.memory.clear()
            self.memory_epoch += 1
            return
        self._clear_range(start, size)
        self.memory[start] = (size, value)

    def _read_concrete(self, offset: int, size: int) -> Optional[bytes]:
        buf = bytearray(size)
        covered = 0
        end = offset + size
        for start, (length, value) in self.memory.items():
            if start >= end or start + length <= offset:
                continue
            if not isinstance(value, Concrete):
                return None
            data = value.value.to_bytes(length, "big")
            lo, hi = max(start, offset), min(start + length, end)
            buf[lo - offset : hi - offset] = data[lo - start : hi - start]
            covered += hi - lo
        return bytes(buf) if covered == size else None

    def memory_load(self, offset: SymbolicValue) -> SymbolicValue:
        start = value_of(offset)
        if start is None:
            return input_value("mload", (offset,), DYNAMIC_ADDRESS, _versioned(MEMORY, self.memory_writes))
        entry = self.memory.get(start)
        if entry is not None and entry[0] == WORD_SIZE:
            return entry[1]
        raw = self._read_concrete(start, WORD_SIZE)
        if raw is not None:
            return Concrete(int.from_bytes(raw, "big"))
        detail = start if not self.memory_epoch else f"{start:#x}@{self.memory_epoch}"
        return input_value("mload", (Concrete(start),), MEMORY, detail)

    def memory_words(self, offset: SymbolicValue, size: SymbolicValue) -> Optional[Tuple[SymbolicValue, ...]]:
        """The 32-byte words covering ``[offset, offset + size)`` when both are concrete."""
        start, length = value_of(offset), value_of(size)
        if start is None or length is None or length > MAX_PAYLOAD_BYTES:
            return None
        return tuple(
            self.memory_load(Concrete(start + k)) for k in range(0, length, WORD_SIZE)
        )

    def memory_bytes(self, offset: SymbolicValue, size: SymbolicValue) -> Optional[bytes]:
        """The exact bytes of ``[offset, offset + size)`` when every byte is concrete."""
        start, length = value_of(offset), value_of(size)
        if start is None or length is None or length > MAX_PAYLOAD_BYTES:
            return None
        if length == 0:
            return b""
        return self._read_concrete(start, length)

    # Storage

    def _storage_table(self, transient: bool) -> Dict[int, SymbolicValue]:
        return self.transient if transient else self.storage

    def storage_store(self, slot: SymbolicValue, value: SymbolicValue, transient: bool = False):
        if transient:
            self.transient_writes += 1
        else:
            self.storage_writes += 1
        table = self._storage_table(transient)
        key = value_of(slot)
        if key is None:
            table.clear()
            self.storage_epoch += 1
            return
        table[key] = value

    def storage_load(self, slot: SymbolicValue, transient: bool = False) -> SymbolicValue:
        op = "tload" if transient else "sload"
        kind = TRANSIENT if transient else STORAGE
        key = value_of(slot)
        if key is None:
            writes = self.transient_writes if transient else self.storage_writes
            return input_value(op, (slot,), DYNAMIC_ADDRESS, _versioned(kind, writes))
        table = self._storage_table(transient)
        if key in table:
            return table[key]
        detail = key if not self.storage_epoch else f"{key:#x}@{self.storage_epoch}"
        return input_value(op, (Concrete(key),), kind, detail)
