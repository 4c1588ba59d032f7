"""
Step-wise symbolic EVM.

The executor never drives exploration itself: the CFG builder owns the
work-list and asks for one instruction at a time through :meth:`step`.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

import structlog
from eth_utils import keccak

from ..config import AnalysisConfig
from ..core.basic_block import EdgeKind, Terminator
from ..core.effects import (
    CallRecord,
    HaltRecord,
    LogRecord,
    MemoryCopy,
    MemoryWrite,
    StorageWrite,
)
from ..core.instruction import Instruction
from ..core.opcodes import Opcode
from ..core.state import MAX_PAYLOAD_BYTES, WORD_SIZE, MachineState
from ..core.symbolic import (
    CALL_RESULT,
    CALLDATA,
    DYNAMIC_ADDRESS,
    ENVIRONMENT,
    MEMORY,
    Concrete,
    PathConstraint,
    SymbolicValue,
    contradicts,
    fold,
    input_value,
    value_of,
)
from ..exceptions import InvalidJumpDestination, InvalidOpcode, PathBudgetExhausted, PathFault

logger = structlog.get_logger()

# Opcode name -> (operator, arity) for pure stack arithmetic
ARITHMETIC_OPS = {
    "ADD": ("add", 2),
    "MUL": ("mul", 2),
    "SUB": ("sub", 2),
    "DIV": ("div", 2),
    "SDIV": ("sdiv", 2),
    "MOD": ("mod", 2),
    "SMOD": ("smod", 2),
    "ADDMOD": ("addmod", 3),
    "MULMOD": ("mulmod", 3),
    "EXP": ("exp", 2),
    "SIGNEXTEND": ("signextend", 2),
    "LT": ("lt", 2),
    "GT": ("gt", 2),
    "SLT": ("slt", 2),
    "SGT": ("sgt", 2),
    "EQ": ("eq", 2),
    "ISZERO": ("iszero", 1),
    "AND": ("and", 2),
    "OR": ("or", 2),
    "XOR": ("xor", 2),
    "NOT": ("not", 1),
    "BYTE": ("byte", 2),
    "SHL": ("shl", 2),
    "SHR": ("shr", 2),
    "SAR": ("sar", 2),
}

# Call and block context values, named the way Solidity spells them
ENVIRONMENT_VALUES = {
    "ADDRESS": "address(this)",
    "ORIGIN": "tx.origin",
    "CALLER": "msg.sender",
    "CALLVALUE": "msg.value",
    "CALLDATASIZE": "msg.data.length",
    "GASPRICE": "tx.gasprice",
    "RETURNDATASIZE": "returndata.length",
    "COINBASE": "block.coinbase",
    "TIMESTAMP": "block.timestamp",
    "NUMBER": "block.number",
    "DIFFICULTY": "block.prevrandao",
    "GASLIMIT": "block.gaslimit",
    "CHAINID": "block.chainid",
    "SELFBALANCE": "address(this).balance",
    "BASEFEE": "block.basefee",
    "BLOBBASEFEE": "block.blobbasefee",
}

# Context queries taking one argument
ENVIRONMENT_QUERIES = {
    "BALANCE": "balance",
    "EXTCODESIZE": "extcodesize",
    "EXTCODEHASH": "extcodehash",
    "BLOCKHASH": "blockhash",
    "BLOBHASH": "blobhash",
}

HALT_TERMINATORS = {
    "STOP": Terminator.RETURN,
    "RETURN": Terminator.RETURN,
    "REVERT": Terminator.REVERT,
    "INVALID": Terminator.INVALID,
    "SELFDESTRUCT": Terminator.SELFDESTRUCT,
}


class StepKind(Enum):
    NEXT = "next"
    JUMP = "jump"
    BRANCH = "branch"
    HALT = "halt"


@dataclass
class Successor:
    kind: EdgeKind
    state: MachineState
    target: SymbolicValue


@dataclass
class StepResult:
    kind: StepKind
    instruction: Instruction
    state: Optional[MachineState] = None
    successors: List[Successor] = field(default_factory=list)
    terminator: Optional[Terminator] = None
    condition: Optional[SymbolicValue] = None
    target: Optional[SymbolicValue] = None
    halt: Optional[HaltRecord] = None
    # Faults that killed one side of a fork while the other side survived
    faults: List[PathFault] = field(default_factory=list)


class SymbolicExecutor:
    def __init__(self, instructions: Sequence[Instruction], config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()
        self.instructions: Dict[int, Instruction] = {i.pc: i for i in instructions}
        self.code = b"".join(i.to_bytes() for i in instructions)
        self.code_size = len(self.code)
        self.jumpdests = frozenset(
            pc for pc, i in self.instructions.items() if i.opcode == Opcode.JUMPDEST
        )

        # Opcode handler dispatch table
        self._opcode_handlers: Dict[str, Callable[[Instruction, MachineState], Optional[StepResult]]] = {
            # 0s, 10s: arithmetic, comparison and bitwise logic
            **{name: self._handle_arithmetic for name in ARITHMETIC_OPS},
            "STOP": self._handle_halt,
            # 20s: SHA3
            "SHA3": self._handle_sha3,
            # 30s, 40s: environmental and block information
            **{name: self._handle_environment for name in ENVIRONMENT_VALUES},
            **{name: self._handle_environment_query for name in ENVIRONMENT_QUERIES},
            "CALLDATALOAD": self._handle_calldataload,
            "CALLDATACOPY": self._handle_calldatacopy,
            "CODESIZE": self._handle_codesize,
            "CODECOPY": self._handle_codecopy,
            "EXTCODECOPY": self._handle_extcodecopy,
            "RETURNDATACOPY": self._handle_returndatacopy,
            # 50s: stack, memory, storage and flow
            "POP": self._handle_pop,
            "MLOAD": self._handle_mload,
            "MSTORE": self._handle_mstore,
            "MSTORE8": self._handle_mstore8,
            "SLOAD": self._handle_sload,
            "SSTORE": self._handle_sstore,
            "TLOAD": self._handle_sload,
            "TSTORE": self._handle_sstore,
            "MCOPY": self._handle_mcopy,
            "JUMP": self._handle_jump,
            "JUMPI": self._handle_jumpi,
            "PC": self._handle_pc,
            "MSIZE": self._handle_msize,
            "GAS": self._handle_gas,
            "JUMPDEST": self._handle_jumpdest,
            # 5f-7f: push operations
            **{f"PUSH{i}": self._handle_push for i in range(0, 33)},
            # 80s: duplication operations
            **{f"DUP{i}": self._handle_dup for i in range(1, 17)},
            # 90s: exchange operations
            **{f"SWAP{i}": self._handle_swap for i in range(1, 17)},
            # a0s: logging operations
            **{f"LOG{i}": self._handle_log for i in range(0, 5)},
            # f0s: system operations
            "CREATE": self._handle_create,
            "CREATE2": self._handle_create,
            "CALL": self._handle_call,
            "CALLCODE": self._handle_call,
            "DELEGATECALL": self._handle_call,
            "STATICCALL": self._handle_call,
            "RETURN": self._handle_halt,
            "REVERT": self._handle_halt,
            "INVALID": self._handle_halt,
            "SELFDESTRUCT": self._handle_halt,
        }

    def initial_state(self) -> MachineState:
        """Empty machine at pc 0; calldata and context values are created on first use."""
        return MachineState(pc=0, max_stack_depth=self.config.max_stack_depth)

    def is_valid_jumpdest(self, pc: int) -> bool:
        return pc in self.jumpdests

    def step(self, state: MachineState) -> StepResult:
        """
        Execute the instruction at ``state.pc``.

        ``state`` is updated in place; forks receive a copy.

        Raises:
            PathFault: when the path cannot continue
        """
        instr = self.instructions.get(state.pc)
        if instr is None:
            raise InvalidJumpDestination(f"no instruction at {state.pc:#x}", pc=state.pc)

        state.instructions_executed += 1
        if state.instructions_executed > self.config.max_path_instructions:
            raise PathBudgetExhausted(
                f"path exceeded {self.config.max_path_instructions} instructions", pc=instr.pc
            )

        handler = self._opcode_handlers.get(instr.name)
        if handler is None:
            raise InvalidOpcode(f"undefined opcode {instr.opcode:#04x}", pc=instr.pc)

        result = handler(instr, state)
        if result is None:
            state.pc = instr.next_pc
            return StepResult(StepKind.NEXT, instr, state=state)
        return result

    # Arithmetic and context

    def _handle_arithmetic(self, instr: Instruction, state: MachineState):
        op, arity = ARITHMETIC_OPS[instr.name]
        operands = state.pop_many(arity)
        state.push(fold(op, *operands))

    def _handle_environment(self, instr: Instruction, state: MachineState):
        state.push(input_value(instr.name.lower(), (), ENVIRONMENT, ENVIRONMENT_VALUES[instr.name]))

    def _handle_environment_query(self, instr: Instruction, state: MachineState):
        argument = state.pop()
        name = ENVIRONMENT_QUERIES[instr.name]
        state.push(input_value(name, (argument,), ENVIRONMENT, name))

    def _handle_pc(self, instr: Instruction, state: MachineState):
        state.push(Concrete(instr.pc))

    def _handle_msize(self, instr: Instruction, state: MachineState):
        state.push(input_value("msize", (Concrete(instr.pc),), ENVIRONMENT, "msize()"))

    def _handle_gas(self, instr: Instruction, state: MachineState):
        state.push(input_value("gas", (Concrete(instr.pc),), ENVIRONMENT, "gasleft()"))

    def _handle_codesize(self, instr: Instruction, state: MachineState):
        state.push(Concrete(self.code_size))

    def _handle_sha3(self, instr: Instruction, state: MachineState):
        offset, size = state.pop_many(2)
        raw = state.memory_bytes(offset, size)
        if raw is not None:
            state.push(Concrete(int.from_bytes(keccak(raw), "big")))
            return
        length = value_of(size)
        words = state.memory_words(offset, size) if length is not None and length % WORD_SIZE == 0 else None
        if words:
            state.push(fold("sha3", *words))
        else:
            state.push(input_value("sha3", (offset, size), DYNAMIC_ADDRESS, MEMORY))

    # Stack

    def _handle_pop(self, instr: Instruction, state: MachineState):
        state.pop()

    def _handle_push(self, instr: Instruction, state: MachineState):
        state.push(Concrete(instr.operand or 0))

    def _handle_dup(self, instr: Instruction, state: MachineState):
        state.dup(instr.opcode - Opcode.DUP1 + 1)

    def _handle_swap(self, instr: Instruction, state: MachineState):
        state.swap(instr.opcode - Opcode.SWAP1 + 1)

    def _handle_jumpdest(self, instr: Instruction, state: MachineState):
        pass

    # Calldata, code and memory

    def _handle_calldataload(self, instr: Instruction, state: MachineState):
        offset = state.pop()
        state.push(input_value("calldataload", (offset,), CALLDATA, value_of(offset)))

    def _handle_calldatacopy(self, instr: Instruction, state: MachineState):
        dest, offset, size = state.pop_many(3)
        state.effects.append(MemoryCopy(instr.pc, "calldata", dest, offset, size))
        start, source, length = value_of(dest), value_of(offset), value_of(size)
        if start is None or source is None or length is None or length > MAX_PAYLOAD_BYTES:
            state.invalidate_memory(dest, size)
            return
        whole = length - length % WORD_SIZE
        for k in range(0, whole, WORD_SIZE):
            word = input_value("calldataload", (Concrete(source + k),), CALLDATA, source + k)
            state.memory_store(Concrete(start + k), word)
        if whole < length:
            state.invalidate_memory(Concrete(start + whole), Concrete(length - whole))

    def _handle_codecopy(self, instr: Instruction, state: MachineState):
        dest, offset, size = state.pop_many(3)
        state.effects.append(MemoryCopy(instr.pc, "code", dest, offset, size))
        start, source, length = value_of(dest), value_of(offset), value_of(size)
        if start is None or source is None or length is None or length > MAX_PAYLOAD_BYTES:
            state.invalidate_memory(dest, size)
            return
        data = self.code[source : source + length].ljust(length, b"\x00")
        for k in range(0, length, WORD_SIZE):
            chunk = data[k : k + WORD_SIZE]
            state.memory_store(Concrete(start + k), Concrete(int.from_bytes(chunk, "big")), len(chunk))

    def _handle_extcodecopy(self, instr: Instruction, state: MachineState):
        address, dest, offset, size = state.pop_many(4)
        state.effects.append(MemoryCopy(instr.pc, "extcode", dest, offset, size, address=address))
        state.invalidate_memory(dest, size)

    def _handle_returndatacopy(self, instr: Instruction, state: MachineState):
        dest, offset, size = state.pop_many(3)
        state.effects.append(MemoryCopy(instr.pc, "returndata", dest, offset, size))
        start, source, length = value_of(dest), value_of(offset), value_of(size)
        state.invalidate_memory(dest, size)
        if start is None or source is None or length is None:
            return
        if length % WORD_SIZE or length > MAX_PAYLOAD_BYTES:
            return
        for k in range(0, length, WORD_SIZE):
            word = input_value("returndata", (Concrete(source + k),), CALL_RESULT, None)
            state.memory_store(Concrete(start + k), word)

    def _handle_mcopy(self, instr: Instruction, state: MachineState):
        dest, source, size = state.pop_many(3)
        state.effects.append(MemoryCopy(instr.pc, "memory", dest, source, size))
        words = state.memory_words(source, size)
        length = value_of(size)
        state.invalidate_memory(dest, size)
        start = value_of(dest)
        if words is None or start is None or length is None or length % WORD_SIZE:
            return
        for k, word in enumerate(words):
            state.memory_store(Concrete(start + k * WORD_SIZE), word)

    def _handle_mload(self, instr: Instruction, state: MachineState):
        offset = state.pop()
        state.push(state.memory_load(offset))

    def _handle_mstore(self, instr: Instruction, state: MachineState):
        offset, value = state.pop_many(2)
        state.effects.append(MemoryWrite(instr.pc, offset, value))
        state.memory_store(offset, value)

    def _handle_mstore8(self, instr: Instruction, state: MachineState):
        offset, value = state.pop_many(2)
        byte = fold("and", value, Concrete(0xFF))
        state.effects.append(MemoryWrite(instr.pc, offset, byte, size=1))
        state.memory_store(offset, byte, size=1)

    # Storage

    def _handle_sload(self, instr: Instruction, state: MachineState):
        slot = state.pop()
        state.push(state.storage_load(slot, transient=instr.name == "TLOAD"))

    def _handle_sstore(self, instr: Instruction, state: MachineState):
        slot, value = state.pop_many(2)
        transient = instr.name == "TSTORE"
        state.effects.append(StorageWrite(instr.pc, slot, value, transient=transient))
        state.storage_store(slot, value, transient=transient)

    # Flow

    def _check_target(self, instr: Instruction, target: SymbolicValue):
        pc = value_of(target)
        if pc is not None and not self.is_valid_jumpdest(pc):
            raise InvalidJumpDestination(
                f"jump from {instr.pc:#x} to non-JUMPDEST {pc:#x}", pc=instr.pc
            )

    def _handle_jump(self, instr: Instruction, state: MachineState) -> StepResult:
        target = state.pop()
        self._check_target(instr, target)
        return StepResult(
            StepKind.JUMP,
            instr,
            state=state,
            successors=[Successor(EdgeKind.UNCONDITIONAL, state, target)],
            terminator=Terminator.JUMP,
            target=target,
        )

    def _handle_jumpi(self, instr: Instruction, state: MachineState) -> StepResult:
        target, condition = state.pop_many(2)
        fallthrough = Concrete(instr.next_pc)
        result = StepResult(
            StepKind.BRANCH, instr, state=state, terminator=Terminator.CONDITIONAL_JUMP,
            condition=condition,
            target=target,
        )

        decided = value_of(condition)
        if decided is not None:
            if decided:
                self._check_target(instr, target)
                result.successors.append(Successor(EdgeKind.BRANCH_TRUE, state, target))
            else:
                result.successors.append(Successor(EdgeKind.BRANCH_FALSE, state, fallthrough))
            return result

        taken = PathConstraint(condition, True)
        not_taken = PathConstraint(condition, False)
        true_feasible = not contradicts(state.path_constraints, taken)
        false_feasible = not contradicts(state.path_constraints, not_taken)
        if true_feasible:
            try:
                self._check_target(instr, target)
            except InvalidJumpDestination as fault:
                result.faults.append(fault)
                true_feasible = False

        forks = int(true_feasible) + int(false_feasible)
        if true_feasible:
            true_state = state.clone() if false_feasible else state
            true_state.path_constraints.append(taken)
            true_state.fork_depth += forks - 1
            result.successors.append(Successor(EdgeKind.BRANCH_TRUE, true_state, target))
        if false_feasible:
            state.path_constraints.append(not_taken)
            state.fork_depth += forks - 1
            result.successors.append(Successor(EdgeKind.BRANCH_FALSE, state, fallthrough))
        if not forks:
            logger.debug("both sides of branch infeasible", pc=instr.pc)
        return result

    def _handle_halt(self, instr: Instruction, state: MachineState) -> StepResult:
        name = instr.name
        halt = HaltRecord(instr.pc, name)
        if name in ("RETURN", "REVERT"):
            offset, size = state.pop_many(2)
            halt = HaltRecord(
                instr.pc,
                name,
                offset=offset,
                size=size,
                data=state.memory_words(offset, size),
                raw=state.memory_bytes(offset, size),
            )
        elif name == "SELFDESTRUCT":
            halt = HaltRecord(instr.pc, name, beneficiary=state.pop())
        return StepResult(
            StepKind.HALT, instr, state=state, terminator=HALT_TERMINATORS[name], halt=halt
        )

    # Logs and external calls

    def _handle_log(self, instr: Instruction, state: MachineState):
        count = instr.opcode - Opcode.LOG0
        offset, size, *topics = state.pop_many(2 + count)
        state.effects.append(
            LogRecord(instr.pc, tuple(topics), offset, size, data=state.memory_words(offset, size))
        )

    def _call_arguments(self, state: MachineState, offset: SymbolicValue, size: SymbolicValue):
        start, length = value_of(offset), value_of(size)
        if start is None or length is None or length < 4:
            return None, state.memory_words(offset, size)
        head = state.memory_bytes(offset, Concrete(4))
        if head is None or (length - 4) % WORD_SIZE:
            return None, state.memory_words(offset, size)
        arguments = state.memory_words(Concrete(start + 4), Concrete(length - 4))
        return int.from_bytes(head, "big"), arguments

    def _handle_call(self, instr: Instruction, state: MachineState):
        kind = instr.name.lower()
        if instr.name in ("CALL", "CALLCODE"):
            gas, target, value, args_offset, args_size, ret_offset, ret_size = state.pop_many(7)
        else:
            gas, target, args_offset, args_size, ret_offset, ret_size = state.pop_many(6)
            value = None
        selector, arguments = self._call_arguments(state, args_offset, args_size)
        success = input_value(kind, (), CALL_RESULT, instr.pc)
        state.effects.append(
            CallRecord(
                instr.pc,
                kind,
                target=target,
                value=value,
                gas=gas,
                args_offset=args_offset,
                args_size=args_size,
                result=success,
                selector=selector,
                arguments=arguments,
            )
        )
        state.invalidate_memory(ret_offset, ret_size)
        start, length = value_of(ret_offset), value_of(ret_size)
        known = start is not None and length is not None
        if known and length % WORD_SIZE == 0 and length <= MAX_PAYLOAD_BYTES:
            for k in range(0, length, WORD_SIZE):
                word = input_value("returndata", (Concrete(k),), CALL_RESULT, instr.pc)
                state.memory_store(Concrete(start + k), word)
        state.push(success)

    def _handle_create(self, instr: Instruction, state: MachineState):
        kind = instr.name.lower()
        arity = 4 if instr.name == "CREATE2" else 3
        value, offset, size, *_salt = state.pop_many(arity)
        created = input_value(kind, (), CALL_RESULT, instr.pc)
        state.effects.append(
            CallRecord(
                instr.pc,
                kind,
                target=None,
                value=value,
                gas=None,
                args_offset=offset,
                args_size=size,
                result=created,
            )
        )
        state.push(created)
