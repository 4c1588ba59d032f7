"""
Control-flow graph construction driven by symbolic execution.

Block boundaries are static (leaders are computed from the instruction
stream), so every path that reaches a block executes exactly the same
instructions. Exploration only decides which blocks are reachable and which
edges connect them, including edges of dynamic jumps whose targets are
resolved from the symbolic stack.
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

import structlog

from ..config import AnalysisConfig
from ..core.basic_block import BasicBlock, BlockSummary, Edge, EdgeKind, Terminator
from ..core.cfg import ControlFlowGraph
from ..core.instruction import Instruction, validate_instructions
from ..core.opcodes import Opcode
from ..core.state import MachineState
from ..core.symbolic import Concrete, SymbolicValue, candidate_values, loop_carried, value_of
from ..exceptions import BudgetExceeded, InvalidJumpDestination, PathFault, UnresolvedControlFlow
from ..utils import z3_utils
from ..warnings import AnalysisWarning, WarningKind
from .symbolic_executor import StepKind, SymbolicExecutor

logger = structlog.get_logger()

STATIC_TERMINATORS = {
    Opcode.JUMP: Terminator.JUMP,
    Opcode.JUMPI: Terminator.CONDITIONAL_JUMP,
    Opcode.STOP: Terminator.RETURN,
    Opcode.RETURN: Terminator.RETURN,
    Opcode.REVERT: Terminator.REVERT,
    Opcode.INVALID: Terminator.INVALID,
    Opcode.SELFDESTRUCT: Terminator.SELFDESTRUCT,
}

FALLTHROUGH_KINDS = (EdgeKind.BRANCH_FALSE, EdgeKind.FALL_THROUGH)


def find_leaders(instructions: Sequence[Instruction]) -> Set[int]:
    """
    Find block leaders: the entry point, every JUMPDEST and every instruction
    following a jump or a halting instruction.
    """
    leaders = {instructions[0].pc} if instructions else set()
    for instr in instructions:
        if instr.is_jumpdest:
            leaders.add(instr.pc)
        if instr.is_jump or instr.is_halting:
            leaders.add(instr.next_pc)
    return leaders


def split_blocks(instructions: Sequence[Instruction]) -> Dict[int, Tuple[Instruction, ...]]:
    """Static extent of every block, keyed by leader pc."""
    if not instructions:
        return {}
    leaders = find_leaders(instructions)
    blocks: Dict[int, Tuple[Instruction, ...]] = {}
    current: List[Instruction] = []
    for instr in instructions:
        if instr.pc in leaders and current:
            blocks[current[0].pc] = tuple(current)
            current = []
        current.append(instr)
    if current:
        blocks[current[0].pc] = tuple(current)
    return blocks


@dataclass
class WorkItem:
    pc: int
    state: MachineState
    ancestors: FrozenSet[int] = frozenset()
    widened: bool = False


@dataclass
class BlockRun:
    item: WorkItem
    block: BasicBlock
    summary: BlockSummary
    # (edge kind, target value, state continuing along the edge)
    outgoing: List[Tuple[EdgeKind, SymbolicValue, MachineState]] = field(default_factory=list)
    warnings: List[AnalysisWarning] = field(default_factory=list)


class CFGBuilder:
    def __init__(self, instructions: Sequence[Instruction], config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()
        self.instructions = validate_instructions(instructions)
        self.vm = SymbolicExecutor(self.instructions, self.config)
        self.extents = split_blocks(self.instructions)

        # Exploration bookkeeping, touched only while merging a wave
        self._scheduled: Set[int] = set()
        self._contexts: Dict[int, Set[Tuple]] = {}
        self._entries: Dict[int, Tuple[MachineState, FrozenSet[int]]] = {}
        self._widenings: Dict[int, int] = {}
        self._budget_reasons: Set[str] = set()
        self._warned: Set[Tuple[WarningKind, Optional[int]]] = set()

    def build(self) -> ControlFlowGraph:
        """
        Explore the program from pc 0 and return the control-flow graph.

        Budget exhaustion yields a partial graph flagged ``budget_exceeded``;
        the only exception that escapes is ``MalformedInput`` raised by the
        constructor.
        """
        graph = ControlFlowGraph(entry_pc=0, code_size=self.vm.code_size)
        if not self.instructions:
            return graph

        initial = self.vm.initial_state()
        self._scheduled.add(0)
        self._remember_entry(0, initial, frozenset())
        wave = [WorkItem(0, initial)]

        pool = ThreadPoolExecutor(max_workers=self.config.workers) if self.config.workers > 1 else None
        try:
            while wave:
                runs = self._run_wave(wave, pool)
                next_wave: List[WorkItem] = []
                for run in runs:
                    self._merge(graph, run, next_wave)
                wave = next_wave
        finally:
            if pool is not None:
                pool.shutdown(wait=True)

        logger.info(
            "CFG built",
            blocks=len(graph.blocks),
            edges=len(graph.edges),
            warnings=len(graph.warnings),
            budget_exceeded=graph.budget_exceeded,
        )
        return graph

    def _run_wave(self, wave: List[WorkItem], pool: Optional[ThreadPoolExecutor]) -> List[BlockRun]:
        if pool is None or len(wave) == 1:
            return [self._run_item(item) for item in wave]
        # map() preserves item order, which keeps merging deterministic
        return list(pool.map(self._run_item, wave))

    def _static_terminator(self, instructions: Tuple[Instruction, ...]) -> Terminator:
        last = instructions[-1]
        if last.opcode in STATIC_TERMINATORS:
            return STATIC_TERMINATORS[last.opcode]
        if last.is_halting:
            return Terminator.INVALID
        if last.next_pc in self.vm.instructions:
            return Terminator.FALLTHROUGH
        # Running off the end of the code is an implicit STOP
        return Terminator.RETURN

    def _run_item(self, item: WorkItem) -> BlockRun:
        """Execute one block for one work item. Must not touch shared state."""
        instructions = self.extents[item.pc]
        block = BasicBlock(
            start_pc=item.pc,
            end_pc=instructions[-1].pc,
            instructions=instructions,
            terminator=self._static_terminator(instructions),
        )
        state = item.state
        state.pc = item.pc
        state.effects = []
        run = BlockRun(item=item, block=block, summary=BlockSummary(item.pc))

        condition = target = halt = None
        try:
            for _ in instructions:
                result = self.vm.step(state)
                if result.kind is StepKind.NEXT:
                    continue
                if result.kind is StepKind.HALT:
                    halt = result.halt
                else:
                    condition, target = result.condition, result.target
                    for successor in result.successors:
                        run.outgoing.append((successor.kind, successor.target, successor.state))
                    for fault in result.faults:
                        run.warnings.append(AnalysisWarning.from_exception(fault))
                break
            else:
                next_pc = instructions[-1].next_pc
                if next_pc in self.vm.instructions:
                    run.outgoing.append((EdgeKind.FALL_THROUGH, Concrete(next_pc), state))
        except PathFault as fault:
            logger.debug("Path fault", block=hex(item.pc), reason=fault.message)
            run.warnings.append(AnalysisWarning.from_exception(fault, pc=fault.pc if fault.pc is not None else item.pc))
            run.outgoing = []

        run.summary = BlockSummary(
            start_pc=item.pc,
            effects=tuple(state.effects),
            condition=condition,
            jump_target=target,
            halt=halt,
            exit_stack=tuple(state.stack),
            generalized=item.widened,
        )
        return run

    def _resolve_target(self, value: SymbolicValue, state: MachineState, pc: int) -> List[int]:
        """
        Reduce a jump target to concrete destinations.

        Raises:
            UnresolvedControlFlow: when no finite candidate set is found
            InvalidJumpDestination: when no candidate is a JUMPDEST
        """
        concrete = value_of(value)
        if concrete is not None:
            candidates = {concrete}
        else:
            candidates = candidate_values(value, self.config.max_jump_candidates)
            if candidates is None and self.config.solver_jump_resolution:
                candidates = z3_utils.enumerate_values(
                    value,
                    state.path_constraints,
                    limit=self.config.max_jump_candidates,
                    timeout_ms=self.config.solver_timeout_ms,
                )
            if not candidates:
                raise UnresolvedControlFlow(f"cannot resolve jump target {value}", pc=pc)
        valid = sorted(c for c in candidates if self.vm.is_valid_jumpdest(c))
        if not valid:
            raise InvalidJumpDestination(
                f"jump target(s) {', '.join(hex(c) for c in sorted(candidates))} not a JUMPDEST", pc=pc
            )
        return valid

    def _merge(self, graph: ControlFlowGraph, run: BlockRun, next_wave: List[WorkItem]):
        item = run.item
        block = run.block
        jump_pc = block.end_pc
        warnings = list(run.warnings)

        resolved: List[Tuple[EdgeKind, int, MachineState]] = []
        for kind, target_value, state in run.outgoing:
            try:
                if kind in FALLTHROUGH_KINDS:
                    # Falling into the next instruction needs no JUMPDEST;
                    # falling off the end of the code is an implicit STOP
                    targets = [pc for pc in (value_of(target_value),) if pc in self.extents]
                else:
                    targets = self._resolve_target(target_value, state, jump_pc)
            except UnresolvedControlFlow as exc:
                logger.info("Unresolved jump", block=hex(item.pc), target=str(target_value))
                warnings.append(AnalysisWarning.from_exception(exc))
                block = replace(block, terminator=Terminator.INVALID, unresolved_jump=True)
                continue
            except InvalidJumpDestination as exc:
                warnings.append(AnalysisWarning.from_exception(exc))
                continue
            if (
                self.config.solver_pruning
                and kind in (EdgeKind.BRANCH_TRUE, EdgeKind.BRANCH_FALSE)
                and state.path_constraints
                and not z3_utils.constraints_feasible(state.path_constraints, self.config.solver_timeout_ms)
            ):
                logger.debug("Pruned infeasible branch", block=hex(item.pc), kind=kind.value)
                continue
            for index, target in enumerate(targets):
                resolved.append((kind, target, state if index == 0 else state.clone()))

        recorded = graph.insert_if_absent(block, run.summary)
        if item.widened and not recorded:
            graph.generalize(run.summary)
        for warning in warnings:
            if warning.kind is WarningKind.BUDGET_EXCEEDED:
                graph.budget_exceeded = True
            # A re-run in another context still reports the jumps it could not resolve
            if recorded or item.widened or warning.kind is WarningKind.UNRESOLVED_CONTROL_FLOW:
                self._warn(graph, warning)

        for kind, target, state in resolved:
            graph.add_edge(Edge(item.pc, target, kind))
            self._schedule(graph, item, target, state, next_wave)

    def _context_key(self, state: MachineState) -> Tuple:
        # Internal-function return addresses live on the stack as JUMPDEST constants
        return tuple(
            (index, value.value)
            for index, value in enumerate(state.stack)
            if isinstance(value, Concrete) and value.value in self.vm.jumpdests
        )

    def _remember_entry(self, pc: int, state: MachineState, ancestors: FrozenSet[int]):
        if pc not in self._entries:
            self._entries[pc] = (state.clone(), ancestors)

    def _warn(self, graph: ControlFlowGraph, warning: AnalysisWarning):
        key = (warning.kind, warning.pc)
        if key not in self._warned:
            self._warned.add(key)
            graph.add_warning(warning)

    def _budget(self, graph: ControlFlowGraph, reason: str, pc: int):
        graph.budget_exceeded = True
        if reason in self._budget_reasons:
            return
        self._budget_reasons.add(reason)
        logger.warning("Exploration budget exceeded", reason=reason, pc=hex(pc))
        graph.add_warning(AnalysisWarning.from_exception(BudgetExceeded(reason, pc=pc)))

    def _schedule(
        self,
        graph: ControlFlowGraph,
        item: WorkItem,
        target: int,
        state: MachineState,
        next_wave: List[WorkItem],
    ):
        if state.fork_depth > self.config.max_fork_depth:
            self._budget(graph, f"fork depth above {self.config.max_fork_depth}", item.pc)
            return

        ancestors = item.ancestors | {item.pc}
        if target in ancestors:
            self._widen(item, target, state, next_wave)
            return

        key = (self._context_key(state), item.widened)
        contexts = self._contexts.setdefault(target, set())
        if key in contexts:
            return
        if target not in self._scheduled:
            if len(self._scheduled) >= self.config.max_blocks:
                self._budget(graph, f"more than {self.config.max_blocks} blocks", target)
                return
            self._scheduled.add(target)
            self._remember_entry(target, state, ancestors)
        elif len(contexts) >= self.config.max_block_contexts:
            return
        contexts.add(key)
        next_wave.append(WorkItem(target, state, ancestors, widened=item.widened))

    def _widen(self, item: WorkItem, head: int, state: MachineState, next_wave: List[WorkItem]):
        """Re-run a loop head once with the values that changed around the loop merged."""
        count = self._widenings.get(head, 0)
        if count >= self.config.max_loop_widenings or head not in self._entries:
            return
        entry, entry_ancestors = self._entries[head]
        if len(entry.stack) != len(state.stack):
            return

        widened = state.clone()
        widened.path_constraints = list(entry.path_constraints)
        changed = False
        for index, (before, after) in enumerate(zip(entry.stack, state.stack)):
            if before != after:
                widened.stack[index] = loop_carried((before, after), head, str(index))
                changed = True
        for offset, (size, after) in state.memory.items():
            before = entry.memory.get(offset)
            if before is not None and before[0] == size and before[1] != after:
                widened.memory[offset] = (size, loop_carried((before[1], after), head, f"m{offset:x}"))
                changed = True
        for slot, after in state.storage.items():
            before = entry.storage.get(slot)
            if before is not None and before != after:
                widened.storage[slot] = loop_carried((before, after), head, f"s{slot:x}")
                changed = True
        if not changed:
            return

        self._widenings[head] = count + 1
        self._contexts.setdefault(head, set()).add((self._context_key(widened), True))
        logger.debug("Widening loop head", head=hex(head), latch=hex(item.pc))
        next_wave.append(WorkItem(head, widened, entry_ancestors, widened=True))
