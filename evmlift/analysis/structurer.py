"""
Statement synthesis for one function region.

The region sub-graph gets a synthetic end node; immediate post-dominators
(networkx, on the reversed graph) give the join point of every two-way
branch and DFS back-edges whose head dominates the latch give natural loops.
Every block is emitted at most once: reaching an emitted, non-halting block
again renders ``goto`` and records a warning.
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

import networkx as nx
import structlog

from ..config import AnalysisConfig
from ..core.basic_block import EdgeKind, Terminator
from ..core.cfg import ControlFlowGraph
from ..core.effects import CallRecord, LogRecord, MemoryCopy, MemoryWrite, StorageWrite
from ..core.function import FunctionRegion
from ..core.statements import (
    Assignment,
    Call,
    Conditional,
    Emit,
    Loop,
    Raw,
    Require,
    Return,
    Revert,
    SelfDestruct,
    Statement,
)
from ..core.symbolic import Concrete, SymbolicValue, value_of
from ..exceptions import PatternMismatch
from ..render import ExpressionRenderer
from ..warnings import AnalysisWarning, WarningKind
from . import idioms

logger = structlog.get_logger()

END = "end"
# Blocks followed when looking for the revert behind a require
MAX_REVERT_CHAIN = 4


@dataclass(frozen=True)
class LoopInfo:
    head: int
    body: FrozenSet[int]
    latches: Tuple[int, ...]
    exit: Optional[int]


class Structurer:
    def __init__(
        self,
        cfg: ControlFlowGraph,
        region: FunctionRegion,
        renderer: ExpressionRenderer,
        config: Optional[AnalysisConfig] = None,
    ):
        self.cfg = cfg
        self.region = region
        self.renderer = renderer
        self.config = config or AnalysisConfig()
        self.blocks: Set[int] = set(region.blocks)
        self.warnings: List[AnalysisWarning] = []
        self.emitted: Set[int] = set()
        self.count = 0
        self._active_loops: Set[int] = set()
        self._pushed: List[int] = []
        self._budget_reported = False
        self._consumed = idioms.consumed_ranges(
            s for s in (cfg.summary(pc) for pc in sorted(self.blocks)) if s is not None
        )

        self.graph = self._region_graph()
        self.idom = nx.immediate_dominators(self.graph, region.entry_pc) if region.entry_pc in self.graph else {}
        self.ipdom = nx.immediate_dominators(self.graph.reverse(copy=True), END)
        self.loops = self._find_loops()

    # Graph

    def _targets(self, pc: int) -> List[int]:
        return sorted({edge.target for edge in self.cfg.successors(pc)})

    def _region_graph(self) -> nx.DiGraph:
        graph = nx.DiGraph()
        graph.add_node(END)
        for pc in sorted(self.blocks):
            graph.add_node(pc)
            targets = self._targets(pc)
            inside = [t for t in targets if t in self.blocks]
            graph.add_edges_from((pc, t) for t in inside)
            if len(inside) < len(targets) or not targets:
                graph.add_edge(pc, END)
        return graph

    def _dominates(self, head: int, node: int) -> bool:
        while node in self.idom:
            if node == head:
                return True
            parent = self.idom[node]
            if parent == node:
                return False
            node = parent
        return False

    def _find_loops(self) -> Dict[int, LoopInfo]:
        entry = self.region.entry_pc
        if entry not in self.graph:
            return {}
        latches: Dict[int, List[int]] = {}
        on_stack = {entry}
        visited = {entry}
        stack = [(entry, iter(sorted(self.graph.successors(entry), key=str)))]
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                stack.pop()
                on_stack.discard(node)
                continue
            if child == END:
                continue
            if child in on_stack:
                if self._dominates(child, node):
                    latches.setdefault(child, []).append(node)
                continue
            if child not in visited:
                visited.add(child)
                on_stack.add(child)
                stack.append((child, iter(sorted(self.graph.successors(child), key=str))))

        loops = {}
        for head, tails in latches.items():
            body = {head}
            pending = [t for t in tails if t != head]
            while pending:
                node = pending.pop()
                if node in body:
                    continue
                body.add(node)
                pending.extend(p for p in self.graph.predecessors(node) if p != END)
            loops[head] = LoopInfo(head, frozenset(body), tuple(sorted(tails)), self._loop_exit(head, body, tails))
        return loops

    def _loop_exit(self, head: int, body: Set[int], latches: Sequence[int]) -> Optional[int]:
        exits = sorted(
            {t for n in body for t in self.graph.successors(n) if t not in body and t != END}
        )
        if not exits:
            return None
        join = self.ipdom.get(head)
        if join in exits:
            return join
        continuing = [e for e in exits if not self._is_terminal(e)]
        if continuing:
            return continuing[0]
        for node in (head, *latches):
            for target in sorted(self.graph.successors(node), key=str):
                if target in exits:
                    return target
        return None

    def _is_terminal(self, pc: int) -> bool:
        return list(self.graph.successors(pc)) == [END]

    # Entry point

    def structure(self) -> Tuple[Statement, ...]:
        """Statement tree of the region."""
        entry = self.region.entry_pc
        statements = self._sequence(entry, frozenset(), None, 0)
        # Fallback regions may be entered from several dispatcher exits
        roots = [
            pc
            for pc in sorted(self.blocks)
            if pc != entry and not any(p in self.blocks for p in self.graph.predecessors(pc))
        ]
        for root in roots:
            if root in self.emitted:
                continue
            statements.append(Raw(f"label_{root:x}:", pc=root))
            statements.extend(self._sequence(root, frozenset(), None, 0))
        logger.debug(
            "Region structured",
            region=hex(entry),
            statements=self.count,
            warnings=len(self.warnings),
        )
        return tuple(statements)

    # Sequencing

    def _warn(self, kind: WarningKind, message: str, pc: Optional[int]):
        self.warnings.append(AnalysisWarning(kind, message, pc=pc, region=self.region.entry_pc))

    def _goto(self, pc: int, message: str, kind: WarningKind = WarningKind.PATTERN_MISMATCH) -> Raw:
        self._warn(kind, message, pc)
        return Raw(f"goto {pc:#x}", pc=pc)

    def _sequence(
        self,
        start: int,
        stop: FrozenSet,
        loop: Optional[LoopInfo],
        depth: int,
    ) -> List[Statement]:
        statements: List[Statement] = []
        node = start
        first = True
        while node is not None:
            if node == END or node in stop:
                break
            if loop is not None:
                if node == loop.head and not first:
                    break
                if node == loop.exit:
                    statements.append(Raw("break", pc=node))
                    break
            first = False
            if node not in self.blocks:
                statements.append(self._goto(node, "branch leaves the function region"))
                break
            if depth > self.config.max_nesting_depth:
                statements.append(
                    self._goto(node, f"nesting deeper than {self.config.max_nesting_depth}", WarningKind.BUDGET_EXCEEDED)
                )
                break
            if self.count >= self.config.max_statements:
                if not self._budget_reported:
                    self._budget_reported = True
                    self._warn(
                        WarningKind.BUDGET_EXCEEDED,
                        f"more than {self.config.max_statements} statements",
                        node,
                    )
                statements.append(Raw("...", pc=node))
                break
            if node in self.loops and node not in self._active_loops:
                if node in self.emitted:
                    statements.append(self._goto(node, "loop head reached twice"))
                    break
                info = self.loops[node]
                statements.extend(self._loop(info, stop, depth))
                node = info.exit
                continue
            if node in self.emitted and not self._is_terminal(node):
                statements.append(self._goto(node, "block already emitted"))
                break
            self.emitted.add(node)
            self._pushed.extend(
                instr.operand
                for instr in self.cfg.blocks[node].instructions
                if instr.is_push and instr.operand in self.blocks
            )
            statements.extend(self._block_statements(node))
            node = self._next(node, statements, stop, loop, depth)
        return statements

    def _next(
        self,
        node: int,
        statements: List[Statement],
        stop: FrozenSet,
        loop: Optional[LoopInfo],
        depth: int,
    ) -> Optional[int]:
        """Emit the block's control transfer and return the block that follows it."""
        block = self.cfg.blocks[node]
        edges = self.cfg.successors(node)
        if block.terminator.is_halting or not edges:
            statements.extend(self._terminator(node))
            return None

        summary = self.cfg.summary(node)
        if block.terminator is Terminator.CONDITIONAL_JUMP and summary is not None and summary.condition is not None:
            true_targets = [e.target for e in edges if e.kind is EdgeKind.BRANCH_TRUE]
            false_targets = [e.target for e in edges if e.kind is EdgeKind.BRANCH_FALSE]
            if len(true_targets) == 1 and len(false_targets) == 1 and true_targets != false_targets:
                return self._conditional(node, true_targets[0], false_targets[0], statements, stop, loop, depth)

        targets = self._targets(node)
        if len(targets) == 1:
            return targets[0]
        chosen = self._dynamic_target(node, targets)
        if chosen is not None:
            return chosen
        self._warn(WarningKind.PATTERN_MISMATCH, f"jump with {len(targets)} possible targets", node)
        statements.append(Raw(f"goto {' | '.join(hex(t) for t in targets)}", pc=node))
        return None

    def _dynamic_target(self, node: int, targets: List[int]) -> Optional[int]:
        # An internal return continues at the address this region pushed last
        inside = [t for t in targets if t in self.blocks]
        if len(inside) == 1:
            return inside[0]
        for label in reversed(self._pushed):
            if label in inside and label not in self.emitted:
                return label
        return None

    def _conditional(
        self,
        node: int,
        on_true: int,
        on_false: int,
        statements: List[Statement],
        stop: FrozenSet,
        loop: Optional[LoopInfo],
        depth: int,
    ) -> Optional[int]:
        condition = self.cfg.summary(node).condition
        revert_true = self._revert_path(on_true)
        revert_false = self._revert_path(on_false)
        if revert_false is not None and revert_true is None:
            statements.extend(self._require(condition, True, node, revert_false))
            return on_true
        if revert_true is not None and revert_false is None:
            statements.extend(self._require(condition, False, node, revert_true))
            return on_false

        join = self.ipdom.get(node)
        inner_stop = stop if join in (None, END) else stop | {join}
        then_body = self._sequence(on_true, inner_stop, loop, depth + 1)
        else_body = self._sequence(on_false, inner_stop, loop, depth + 1)
        taken = True
        if not then_body and else_body:
            then_body, else_body, taken = else_body, [], False
        hoisted, text = self.renderer.condition(condition, taken, node)
        statements.extend(hoisted)
        if then_body or else_body:
            statements.append(Conditional(text, tuple(then_body), tuple(else_body), pc=node))
            self.count += 1
        return None if join in (None, END) else join

    def _require(self, condition: SymbolicValue, taken: bool, node: int, revert_pc: int) -> List[Statement]:
        hoisted, text = self.renderer.condition(condition, taken, node)
        halt = self.cfg.summary(revert_pc).halt
        reason = idioms.decode_revert(halt) if halt is not None else None
        self.count += 1
        return [*hoisted, Require(text, reason, pc=node)]

    def _revert_path(self, pc: int) -> Optional[int]:
        """The REVERT block reached from ``pc`` through blocks without visible effects."""
        for _ in range(MAX_REVERT_CHAIN):
            if pc not in self.blocks or self._has_effects(pc):
                return None
            block = self.cfg.blocks[pc]
            if block.terminator is Terminator.REVERT:
                summary = self.cfg.summary(pc)
                return pc if summary is not None and summary.halt is not None else None
            targets = self._targets(pc)
            if block.terminator.is_halting or len(targets) != 1:
                return None
            pc = targets[0]
        return None

    def _has_effects(self, pc: int) -> bool:
        summary = self.cfg.summary(pc)
        if summary is None:
            return False
        return any(
            not (isinstance(e, MemoryWrite) and idioms.is_bookkeeping_write(e, self._consumed))
            for e in summary.effects
        )

    # Loops

    def _loop(self, info: LoopInfo, stop: FrozenSet, depth: int) -> List[Statement]:
        head = info.head
        self._active_loops.add(head)
        try:
            statement = self._pre_test_loop(info, stop, depth)
            if statement is None:
                statement = self._post_test_loop(info, stop, depth)
            if statement is None:
                body = self._sequence(head, stop, info, depth + 1)
                statement = [Loop(None, tuple(body), pc=head)]
        finally:
            self._active_loops.discard(head)
        self.count += 1
        return statement

    def _branch_into(self, pc: int, body: FrozenSet[int], exit_pc: Optional[int]) -> Optional[Tuple[int, bool]]:
        """``(body successor, taken)`` when ``pc`` branches between the loop body and its exit."""
        if self.cfg.blocks[pc].terminator is not Terminator.CONDITIONAL_JUMP or exit_pc is None:
            return None
        edges = self.cfg.successors(pc)
        inside = [e for e in edges if e.target in body]
        outside = [e for e in edges if e.target == exit_pc]
        if len(inside) != 1 or len(outside) != 1 or len(edges) != 2:
            return None
        return inside[0].target, inside[0].kind is EdgeKind.BRANCH_TRUE

    def _pre_test_loop(self, info: LoopInfo, stop: FrozenSet, depth: int) -> Optional[List[Statement]]:
        head = info.head
        branch = self._branch_into(head, info.body, info.exit)
        if branch is None or self._has_effects(head) or branch[0] == head:
            return None
        first, taken = branch
        condition = self.cfg.summary(head).condition
        self.emitted.add(head)

        collapsed = self._copy_loop(info, condition, taken)
        if collapsed is not None:
            return collapsed

        hoisted, text = self.renderer.condition(condition, taken, head)
        body = self._sequence(first, stop, info, depth + 1)
        return [*hoisted, Loop(text, tuple(body), post_test=False, pc=head)]

    def _copy_loop(self, info: LoopInfo, condition: SymbolicValue, taken: bool) -> Optional[List[Statement]]:
        writes = [
            effect
            for pc in sorted(info.body)
            for effect in (self.cfg.summary(pc).effects if self.cfg.summary(pc) else ())
            if isinstance(effect, MemoryWrite)
        ]
        try:
            target, source = idioms.copy_loop_assignment(condition, taken, writes, self.renderer.render)
        except PatternMismatch:
            return None
        self.emitted.update(info.body)
        return [Assignment(target, source, pc=info.head)]

    def _post_test_loop(self, info: LoopInfo, stop: FrozenSet, depth: int) -> Optional[List[Statement]]:
        if len(info.latches) != 1:
            return None
        latch = info.latches[0]
        branch = self._branch_into(latch, info.body, info.exit)
        if branch is None or branch[0] != info.head:
            return None
        condition = self.cfg.summary(latch).condition
        if latch == info.head:
            self.emitted.add(latch)
            body = self._block_statements(latch)
        else:
            body = self._sequence(info.head, stop | {latch}, info, depth + 1)
            if latch not in self.emitted:
                self.emitted.add(latch)
                body.extend(self._block_statements(latch))
        hoisted, text = self.renderer.condition(condition, branch[1], latch)
        return [Loop(text, tuple(body + hoisted), post_test=True, pc=info.head)]

    # Blocks

    def _block_statements(self, pc: int) -> List[Statement]:
        summary = self.cfg.summary(pc)
        if summary is None:
            return []
        statements: List[Statement] = []
        for effect in summary.effects:
            statements.extend(self._effect(effect))
        self.count += len(statements)
        return statements

    def _effect(self, effect) -> List[Statement]:
        render = self.renderer.render
        pc = effect.pc
        if isinstance(effect, StorageWrite):
            packed = idioms.match_packed_write(effect)
            location = idioms.storage_location(effect.slot, render, effect.transient)
            if packed is not None:
                lo, hi, value = packed
                location = f"{location}_{lo}_{hi}"
            else:
                value = effect.value
            hoisted, text = self.renderer.expression(value, pc)
            return [*hoisted, Assignment(self.renderer.fit(location, pc), text, pc=pc)]

        if isinstance(effect, MemoryWrite):
            if idioms.is_bookkeeping_write(effect, self._consumed):
                return []
            if effect.size == 1:
                target = f"memory[{idioms.memory_span(effect.offset, Concrete(1), render)}]"
            else:
                target = f"memory[{render(effect.offset)}]"
            hoisted, text = self.renderer.expression(effect.value, pc)
            return [*hoisted, Assignment(self.renderer.fit(target, pc), text, pc=pc)]

        if isinstance(effect, MemoryCopy):
            target, source = idioms.copy_assignment(effect, render)
            return [Assignment(self.renderer.fit(target, pc), self.renderer.fit(source, pc), pc=pc)]

        if isinstance(effect, CallRecord):
            hoisted: List[Statement] = []
            arguments = []
            if effect.arguments is not None:
                values = effect.arguments
            elif value_of(effect.args_size) == 0:
                values = ()
            else:
                values = None
                span = idioms.memory_span(effect.args_offset, effect.args_size, render)
                arguments.append(self.renderer.fit(f"memory[{span}]", pc))
            for value in values or ():
                lifted, text = self.renderer.expression(value, pc)
                hoisted.extend(lifted)
                arguments.append(text)
            target = self.renderer.fit(render(effect.target), pc) if effect.target is not None else None
            amount = self.renderer.fit(render(effect.value), pc) if effect.value is not None else None
            return [
                *hoisted,
                Call(
                    effect.kind,
                    target,
                    tuple(arguments),
                    value=amount,
                    selector=effect.selector,
                    result=render(effect.result),
                    pc=pc,
                ),
            ]

        if isinstance(effect, LogRecord):
            return self._emit(effect)
        return []

    def _emit(self, log: LogRecord) -> List[Statement]:
        topics = list(log.topics)
        signature = value_of(topics[0]) if topics else None
        if signature is not None:
            event = f"Event_{signature >> 224:08x}"
            topics = topics[1:]
        else:
            event = f"log{len(log.topics)}"
        hoisted: List[Statement] = []
        arguments = []
        for value in topics + list(log.data or ()):
            lifted, text = self.renderer.expression(value, log.pc)
            hoisted.extend(lifted)
            arguments.append(text)
        if log.data is None:
            span = idioms.memory_span(log.offset, log.size, self.renderer.render)
            arguments.append(self.renderer.fit(f"memory[{span}]", log.pc))
        return [*hoisted, Emit(event, tuple(arguments), pc=log.pc)]

    def _payload(self, data, offset, size, pc: int) -> Tuple[List[Statement], Tuple[str, ...]]:
        if data is not None:
            hoisted: List[Statement] = []
            values = []
            for value in data:
                lifted, text = self.renderer.expression(value, pc)
                hoisted.extend(lifted)
                values.append(text)
            return hoisted, tuple(values)
        if offset is None or value_of(size) == 0:
            return [], ()
        span = idioms.memory_span(offset, size, self.renderer.render)
        return [], (self.renderer.fit(f"memory[{span}]", pc),)

    def _terminator(self, pc: int) -> List[Statement]:
        block = self.cfg.blocks[pc]
        summary = self.cfg.summary(pc)
        halt = summary.halt if summary is not None else None
        self.count += 1

        if block.unresolved_jump:
            target = summary.jump_target if summary is not None else None
            text = self.renderer.render(target) if target is not None else "?"
            return [Raw(f"goto {self.renderer.fit(text, block.end_pc)} /* unresolved jump */", pc=block.end_pc)]

        if halt is None:
            if block.terminator is Terminator.RETURN:
                return [Return(pc=block.end_pc)]
            if block.terminator is Terminator.INVALID:
                return [Raw("invalid()", pc=block.end_pc)]
            if summary is not None and summary.jump_target is not None and not self.cfg.successors(pc):
                return [Raw(f"goto {self.renderer.render(summary.jump_target)} /* invalid jump */", pc=block.end_pc)]
            return [Raw("abort /* path fault */", pc=block.end_pc)]

        if halt.opcode == "STOP":
            return [Return(pc=halt.pc)]
        if halt.opcode == "RETURN":
            hoisted, values = self._payload(halt.data, halt.offset, halt.size, halt.pc)
            return [*hoisted, Return(values, pc=halt.pc)]
        if halt.opcode == "REVERT":
            reason = idioms.decode_revert(halt)
            if reason is not None:
                return [Revert(reason, pc=halt.pc)]
            hoisted, values = self._payload(halt.data, halt.offset, halt.size, halt.pc)
            return [*hoisted, Revert(None, values, pc=halt.pc)]
        if halt.opcode == "SELFDESTRUCT":
            hoisted, text = self.renderer.expression(halt.beneficiary, halt.pc)
            return [*hoisted, SelfDestruct(text, pc=halt.pc)]
        return [Raw("invalid()", pc=halt.pc)]
