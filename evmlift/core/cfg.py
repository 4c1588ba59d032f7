import threading
from typing import Any, Dict, Iterable, List, Optional, Set

import networkx as nx

from ..warnings import AnalysisWarning
from .basic_block import BasicBlock, BlockSummary, Edge


class ControlFlowGraph:
    """
    Blocks keyed by start pc, a de-duplicated edge set and the summaries the
    lifter needs. Recording goes through ``insert_if_absent`` / ``add_edge``,
    which are serialized by a lock so that concurrent builders never record a
    block twice. Recorded blocks are never modified.
    """

    def __init__(self, entry_pc: int = 0, code_size: int = 0):
        self.entry_pc = entry_pc
        self.code_size = code_size
        self.blocks: Dict[int, BasicBlock] = {}
        self.summaries: Dict[int, BlockSummary] = {}
        self._generalized: Dict[int, BlockSummary] = {}
        self._edges: Set[Edge] = set()
        self._succ: Dict[int, List[Edge]] = {}
        self._pred: Dict[int, List[Edge]] = {}
        self.warnings: List[AnalysisWarning] = []
        self.budget_exceeded = False
        self._lock = threading.Lock()

    def insert_if_absent(self, block: BasicBlock, summary: Optional[BlockSummary] = None) -> bool:
        """Record ``block`` unless a block with the same start pc exists."""
        with self._lock:
            if block.start_pc in self.blocks:
                return False
            self.blocks[block.start_pc] = block
            if summary is not None:
                self.summaries[block.start_pc] = summary
            return True

    def generalize(self, summary: BlockSummary) -> bool:
        """Attach the summary of a widened re-run; the first one wins."""
        with self._lock:
            if summary.start_pc in self._generalized:
                return False
            self._generalized[summary.start_pc] = summary
            return True

    def add_edge(self, edge: Edge) -> bool:
        with self._lock:
            if edge in self._edges:
                return False
            self._edges.add(edge)
            self._succ.setdefault(edge.source, []).append(edge)
            self._pred.setdefault(edge.target, []).append(edge)
            return True

    def add_warning(self, warning: AnalysisWarning):
        with self._lock:
            self.warnings.append(warning)

    def __contains__(self, pc: int) -> bool:
        return pc in self.blocks

    def __len__(self) -> int:
        return len(self.blocks)

    @property
    def edges(self) -> List[Edge]:
        return sorted(self._edges, key=Edge.sort_key)

    def successors(self, pc: int) -> List[Edge]:
        return sorted(self._succ.get(pc, ()), key=Edge.sort_key)

    def predecessors(self, pc: int) -> List[Edge]:
        return sorted(self._pred.get(pc, ()), key=lambda e: (e.source, e.sort_key()))

    def summary(self, pc: int) -> Optional[BlockSummary]:
        """The most general summary known for the block at ``pc``."""
        return self._generalized.get(pc) or self.summaries.get(pc)

    def block_containing(self, pc: int) -> Optional[BasicBlock]:
        for block in self.blocks.values():
            if pc in block:
                return block
        return None

    def warnings_for(self, pcs: Iterable[int]) -> List[AnalysisWarning]:
        wanted = set(pcs)
        return [w for w in self.warnings if w.pc is not None and (w.pc in wanted or self._owner(w.pc) in wanted)]

    def _owner(self, pc: int) -> Optional[int]:
        block = self.block_containing(pc)
        return block.start_pc if block is not None else None

    def reachable(self, start: int, stop: Iterable[int] = ()) -> Set[int]:
        """Blocks reachable from ``start`` without entering any block in ``stop``."""
        blocked = set(stop)
        seen = set()
        worklist = [start]
        while worklist:
            pc = worklist.pop()
            if pc in seen or pc in blocked or pc not in self.blocks:
                continue
            seen.add(pc)
            worklist.extend(edge.target for edge in self._succ.get(pc, ()))
        return seen

    def to_networkx(self) -> nx.MultiDiGraph:
        graph = nx.MultiDiGraph()
        for pc in sorted(self.blocks):
            graph.add_node(pc, block=self.blocks[pc])
        for edge in self.edges:
            graph.add_edge(edge.source, edge.target, key=edge.kind, kind=edge.kind)
        return graph

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry": self.entry_pc,
            "budget_exceeded": self.budget_exceeded,
            "blocks": [self.blocks[pc].to_dict() for pc in sorted(self.blocks)],
            "edges": [edge.to_dict() for edge in self.edges],
            "warnings": [w.to_dict() for w in self.warnings],
        }
