from typing import Dict, Iterable, List, Optional, Set

import networkx as nx
import structlog

from ..core.basic_block import Terminator
from ..core.cfg import ControlFlowGraph
from ..core.function import FunctionRegion
from .jump_patterns import DispatchEntry, dispatcher_chain, find_dispatch_entries, identify_jump_patterns

logger = structlog.get_logger()


def pushed_labels(cfg: ControlFlowGraph, pcs: Iterable[int]) -> Set[int]:
    """Block start pcs pushed as constants by the given blocks (return addresses among them)."""
    return {
        instr.operand
        for pc in pcs
        for instr in cfg.blocks[pc].instructions
        if instr.is_push and instr.operand in cfg.blocks
    }


def identify_function_blocks(cfg: ControlFlowGraph, entry_pc: int, boundary: Iterable[int]) -> Set[int]:
    """
    Blocks reachable from ``entry_pc`` without re-entering the dispatcher.

    A JUMP with several targets is an internal return shared by several
    callers: only the targets pushed by the function's own blocks are
    followed. When none of them is, the jump is not a return and every
    target is followed.

    Args:
        cfg: Control-flow graph
        entry_pc: First block of the function
        boundary: Blocks that end the walk (dispatcher chain, other entries)

    Returns:
        Set of block start pcs, including ``entry_pc``
    """
    stop = set(boundary)
    stop.discard(entry_pc)
    blocks: Set[int] = set()
    returns: Dict[int, List[int]] = {}
    pending = [entry_pc]
    while True:
        while pending:
            pc = pending.pop()
            if pc in blocks or pc in stop or pc not in cfg.blocks:
                continue
            blocks.add(pc)
            targets = sorted({edge.target for edge in cfg.successors(pc)})
            if len(targets) > 1 and cfg.blocks[pc].terminator is Terminator.JUMP:
                returns[pc] = targets
            else:
                pending.extend(targets)

        pushed = pushed_labels(cfg, blocks)
        pending = [
            t
            for targets in returns.values()
            for t in targets
            if t in pushed and t not in blocks and t not in stop and t in cfg.blocks
        ]
        if pending:
            continue
        unmatched = [pc for pc, targets in returns.items() if not pushed.intersection(targets)]
        if not unmatched:
            return blocks
        for pc in unmatched:
            pending.extend(returns.pop(pc))


def dominators(cfg: ControlFlowGraph) -> Dict[int, int]:
    """Immediate dominators of every block reachable from the contract entry."""
    graph = nx.DiGraph()
    graph.add_nodes_from(cfg.blocks)
    graph.add_edges_from((edge.source, edge.target) for edge in cfg.edges)
    if cfg.entry_pc not in graph:
        return {}
    return nx.immediate_dominators(graph, cfg.entry_pc)


def _dominated_by(idom: Dict[int, int], node: int, head: int) -> bool:
    while node in idom:
        if node == head:
            return True
        parent = idom[node]
        if parent == node:
            return False
        node = parent
    return False


def shared_blocks(cfg: ControlFlowGraph, entry_pc: int, blocks: Set[int], idom: Dict[int, int]) -> Set[int]:
    """Blocks of a region that other code reaches without passing its entry (shared helpers)."""
    return {pc for pc in blocks if not _dominated_by(idom, pc, entry_pc)}


def _fallback_roots(cfg: ControlFlowGraph, chain: Set[int], entries: List[DispatchEntry]) -> List[int]:
    entry_pcs = {entry.entry_pc for entry in entries}
    roots = set()
    for pc in chain:
        for edge in cfg.successors(pc):
            if edge.target not in chain and edge.target not in entry_pcs:
                roots.add(edge.target)
    return sorted(roots)


def infer_function_regions(cfg: ControlFlowGraph) -> List[FunctionRegion]:
    """
    Split the graph into externally callable regions.

    Every selector found in the dispatcher yields one region rooted at the
    branch taken on a match. Code reachable from the dispatcher but from no
    selector (short calldata, unknown selector) forms the fallback region. A
    contract without a dispatcher is a single fallback region rooted at the
    entry. Regions are ordered by entry pc, fallback last.

    Returns:
        List of FunctionRegion objects without statements
    """
    if cfg.entry_pc not in cfg.blocks:
        return []
    idom = dominators(cfg)
    patterns = identify_jump_patterns(cfg)
    entries = find_dispatch_entries(cfg, patterns)
    if not entries:
        blocks = cfg.reachable(cfg.entry_pc)
        logger.info("No selector dispatcher found", blocks=len(blocks))
        return [FunctionRegion(entry_pc=cfg.entry_pc, selector=None, blocks=frozenset(blocks))]

    chain = dispatcher_chain(cfg, entries, patterns)
    boundary = chain | {entry.entry_pc for entry in entries}
    regions = []
    for entry in sorted(entries, key=lambda e: (e.entry_pc, e.selector)):
        blocks = identify_function_blocks(cfg, entry.entry_pc, boundary)
        regions.append(
            FunctionRegion(
                entry_pc=entry.entry_pc,
                selector=entry.selector,
                blocks=frozenset(blocks),
                shared_blocks=frozenset(shared_blocks(cfg, entry.entry_pc, blocks, idom)),
            )
        )

    fallback = _fallback_region(cfg, chain, entries, boundary, idom)
    if fallback is not None:
        regions.append(fallback)
    logger.info("Function regions inferred", selectors=len(entries), fallback=fallback is not None)
    return regions


def _fallback_region(
    cfg: ControlFlowGraph,
    chain: Set[int],
    entries: List[DispatchEntry],
    boundary: Set[int],
    idom: Dict[int, int],
) -> Optional[FunctionRegion]:
    roots = _fallback_roots(cfg, chain, entries)
    if not roots:
        return None
    blocks: Set[int] = set()
    for root in roots:
        blocks |= identify_function_blocks(cfg, root, boundary)
    entry_pc = roots[0]
    return FunctionRegion(
        entry_pc=entry_pc,
        selector=None,
        blocks=frozenset(blocks),
        shared_blocks=frozenset(pc for pc in blocks if not any(_dominated_by(idom, pc, r) for r in roots)),
    )
