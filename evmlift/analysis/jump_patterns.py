"""
Module for identifying common EVM jump patterns in a finished CFG.

The most important one is the selector dispatcher solc places at the start of
every contract: a chain of conditional jumps comparing the first four bytes
of calldata against constants, each leading to one external function.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

import structlog

from ..core.basic_block import EdgeKind, Terminator
from ..core.cfg import ControlFlowGraph
from ..core.symbolic import Concrete, SymbolicValue, candidate_values, is_op, value_of
from .idioms import SELECTOR_MASK, is_selector_expression

logger = structlog.get_logger()


@dataclass(frozen=True)
class DispatchEntry:
    selector: int
    block_pc: int  # block holding the comparison
    entry_pc: int  # branch taken when the selector matches


def _selector_operand(a: SymbolicValue, b: SymbolicValue) -> Optional[int]:
    for selector, constant in ((a, b), (b, a)):
        if is_selector_expression(selector) and isinstance(constant, Concrete):
            if constant.value <= SELECTOR_MASK:
                return constant.value
    return None


def match_selector_comparison(condition: SymbolicValue) -> Optional[Tuple[int, bool]]:
    """
    Match a comparison of the calldata selector against a 4-byte constant.

    Args:
        condition: Branch condition of a JUMPI

    Returns:
        ``(selector, match_on_true)`` where ``match_on_true`` tells whether
        the jump is taken when the selector matches, or None
    """
    negations = 0
    while is_op(condition, "iszero"):
        condition = condition.operands[0]
        negations += 1
    if is_op(condition, "eq"):
        selector, matched = _selector_operand(*condition.operands), True
    elif is_op(condition, "sub", "xor"):
        # Non-zero exactly when the selector differs
        selector, matched = _selector_operand(*condition.operands), False
    else:
        return None
    if selector is None:
        return None
    return selector, matched if negations % 2 == 0 else not matched


def is_selector_split(condition: SymbolicValue) -> bool:
    """Range checks (``lt``/``gt`` on the selector) used by binary-search dispatchers."""
    while is_op(condition, "iszero"):
        condition = condition.operands[0]
    if not is_op(condition, "lt", "gt"):
        return False
    return _selector_operand(*condition.operands) is not None


def is_calldata_size_check(condition: SymbolicValue) -> bool:
    """``calldatasize < 4`` guards that send short calldata to the fallback."""
    while is_op(condition, "iszero"):
        condition = condition.operands[0]
    if not is_op(condition, "lt", "gt"):
        return False
    return any(is_op(o, "calldatasize") for o in condition.operands)


def identify_jump_patterns(cfg: ControlFlowGraph) -> Dict[int, Dict[str, Any]]:
    """
    Identify common patterns in jumps to help later stages.

    Args:
        cfg: Finished control-flow graph

    Returns:
        Dictionary mapping block start pcs to pattern information:
        {
            block_pc: {
                "pattern": pattern_name,
                "confidence": confidence_score (0.0-1.0),
                "metadata": additional_info
            }
        }
    """
    patterns: Dict[int, Dict[str, Any]] = {}
    for pc in sorted(cfg.blocks):
        block = cfg.blocks[pc]
        summary = cfg.summary(pc)
        if summary is None:
            continue
        targets = [edge.target for edge in cfg.successors(pc)]

        if block.terminator is Terminator.CONDITIONAL_JUMP and summary.condition is not None:
            condition = summary.condition
            match = match_selector_comparison(condition)
            if match is not None:
                selector, on_true = match
                wanted = EdgeKind.BRANCH_TRUE if on_true else EdgeKind.BRANCH_FALSE
                entry = next((e.target for e in cfg.successors(pc) if e.kind is wanted), None)
                patterns[pc] = {
                    "pattern": "selector_dispatch",
                    "confidence": 0.95 if entry is not None else 0.5,
                    "metadata": {"selector": selector, "entry": entry, "match_on_true": on_true},
                }
            elif is_selector_split(condition):
                patterns[pc] = {
                    "pattern": "selector_split",
                    "confidence": 0.8,
                    "metadata": {"targets": targets},
                }
            elif is_calldata_size_check(condition):
                patterns[pc] = {
                    "pattern": "calldata_size_check",
                    "confidence": 0.8,
                    "metadata": {"targets": targets},
                }
            continue

        if block.terminator is Terminator.JUMP:
            target = summary.jump_target
            if len(targets) > 1 or (
                target is not None and value_of(target) is None and candidate_values(target) is not None
            ):
                # Return address pushed by the caller of an internal function
                patterns[pc] = {
                    "pattern": "internal_return",
                    "confidence": 0.7 if len(targets) > 1 else 0.5,
                    "metadata": {"targets": targets},
                }
            elif target is not None and value_of(target) is not None:
                patterns[pc] = {
                    "pattern": "direct_jump",
                    "confidence": 0.9,
                    "metadata": {"target": value_of(target)},
                }
        elif block.unresolved_jump:
            patterns[pc] = {
                "pattern": "unresolved_jump",
                "confidence": 1.0,
                "metadata": {"target": str(summary.jump_target)},
            }
    return patterns


def find_dispatch_entries(
    cfg: ControlFlowGraph, patterns: Optional[Dict[int, Dict[str, Any]]] = None
) -> List[DispatchEntry]:
    """Selector dispatch branches ordered by comparison block; the first entry per selector wins."""
    if patterns is None:
        patterns = identify_jump_patterns(cfg)
    entries: List[DispatchEntry] = []
    seen: Set[int] = set()
    for pc, info in sorted(patterns.items()):
        if info["pattern"] != "selector_dispatch":
            continue
        metadata = info["metadata"]
        if metadata["entry"] is None or metadata["selector"] in seen:
            continue
        seen.add(metadata["selector"])
        entries.append(DispatchEntry(metadata["selector"], pc, metadata["entry"]))
    logger.debug("Dispatch entries", count=len(entries))
    return entries


def dispatcher_chain(
    cfg: ControlFlowGraph,
    entries: List[DispatchEntry],
    patterns: Optional[Dict[int, Dict[str, Any]]] = None,
) -> Set[int]:
    """
    Blocks that make up the dispatcher: every selector comparison or split
    plus every block on a path from the contract entry to one of them.
    """
    if patterns is None:
        patterns = identify_jump_patterns(cfg)
    anchors = {entry.block_pc for entry in entries}
    anchors.update(
        pc for pc, info in patterns.items() if info["pattern"] == "selector_split"
    )
    entry_pcs = {entry.entry_pc for entry in entries}
    chain: Set[int] = set()
    pending = list(anchors)
    while pending:
        pc = pending.pop()
        if pc in chain or pc in entry_pcs:
            continue
        chain.add(pc)
        pending.extend(edge.source for edge in cfg.predecessors(pc))
    return chain

