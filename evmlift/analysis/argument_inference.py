"""
ABI argument layout of a function region.

Head words of the ABI encoding are read with ``calldataload(4 + 32k)``; how
the loaded word is masked, cast or used afterwards hints at its declared type.
"""
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

import structlog

from ..core.basic_block import BlockSummary
from ..core.effects import CallRecord, LogRecord, MemoryCopy, MemoryWrite, StorageWrite
from ..core.function import ArgumentInfo
from ..core.symbolic import Concrete, Expression, SymbolicValue, is_op, walk
from .idioms import ADDRESS_MASK, argument_index, high_mask_bytes, low_mask_bits, mask_operand

logger = structlog.get_logger()

DEFAULT_TYPE = "uint256"

# Most specific first
TYPE_PRIORITY = ("address", "bool", "int", "bytes", "uint", "dynamic")


def summary_values(summary: BlockSummary) -> Iterator[SymbolicValue]:
    """Every symbolic value a block summary refers to."""
    for effect in summary.effects:
        if isinstance(effect, StorageWrite):
            yield effect.slot
            yield effect.value
        elif isinstance(effect, MemoryWrite):
            yield effect.offset
            yield effect.value
        elif isinstance(effect, MemoryCopy):
            yield from (effect.dest, effect.offset, effect.size)
            if effect.address is not None:
                yield effect.address
        elif isinstance(effect, CallRecord):
            for value in (effect.target, effect.value, effect.args_offset, effect.args_size):
                if value is not None:
                    yield value
            yield from effect.arguments or ()
        elif isinstance(effect, LogRecord):
            yield from effect.topics
            yield from effect.data or ()
    for value in (summary.condition, summary.jump_target):
        if value is not None:
            yield value
    halt = summary.halt
    if halt is not None:
        for value in (halt.offset, halt.size, halt.beneficiary):
            if value is not None:
                yield value
        yield from halt.data or ()


def _hint(parent: Expression, child: SymbolicValue) -> Optional[str]:
    """Type suggested by ``parent`` using the argument word ``child``."""
    masked = mask_operand(parent)
    if masked is not None and masked[0] == child:
        mask = masked[1]
        if mask == ADDRESS_MASK:
            return "address"
        bits = low_mask_bits(mask)
        if bits is not None:
            return f"uint{bits}"
        size = high_mask_bytes(mask)
        if size:
            return f"bytes{size}"
        return None
    if is_op(parent, "signextend"):
        width, value = parent.operands
        if value == child and isinstance(width, Concrete) and width.value < 31:
            return f"int{8 * (width.value + 1)}"
        return None
    if is_op(parent, "add"):
        # add(4, argK): the word is an offset into the calldata tail
        other = parent.operands[1] if parent.operands[0] == child else parent.operands[0]
        if isinstance(other, Concrete) and other.value == 4:
            return "bytes"
    return None


def _rank(hint: str) -> Tuple[int, str]:
    if hint == "bytes":
        return TYPE_PRIORITY.index("dynamic"), hint
    for index, prefix in enumerate(TYPE_PRIORITY):
        if hint.startswith(prefix):
            return index, hint
    return len(TYPE_PRIORITY), hint


def collect_argument_hints(values: Iterable[SymbolicValue]) -> Dict[int, Set[str]]:
    """Map each argument index used by ``values`` to the type hints observed for it."""
    hints: Dict[int, Set[str]] = {}
    seen: Set[int] = set()
    for root in values:
        for node in walk(root):
            if id(node) in seen:
                continue
            seen.add(id(node))
            index = argument_index(node)
            if index is not None:
                hints.setdefault(index, set())
            if not isinstance(node, Expression):
                continue
            # iszero(iszero(argK)) is how solc normalizes a bool
            if is_op(node, "iszero") and is_op(node.operands[0], "iszero"):
                inner = argument_index(node.operands[0].operands[0])
                if inner is not None:
                    hints.setdefault(inner, set()).add("bool")
            for operand in node.operands:
                index = argument_index(operand)
                if index is None:
                    continue
                hint = _hint(node, operand)
                bucket = hints.setdefault(index, set())
                if hint is not None:
                    bucket.add(hint)
    return hints


def infer_arguments(values: Iterable[SymbolicValue]) -> Tuple[ArgumentInfo, ...]:
    """
    Infer the argument list of a region from the values its blocks compute.

    The parameter count is the highest argument index used plus one; unused
    slots in between are filled with ``uint256``.

    Args:
        values: Symbolic values from the region's block summaries

    Returns:
        Tuple of ArgumentInfo ordered by index
    """
    hints = collect_argument_hints(values)
    if not hints:
        return ()
    arguments: List[ArgumentInfo] = []
    for index in range(max(hints) + 1):
        observed = hints.get(index)
        type_hint = min(observed, key=_rank) if observed else DEFAULT_TYPE
        arguments.append(ArgumentInfo(index, type_hint))
    logger.debug("Arguments inferred", count=len(arguments))
    return tuple(arguments)


def infer_region_arguments(summaries: Iterable[BlockSummary]) -> Tuple[ArgumentInfo, ...]:
    values: List[SymbolicValue] = []
    for summary in summaries:
        values.extend(summary_values(summary))
    return infer_arguments(values)
