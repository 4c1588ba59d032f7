"""
Recognizers for the code shapes solc emits.

Each recognizer looks at symbolic values or block effects and either returns a
description of the idiom or ``None`` (``PatternMismatch`` for the loop
collapser, which the structurer catches and turns into a plain loop).
"""
import json
from functools import lru_cache
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from eth_utils import keccak

from ..core.basic_block import BlockSummary
from ..core.effects import CallRecord, HaltRecord, LogRecord, MemoryCopy, MemoryWrite, StorageWrite
from ..core.symbolic import (
    CALLDATA,
    LOOP_CARRIED,
    ZERO,
    Concrete,
    Expression,
    PathConstraint,
    SymbolicValue,
    is_op,
    value_of,
)
from ..exceptions import PatternMismatch
from ..utils.evm_ops import UINT256_MAX

Render = Callable[[SymbolicValue], str]

ADDRESS_MASK = (1 << 160) - 1
SELECTOR_MASK = 0xFFFFFFFF
SELECTOR_SHIFT = 224

ERROR_SELECTOR = 0x08C379A0  # Error(string)
PANIC_SELECTOR = 0x4E487B71  # Panic(uint256)

# 0x00-0x3f scratch space, 0x40 free memory pointer, 0x60 zero slot
RESERVED_MEMORY_END = 0x80

# Largest constant rendered as a named slot; larger ones are usually hashes
MAX_NAMED_SLOT = 0xFFFF
# Dynamic arrays whose length lives in one of these slots are recognized
ARRAY_SLOTS = 256

COPY_SOURCES = {
    "calldata": "msg.data",
    "code": "code",
    "returndata": "returndata",
    "memory": "memory",
}


# Calldata


def calldata_offset(value: SymbolicValue) -> Optional[int]:
    """Concrete offset of a ``calldataload`` or None."""
    if not is_op(value, "calldataload") or value.provenance.kind != CALLDATA:
        return None
    return value_of(value.operands[0])


def argument_index(value: SymbolicValue) -> Optional[int]:
    """``k`` when ``value`` is the ABI head word ``calldataload(4 + 32k)``."""
    offset = calldata_offset(value)
    if offset is None or offset < 4 or (offset - 4) % 32:
        return None
    return (offset - 4) // 32


def mask_operand(value: SymbolicValue) -> Optional[Tuple[SymbolicValue, int]]:
    """Split ``and(x, C)`` (either operand order) into ``(x, C)``."""
    if not is_op(value, "and"):
        return None
    a, b = value.operands
    if isinstance(b, Concrete) and not isinstance(a, Concrete):
        return a, b.value
    if isinstance(a, Concrete) and not isinstance(b, Concrete):
        return b, a.value
    return None


def low_mask_bits(mask: int) -> Optional[int]:
    """Width of a ``2**n - 1`` mask whose width is a whole number of bytes."""
    bits = mask.bit_length()
    if 0 < bits < 256 and bits % 8 == 0 and mask == (1 << bits) - 1:
        return bits
    return None


def high_mask_bytes(mask: int) -> Optional[int]:
    """Byte count of a mask keeping the top ``n`` bytes of a word."""
    inverted = ~mask & UINT256_MAX
    bits = low_mask_bits(inverted) if inverted else None
    if bits is None:
        return None
    return (256 - bits) // 8


def is_selector_expression(value: SymbolicValue) -> bool:
    """
    Whether ``value`` extracts the 4-byte function selector from calldata.

    Recognizes ``shr(224, calldataload(0))`` and the older
    ``div(calldataload(0), 2**224)``, each optionally masked with 0xffffffff.
    """
    masked = mask_operand(value)
    if masked is not None:
        if masked[1] != SELECTOR_MASK:
            return False
        value = masked[0]
    if is_op(value, "shr"):
        shift, word = value.operands
        return value_of(shift) == SELECTOR_SHIFT and calldata_offset(word) == 0
    if is_op(value, "div"):
        word, divisor = value.operands
        return value_of(divisor) == 1 << SELECTOR_SHIFT and calldata_offset(word) == 0
    return False


# Storage


@lru_cache(maxsize=1)
def _array_bases() -> Dict[int, int]:
    # keccak(slot) -> slot for the slots dynamic arrays are likely declared in
    return {
        int.from_bytes(keccak(slot.to_bytes(32, "big")), "big"): slot
        for slot in range(ARRAY_SLOTS)
    }


def _slot_path(slot: SymbolicValue, render: Render, prefix: str) -> Optional[str]:
    constant = value_of(slot)
    if constant is not None:
        if constant <= MAX_NAMED_SLOT:
            return f"{prefix}_{constant}"
        base = _array_bases().get(constant)
        if base is not None:
            return f"{prefix}_{base}[0]"
        return None

    if is_op(slot, "sha3") and len(slot.operands) == 2:
        key, base = slot.operands
        parent = _slot_path(base, render, prefix)
        if parent is not None:
            return f"{parent}[{render(key)}]"
        return None

    if is_op(slot, "add"):
        a, b = slot.operands
        for base, offset in ((a, b), (b, a)):
            array = _array_bases().get(value_of(base)) if isinstance(base, Concrete) else None
            if array is not None:
                return f"{prefix}_{array}[{render(offset)}]"
            field = value_of(offset)
            if is_op(base, "sha3") and field is not None and field <= MAX_NAMED_SLOT:
                parent = _slot_path(base, render, prefix)
                if parent is not None:
                    return f"{parent}.field{field}"
    return None


def storage_location(slot: SymbolicValue, render: Render, transient: bool = False) -> str:
    """
    Name the storage location addressed by ``slot``.

    ``stor_3`` for a plain slot, ``stor_3[key]`` for a mapping entry built
    from ``sha3(key, 3)`` (nested mappings chain), ``stor_3[i]`` for an
    element of a dynamic array declared in slot 3 and ``.fieldN`` for struct
    members reached by adding a small constant to a mapping entry. Anything
    else is spelled ``storage[slot]``.
    """
    path = _slot_path(slot, render, "tstor" if transient else "stor")
    if path is not None:
        return path
    return f"{'transient' if transient else 'storage'}[{render(slot)}]"


def _shifted_right(value: SymbolicValue) -> Tuple[SymbolicValue, int]:
    if is_op(value, "shr") and isinstance(value.operands[0], Concrete):
        return value.operands[1], value.operands[0].value
    if is_op(value, "div"):
        divisor = value_of(value.operands[1])
        if divisor and divisor & (divisor - 1) == 0:
            return value.operands[0], divisor.bit_length() - 1
    return value, 0


def match_packed_read(value: SymbolicValue) -> Optional[Tuple[Expression, int, int]]:
    """
    Match a read of a packed storage field: ``and(shr(k, sload(S)), 2**n - 1)``.

    Returns:
        ``(sload expression, first byte, last byte)`` or None. Fields at
        byte offset 0 are left to the cast renderer.
    """
    masked = mask_operand(value)
    if masked is None:
        return None
    inner, mask = masked
    bits = low_mask_bits(mask)
    if bits is None:
        return None
    word, shift = _shifted_right(inner)
    if not is_op(word, "sload", "tload") or shift == 0 or shift % 8 or shift + bits > 256:
        return None
    return word, shift // 8, (shift + bits) // 8 - 1


def _strip_field(value: SymbolicValue, lo_bit: int, width: int) -> SymbolicValue:
    field_mask = ((1 << width) - 1) << lo_bit
    masked = mask_operand(value)
    if masked is not None and masked[1] in (field_mask, (1 << width) - 1):
        value = masked[0]
    if lo_bit:
        if is_op(value, "shl") and value_of(value.operands[0]) == lo_bit:
            value = value.operands[1]
        elif is_op(value, "mul"):
            a, b = value.operands
            if value_of(b) == 1 << lo_bit:
                value = a
            elif value_of(a) == 1 << lo_bit:
                value = b
    masked = mask_operand(value)
    if masked is not None and masked[1] == (1 << width) - 1:
        value = masked[0]
    return value


def match_packed_write(write: StorageWrite) -> Optional[Tuple[int, int, SymbolicValue]]:
    """
    Match the read-modify-write solc emits for a packed field:
    ``sstore(S, or(and(sload(S), C), shl(k, v)))``, ``C`` clearing one byte range.

    Returns:
        ``(first byte, last byte, stored value)`` or None
    """
    if not is_op(write.value, "or"):
        return None
    a, b = write.value.operands
    for kept, inserted in ((a, b), (b, a)):
        masked = mask_operand(kept)
        if masked is None:
            continue
        old, clear = masked
        if not is_op(old, "sload", "tload") or old.operands[0] != write.slot:
            continue
        field = ~clear & UINT256_MAX
        if not field:
            continue
        lo_bit = (field & -field).bit_length() - 1
        width = (field >> lo_bit).bit_length()
        if field >> lo_bit != (1 << width) - 1 or lo_bit % 8 or width % 8:
            continue
        return lo_bit // 8, (lo_bit + width) // 8 - 1, _strip_field(inserted, lo_bit, width)
    return None


# Memory


def consumed_ranges(summaries: Iterable[BlockSummary]) -> List[Tuple[int, int]]:
    """Concrete memory ranges read back by return/revert data, logs and call arguments."""
    ranges = []

    def add(offset, size):
        start, length = value_of(offset), value_of(size)
        if start is not None and length:
            ranges.append((start, start + length))

    for summary in summaries:
        if summary.halt is not None and summary.halt.offset is not None:
            add(summary.halt.offset, summary.halt.size)
        for effect in summary.effects:
            if isinstance(effect, LogRecord):
                add(effect.offset, effect.size)
            elif isinstance(effect, CallRecord):
                add(effect.args_offset, effect.args_size)
    return sorted(set(ranges))


def is_bookkeeping_write(write: MemoryWrite, consumed: Iterable[Tuple[int, int]]) -> bool:
    """
    Memory writes that only exist to build something else: the reserved area
    below 0x80 (scratch space for hashing, the free memory pointer) and
    payloads that are rendered where they are consumed.
    """
    offset = value_of(write.offset)
    if offset is None:
        return False
    if offset < RESERVED_MEMORY_END:
        return True
    return any(start <= offset < end for start, end in consumed)


def memory_span(start: SymbolicValue, size: SymbolicValue, render: Render) -> str:
    lo, length = value_of(start), value_of(size)
    if lo is not None and length is not None:
        return f"{render(start)}:{render(Concrete(lo + length))}"
    first = render(start)
    return f"{first}:{first} + {render(size)}"


def copy_assignment(copy: MemoryCopy, render: Render) -> Tuple[str, str]:
    """``memory[a:a+n] = msg.data[b:b+n]`` for a CALLDATACOPY-family effect."""
    target = f"memory[{memory_span(copy.dest, copy.size, render)}]"
    if copy.source == "extcode":
        source = f"extcode({render(copy.address)})"
    else:
        source = COPY_SOURCES[copy.source]
    return target, f"{source}[{memory_span(copy.offset, copy.size, render)}]"


def _loop_counter(condition: SymbolicValue, taken: bool) -> Tuple[SymbolicValue, SymbolicValue]:
    norm = PathConstraint(condition, taken).normalized()
    if norm.taken:
        if is_op(norm.condition, "lt"):
            counter, bound = norm.condition.operands
        elif is_op(norm.condition, "gt"):
            bound, counter = norm.condition.operands
        else:
            raise PatternMismatch(f"loop condition {condition} is not a counter bound")
        if is_op(counter, "phi") and counter.provenance.kind == LOOP_CARRIED:
            return counter, bound
    raise PatternMismatch(f"loop condition {condition} is not a counter bound")


def _indexed_base(offset: SymbolicValue, counter: SymbolicValue) -> Optional[SymbolicValue]:
    if offset == counter:
        return ZERO
    if is_op(offset, "add"):
        a, b = offset.operands
        if a == counter:
            return b
        if b == counter:
            return a
    return None


def copy_loop_assignment(
    condition: SymbolicValue,
    taken: bool,
    writes: Iterable[MemoryWrite],
    render: Render,
) -> Tuple[str, str]:
    """
    Collapse a word-by-word copy loop into one slice assignment.

    The loop must continue while ``counter < bound`` and its body must store
    ``calldataload(src + counter)`` or ``mload(src + counter)`` at
    ``dest + counter``.

    Raises:
        PatternMismatch: when the loop has any other shape
    """
    counter, bound = _loop_counter(condition, taken)
    for write in writes:
        dest = _indexed_base(write.offset, counter)
        if dest is None or not is_op(write.value, "calldataload", "mload"):
            continue
        source = _indexed_base(write.value.operands[0], counter)
        if source is None:
            continue
        kind = "msg.data" if write.value.op == "calldataload" else "memory"
        return (
            f"memory[{memory_span(dest, bound, render)}]",
            f"{kind}[{memory_span(source, bound, render)}]",
        )
    raise PatternMismatch("loop body is not a memory copy")


# Revert data


def _decode_string(body: bytes) -> Optional[str]:
    if len(body) < 64:
        return None
    offset = int.from_bytes(body[:32], "big")
    if offset + 32 > len(body):
        return None
    length = int.from_bytes(body[offset : offset + 32], "big")
    data = body[offset + 32 : offset + 32 + length]
    if len(data) != length:
        return None
    return data.decode("utf-8", errors="replace")


def decode_revert(halt: HaltRecord) -> Optional[str]:
    """
    Decode a revert payload held in concrete memory.

    Returns:
        A quoted message for ``Error(string)``, ``Panic(0x..)`` for panics,
        or None when the payload is not recognized
    """
    raw = halt.raw
    if raw is None or len(raw) < 4:
        return None
    selector = int.from_bytes(raw[:4], "big")
    if selector == ERROR_SELECTOR:
        message = _decode_string(raw[4:])
        return json.dumps(message) if message is not None else None
    if selector == PANIC_SELECTOR and len(raw) >= 36:
        return f"Panic({int.from_bytes(raw[4:36], 'big'):#x})"
    return None
