"""Concrete 256-bit EVM arithmetic.

Operands follow stack order: ``evm_sub(a, b)`` computes ``a - b`` where ``a``
was on top of the stack, ``evm_shl(shift, value)`` shifts ``value``.
"""
from typing import Callable, Dict

WORD_BITS = 256
WORD_BYTES = 32
UINT256_MAX = (1 << WORD_BITS) - 1
SIGN_BIT = 1 << (WORD_BITS - 1)


def to_signed(value: int) -> int:
    """Interpret a 256-bit word as two's complement."""
    value &= UINT256_MAX
    return value - (1 << WORD_BITS) if value & SIGN_BIT else value


def to_unsigned(value: int) -> int:
    return value & UINT256_MAX


def evm_add(a: int, b: int) -> int:
    """Perform EVM addition (wrapping at 2^256)."""
    return (a + b) & UINT256_MAX


def evm_sub(a: int, b: int) -> int:
    """Perform EVM subtraction (wrapping at 2^256)."""
    return (a - b) & UINT256_MAX


def evm_mul(a: int, b: int) -> int:
    """Perform EVM multiplication (wrapping at 2^256)."""
    return (a * b) & UINT256_MAX


def evm_div(a: int, b: int) -> int:
    """Perform EVM division (x / 0 = 0)."""
    return 0 if b == 0 else a // b


def evm_sdiv(a: int, b: int) -> int:
    """Perform EVM signed division, truncating toward zero (x / 0 = 0)."""
    if b == 0:
        return 0
    sa, sb = to_signed(a), to_signed(b)
    quotient = abs(sa) // abs(sb)
    if (sa < 0) != (sb < 0):
        quotient = -quotient
    return to_unsigned(quotient)


def evm_mod(a: int, b: int) -> int:
    """Perform EVM modulo (x % 0 = 0)."""
    return 0 if b == 0 else a % b


def evm_smod(a: int, b: int) -> int:
    """Perform EVM signed modulo; the result takes the sign of the dividend."""
    if b == 0:
        return 0
    sa, sb = to_signed(a), to_signed(b)
    remainder = abs(sa) % abs(sb)
    return to_unsigned(-remainder if sa < 0 else remainder)


def evm_addmod(a: int, b: int, n: int) -> int:
    """(a + b) % n without intermediate wraparound."""
    return 0 if n == 0 else (a + b) % n


def evm_mulmod(a: int, b: int, n: int) -> int:
    """(a * b) % n without intermediate wraparound."""
    return 0 if n == 0 else (a * b) % n


def evm_exp(a: int, b: int) -> int:
    return pow(a, b, 1 << WORD_BITS)


def evm_signextend(b: int, x: int) -> int:
    """Sign-extend ``x`` from byte ``b`` (0 = lowest byte)."""
    if b >= WORD_BYTES - 1:
        return x
    bits = 8 * (b + 1)
    low = x & ((1 << bits) - 1)
    if low & (1 << (bits - 1)):
        return (low | (UINT256_MAX ^ ((1 << bits) - 1))) & UINT256_MAX
    return low


def evm_lt(a: int, b: int) -> int:
    return int(a < b)


def evm_gt(a: int, b: int) -> int:
    return int(a > b)


def evm_slt(a: int, b: int) -> int:
    return int(to_signed(a) < to_signed(b))


def evm_sgt(a: int, b: int) -> int:
    return int(to_signed(a) > to_signed(b))


def evm_eq(a: int, b: int) -> int:
    return int(a == b)


def evm_iszero(a: int) -> int:
    return int(a == 0)


def evm_and(a: int, b: int) -> int:
    return a & b


def evm_or(a: int, b: int) -> int:
    return a | b


def evm_xor(a: int, b: int) -> int:
    return a ^ b


def evm_not(a: int) -> int:
    return UINT256_MAX ^ a


def evm_byte(i: int, x: int) -> int:
    """The ``i``-th byte of ``x`` counting from the most significant end."""
    if i >= WORD_BYTES:
        return 0
    return (x >> (8 * (WORD_BYTES - 1 - i))) & 0xFF


def evm_shl(shift: int, value: int) -> int:
    if shift >= WORD_BITS:
        return 0
    return (value << shift) & UINT256_MAX


def evm_shr(shift: int, value: int) -> int:
    if shift >= WORD_BITS:
        return 0
    return value >> shift


def evm_sar(shift: int, value: int) -> int:
    signed = to_signed(value)
    if shift >= WORD_BITS:
        return UINT256_MAX if signed < 0 else 0
    return to_unsigned(signed >> shift)


# Lower-case operator name -> concrete implementation. Every operator listed
# here is folded as soon as all of its operands are concrete.
CONCRETE_OPS: Dict[str, Callable[..., int]] = {
    "add": evm_add,
    "sub": evm_sub,
    "mul": evm_mul,
    "div": evm_div,
    "sdiv": evm_sdiv,
    "mod": evm_mod,
    "smod": evm_smod,
    "addmod": evm_addmod,
    "mulmod": evm_mulmod,
    "exp": evm_exp,
    "signextend": evm_signextend,
    "lt": evm_lt,
    "gt": evm_gt,
    "slt": evm_slt,
    "sgt": evm_sgt,
    "eq": evm_eq,
    "iszero": evm_iszero,
    "and": evm_and,
    "or": evm_or,
    "xor": evm_xor,
    "not": evm_not,
    "byte": evm_byte,
    "shl": evm_shl,
    "shr": evm_shr,
    "sar": evm_sar,
}

# Operators whose result is always 0 or 1
BOOLEAN_OPS = frozenset({"lt", "gt", "slt", "sgt", "eq", "iszero"})
