# core/symbolic.py
"""
Symbolic values for the EVM executor.

A value is either :class:`Concrete` or an :class:`Expression` over other
values. Values are immutable and shared by reference between stack slots,
memory entries and forked states, so a program's expressions form a DAG
without any copying. Structural hashes are cached on construction, which keeps
equality checks and dictionary lookups cheap on deep graphs.
"""
from dataclasses import dataclass, field
from itertools import product
from typing import Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple, Union

import structlog

from ..utils.evm_ops import CONCRETE_OPS, UINT256_MAX

logger = structlog.get_logger()

# Provenance kinds
CALLDATA = "calldata"
STORAGE = "storage"
TRANSIENT = "transient-storage"
MEMORY = "memory"
DYNAMIC_ADDRESS = "dynamic-address"
ENVIRONMENT = "environment"
CALL_RESULT = "call-result"
LOOP_CARRIED = "loop-carried"
DERIVED = "derived"
UNKNOWN = "unknown"

# Deeper expressions are replaced by opaque unknowns so that rendering and
# translation never recurse without bound.
MAX_EXPRESSION_DEPTH = 128


@dataclass(frozen=True)
class Provenance:
    kind: str
    detail: Union[int, str, None] = None

    def __str__(self) -> str:
        if self.detail is None:
            return self.kind
        if isinstance(self.detail, int):
            return f"{self.kind}:{self.detail:#x}"
        return f"{self.kind}:{self.detail}"


DERIVED_PROVENANCE = Provenance(DERIVED)


class SymbolicValue:
    """Common interface of concrete words and expressions."""

    __slots__ = ()

    @property
    def is_concrete(self) -> bool:
        return False

    @property
    def is_symbolic(self) -> bool:
        return not self.is_concrete

    def get_concrete_value(self) -> Optional[int]:
        return None


@dataclass(frozen=True)
class Concrete(SymbolicValue):
    value: int

    def __post_init__(self):
        if not 0 <= self.value <= UINT256_MAX:
            object.__setattr__(self, "value", self.value & UINT256_MAX)

    @property
    def is_concrete(self) -> bool:
        return True

    @property
    def depth(self) -> int:
        return 0

    def get_concrete_value(self) -> Optional[int]:
        return self.value

    def __str__(self) -> str:
        return hex(self.value)


@dataclass(frozen=True, eq=False)
class Expression(SymbolicValue):
    op: str
    operands: Tuple[SymbolicValue, ...] = ()
    provenance: Provenance = DERIVED_PROVENANCE
    _hash: int = field(init=False, repr=False, compare=False)
    depth: int = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_hash", hash((self.op, self.operands, self.provenance)))
        object.__setattr__(
            self, "depth", 1 + max((o.depth for o in self.operands), default=0)
        )

    def __hash__(self) -> int:
        return self._hash

    def __eq__(self, other) -> bool:
        if self is other:
            return True
        if not isinstance(other, Expression) or self._hash != other._hash:
            return False
        return (
            self.op == other.op
            and self.provenance == other.provenance
            and self.operands == other.operands
        )

    def __str__(self) -> str:
        if not self.operands:
            return f"{self.op}<{self.provenance}>"
        return f"{self.op}({', '.join(str(o) for o in self.operands)})"


ZERO = Concrete(0)
ONE = Concrete(1)


def concrete(value: int) -> Concrete:
    return Concrete(value & UINT256_MAX)


def value_of(value: SymbolicValue) -> Optional[int]:
    """Concrete integer of ``value`` or None."""
    return value.value if isinstance(value, Concrete) else None


def is_op(value: SymbolicValue, *ops: str) -> bool:
    return isinstance(value, Expression) and value.op in ops


def input_value(op: str, operands: Sequence[SymbolicValue], kind: str, detail=None) -> Expression:
    """A value that enters the program from outside (calldata, storage, environment...)."""
    return Expression(op, tuple(operands), Provenance(kind, detail))


def loop_carried(candidates: Sequence[SymbolicValue], head_pc: int, slot: str) -> Expression:
    """A value merged at a loop head from the values observed on each iteration."""
    return Expression("phi", tuple(candidates), Provenance(LOOP_CARRIED, f"{head_pc:x}_{slot}"))


def _opaque(op: str, operands: Tuple[SymbolicValue, ...]) -> Expression:
    digest = hash((op, operands)) & 0xFFFFFFFFFFFF
    logger.debug("Expression depth limit reached", op=op, digest=f"{digest:x}")
    return Expression("unknown", (), Provenance(UNKNOWN, f"depth-limit:{digest:x}"))


def fold(op: str, *operands: SymbolicValue, provenance: Optional[Provenance] = None) -> SymbolicValue:
    """
    Build the value of ``op(*operands)``.

    All-concrete operands are evaluated immediately with EVM semantics.
    Otherwise a handful of algebraic identities are applied before an
    :class:`Expression` is constructed.

    Args:
        op: Lower-case operator name (``add``, ``shr``, ``iszero`` ...)
        operands: Operands in stack order
        provenance: Origin tag for the resulting expression

    Returns:
        The folded value
    """
    if op in CONCRETE_OPS and all(isinstance(o, Concrete) for o in operands):
        return Concrete(CONCRETE_OPS[op](*(o.value for o in operands)))

    simplified = _simplify(op, operands)
    if simplified is not None:
        return simplified

    expr = Expression(op, tuple(operands), provenance or DERIVED_PROVENANCE)
    if expr.depth > MAX_EXPRESSION_DEPTH:
        return _opaque(op, expr.operands)
    return expr


def _simplify(op: str, operands: Tuple[SymbolicValue, ...]) -> Optional[SymbolicValue]:
    if len(operands) == 2:
        a, b = operands
        va, vb = value_of(a), value_of(b)
        if op == "add":
            if va == 0:
                return b
            if vb == 0:
                return a
        elif op == "sub":
            if vb == 0:
                return a
            if a == b:
                return ZERO
        elif op == "mul":
            if va == 0 or vb == 0:
                return ZERO
            if va == 1:
                return b
            if vb == 1:
                return a
        elif op == "div":
            if vb == 1:
                return a
            if va == 0 or vb == 0:
                return ZERO
        elif op == "and":
            if va == 0 or vb == 0:
                return ZERO
            if va == UINT256_MAX:
                return b
            if vb == UINT256_MAX:
                return a
            if a == b:
                return a
        elif op == "or":
            if va == 0:
                return b
            if vb == 0:
                return a
            if a == b:
                return a
        elif op == "xor":
            if va == 0:
                return b
            if vb == 0:
                return a
            if a == b:
                return ZERO
        elif op in ("shl", "shr"):
            if va == 0:
                return b
            if vb == 0 or (va is not None and va >= 256):
                return ZERO
        elif op == "eq":
            if a == b:
                return ONE
    elif len(operands) == 1:
        (a,) = operands
        if op == "iszero" and is_op(a, "iszero") and is_op(a.operands[0], "iszero"):
            return a.operands[0]
        if op == "not" and is_op(a, "not"):
            return a.operands[0]
    return None


def walk(value: SymbolicValue) -> Iterator[SymbolicValue]:
    """Yield every distinct node reachable from ``value`` once (pre-order)."""
    seen = set()
    pending = [value]
    while pending:
        node = pending.pop()
        if id(node) in seen:
            continue
        seen.add(id(node))
        yield node
        if isinstance(node, Expression):
            pending.extend(reversed(node.operands))


def candidate_values(value: SymbolicValue, limit: int = 16) -> Optional[FrozenSet[int]]:
    """
    Trace ``value`` back to the constants it can be computed from.

    Concrete leaves contribute themselves and loop-carried merges contribute
    the union of their candidates; foldable operators combine their operands'
    candidates. Any other input (calldata, storage...) makes the set unknown.

    Returns:
        The finite set of possible values, or None when it is unknown or
        larger than ``limit``
    """
    memo: Dict[int, Optional[FrozenSet[int]]] = {}

    def visit(node: SymbolicValue) -> Optional[FrozenSet[int]]:
        key = id(node)
        if key in memo:
            return memo[key]
        result: Optional[FrozenSet[int]] = None
        if isinstance(node, Concrete):
            result = frozenset((node.value,))
        elif node.op == "phi":
            merged = set()
            for operand in node.operands:
                sub = visit(operand)
                if sub is None:
                    merged = None
                    break
                merged.update(sub)
            if merged is not None and len(merged) <= limit:
                result = frozenset(merged)
        elif node.op in CONCRETE_OPS:
            sets: List[FrozenSet[int]] = []
            size = 1
            for operand in node.operands:
                sub = visit(operand)
                if sub is None:
                    break
                size *= len(sub)
                if size > limit * limit:
                    break
                sets.append(sub)
            else:
                fn = CONCRETE_OPS[node.op]
                values = frozenset(fn(*combo) for combo in product(*sets))
                if len(values) <= limit:
                    result = values
        memo[key] = result
        return result

    return visit(value)


@dataclass(frozen=True)
class PathConstraint:
    condition: SymbolicValue
    taken: bool = True

    def normalized(self) -> "PathConstraint":
        """Strip ``iszero`` wrappers, flipping ``taken`` for each one."""
        condition, taken = self.condition, self.taken
        while is_op(condition, "iszero"):
            condition = condition.operands[0]
            taken = not taken
        return PathConstraint(condition, taken)

    def negated(self) -> "PathConstraint":
        return PathConstraint(self.condition, not self.taken)

    def __str__(self) -> str:
        return f"{self.condition} {'!= 0' if self.taken else '== 0'}"


def _selector_equality(constraint: PathConstraint) -> Optional[Tuple[SymbolicValue, int]]:
    # eq(x, C) known true pins x to C
    if not constraint.taken or not is_op(constraint.condition, "eq"):
        return None
    a, b = constraint.condition.operands
    if isinstance(a, Concrete) and not isinstance(b, Concrete):
        return b, a.value
    if isinstance(b, Concrete) and not isinstance(a, Concrete):
        return a, b.value
    return None


def contradicts(existing: Sequence[PathConstraint], new: PathConstraint) -> bool:
    """
    Syntactic infeasibility check used when forking.

    A new constraint contradicts the path when it is a concrete condition with
    the wrong truth value, when the path already holds the same condition with
    the opposite outcome, or when it pins a value to a different constant than
    an earlier equality did.
    """
    norm = new.normalized()
    if isinstance(norm.condition, Concrete):
        return bool(norm.condition.value) != norm.taken
    pinned = _selector_equality(norm)
    for constraint in existing:
        other = constraint.normalized()
        if other.condition == norm.condition and other.taken != norm.taken:
            return True
        if pinned is not None:
            other_pinned = _selector_equality(other)
            if other_pinned is not None and other_pinned[0] == pinned[0] and other_pinned[1] != pinned[1]:
                return True
    return False
