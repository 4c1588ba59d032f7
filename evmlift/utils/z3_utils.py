"""Translation of symbolic values into z3 bit-vector terms."""
from typing import Dict, List, Optional, Sequence

import structlog
import z3

from ..core.symbolic import DERIVED, Concrete, Expression, PathConstraint, SymbolicValue

logger = structlog.get_logger()

WORD = 256


def _bool_to_word(cond: z3.BoolRef) -> z3.BitVecRef:
    return z3.If(cond, z3.BitVecVal(1, WORD), z3.BitVecVal(0, WORD))


class Z3Translator:
    """
    Converts an expression DAG to z3, one shared term per distinct node.

    Inputs the solver cannot interpret (calldata, storage, hashes, call
    results...) become free 256-bit variables named after the node; structurally
    equal nodes get the same variable. Loop-carried merges become variables
    constrained to their candidates, collected in ``side_constraints``.
    """

    def __init__(self):
        self._terms: Dict[SymbolicValue, z3.BitVecRef] = {}
        self.side_constraints: List[z3.BoolRef] = []
        self._counter = 0

    def _fresh(self, node: Expression) -> z3.BitVecRef:
        self._counter += 1
        return z3.BitVec(f"{node.op}_{self._counter}", WORD)

    def translate(self, value: SymbolicValue) -> z3.BitVecRef:
        if isinstance(value, Concrete):
            return z3.BitVecVal(value.value, WORD)
        term = self._terms.get(value)
        if term is None:
            term = self._translate(value)
            self._terms[value] = term
        return term

    def _translate(self, node: Expression) -> z3.BitVecRef:
        op = node.op
        if op == "phi":
            var = self._fresh(node)
            options = [var == self.translate(o) for o in node.operands]
            self.side_constraints.append(z3.Or(*options) if len(options) > 1 else options[0])
            return var
        builder = _BUILDERS.get(op)
        if builder is None or node.provenance.kind != DERIVED:
            return self._fresh(node)
        args = [self.translate(o) for o in node.operands]
        term = builder(node, args)
        return term if term is not None else self._fresh(node)

    def constraint(self, constraint: PathConstraint) -> z3.BoolRef:
        cond = self.translate(constraint.condition) != 0
        return cond if constraint.taken else z3.Not(cond)


def _signextend(node: Expression, args) -> Optional[z3.BitVecRef]:
    b = node.operands[0]
    if not isinstance(b, Concrete):
        return None
    if b.value >= 31:
        return args[1]
    bits = 8 * (b.value + 1)
    return z3.SignExt(WORD - bits, z3.Extract(bits - 1, 0, args[1]))


def _byte(node: Expression, args) -> z3.BitVecRef:
    i, x = args
    shifted = z3.LShR(x, (31 - i) * 8) & 0xFF
    return z3.If(z3.ULT(i, 32), shifted, z3.BitVecVal(0, WORD))


def _exp(node: Expression, args) -> Optional[z3.BitVecRef]:
    base, exponent = node.operands
    if isinstance(exponent, Concrete) and exponent.value <= 8:
        term = z3.BitVecVal(1, WORD)
        for _ in range(exponent.value):
            term = term * args[0]
        return term
    if isinstance(base, Concrete) and base.value == 2:
        return z3.If(z3.ULT(args[1], WORD), z3.BitVecVal(1, WORD) << args[1], z3.BitVecVal(0, WORD))
    return None


def _wide_mod(op):
    def build(node, args):
        a, b, n = (z3.ZeroExt(WORD, x) for x in args)
        combined = a + b if op == "add" else a * b
        return z3.If(args[2] == 0, z3.BitVecVal(0, WORD), z3.Extract(WORD - 1, 0, z3.URem(combined, n)))

    return build


_ZERO = z3.BitVecVal(0, WORD)

_BUILDERS = {
    "add": lambda n, a: a[0] + a[1],
    "sub": lambda n, a: a[0] - a[1],
    "mul": lambda n, a: a[0] * a[1],
    "div": lambda n, a: z3.If(a[1] == 0, _ZERO, z3.UDiv(a[0], a[1])),
    "sdiv": lambda n, a: z3.If(a[1] == 0, _ZERO, a[0] / a[1]),
    "mod": lambda n, a: z3.If(a[1] == 0, _ZERO, z3.URem(a[0], a[1])),
    "smod": lambda n, a: z3.If(a[1] == 0, _ZERO, z3.SRem(a[0], a[1])),
    "addmod": _wide_mod("add"),
    "mulmod": _wide_mod("mul"),
    "exp": _exp,
    "signextend": _signextend,
    "lt": lambda n, a: _bool_to_word(z3.ULT(a[0], a[1])),
    "gt": lambda n, a: _bool_to_word(z3.UGT(a[0], a[1])),
    "slt": lambda n, a: _bool_to_word(a[0] < a[1]),
    "sgt": lambda n, a: _bool_to_word(a[0] > a[1]),
    "eq": lambda n, a: _bool_to_word(a[0] == a[1]),
    "iszero": lambda n, a: _bool_to_word(a[0] == 0),
    "and": lambda n, a: a[0] & a[1],
    "or": lambda n, a: a[0] | a[1],
    "xor": lambda n, a: a[0] ^ a[1],
    "not": lambda n, a: ~a[0],
    "byte": _byte,
    "shl": lambda n, a: z3.If(z3.ULT(a[0], WORD), a[1] << a[0], _ZERO),
    "shr": lambda n, a: z3.If(z3.ULT(a[0], WORD), z3.LShR(a[1], a[0]), _ZERO),
    "sar": lambda n, a: a[1] >> a[0],
}


def _solver(timeout_ms: int) -> z3.Solver:
    solver = z3.Solver()
    solver.set("timeout", timeout_ms)
    return solver


def constraints_feasible(constraints: Sequence[PathConstraint], timeout_ms: int = 2000) -> bool:
    """
    Check path constraints with z3.

    Returns:
        False only when z3 proves the constraints unsatisfiable
    """
    translator = Z3Translator()
    solver = _solver(timeout_ms)
    for constraint in constraints:
        solver.add(translator.constraint(constraint))
    solver.add(*translator.side_constraints)
    result = solver.check()
    logger.debug("Satisfiability check", constraints=len(constraints), result=str(result))
    return result != z3.unsat


def enumerate_values(
    value: SymbolicValue,
    constraints: Sequence[PathConstraint],
    limit: int = 16,
    timeout_ms: int = 2000,
) -> Optional[List[int]]:
    """
    Enumerate every model of ``value`` under ``constraints``.

    Returns:
        The sorted values when z3 proves there are at most ``limit`` of them,
        otherwise None
    """
    translator = Z3Translator()
    target = translator.translate(value)
    solver = _solver(timeout_ms)
    for constraint in constraints:
        solver.add(translator.constraint(constraint))
    solver.add(*translator.side_constraints)

    found: List[int] = []
    try:
        while len(found) <= limit:
            result = solver.check()
            if result == z3.unsat:
                return sorted(found)
            if result != z3.sat:
                logger.debug("Model enumeration gave up", result=str(result), found=len(found))
                return None
            model_value = solver.model().eval(target, model_completion=True).as_long()
            found.append(model_value)
            solver.add(target != model_value)
    except z3.Z3Exception as e:
        logger.warning("Model enumeration failed", error=str(e))
    return None
