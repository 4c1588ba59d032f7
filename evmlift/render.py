"""
Text rendering: symbolic values to expressions and statement trees to
Solidity-like pseudo-source.
"""
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from .analysis import idioms
from .core.function import ArgumentInfo, FunctionRegion
from .core.statements import (
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
from .core.symbolic import (
    CALL_RESULT,
    DYNAMIC_ADDRESS,
    ENVIRONMENT,
    LOOP_CARRIED,
    UNKNOWN,
    Concrete,
    Expression,
    SymbolicValue,
    is_op,
    walk,
)
from .warnings import AnalysisWarning, WarningKind

logger = structlog.get_logger()

INFIX = {
    "add": "+",
    "sub": "-",
    "mul": "*",
    "div": "/",
    "mod": "%",
    "exp": "**",
    "and": "&",
    "or": "|",
    "xor": "^",
    "lt": "<",
    "gt": ">",
    "eq": "==",
}
NEGATED = {"lt": ">=", "gt": "<=", "eq": "!="}
BOOLEAN_OPS = {"lt", "gt", "slt", "sgt", "eq", "iszero"}
CALL_KINDS = {"call", "callcode", "delegatecall", "staticcall"}
ADDRESS_QUERIES = {"balance": "balance", "extcodesize": "code.length", "extcodehash": "codehash"}
# Environment values that already have type address
ADDRESS_VALUES = {"address", "caller", "origin", "coinbase"}

# Shorter repeated sub-expressions are never hoisted
MIN_HOISTED_LENGTH = 16
INDENT = "    "


def constant(value: int) -> str:
    return str(value) if value < 0x100 else hex(value)


def is_boolean(value: SymbolicValue) -> bool:
    return is_op(value, *BOOLEAN_OPS)


class ExpressionRenderer:
    """
    Renders expression DAGs with per-node memoisation.

    One renderer is used per region so that hoisted ``var_N`` names are
    numbered in statement order.
    """

    def __init__(
        self,
        arguments: Sequence[ArgumentInfo] = (),
        max_length: int = 240,
        region: Optional[int] = None,
    ):
        self.arguments = {arg.index: arg for arg in arguments}
        self.max_length = max_length
        self.region = region
        self.names: Dict[SymbolicValue, str] = {}
        self.warnings: List[AnalysisWarning] = []
        self._cache: Dict[SymbolicValue, Tuple[str, bool]] = {}
        self._hoisted = 0

    def render(self, value: SymbolicValue) -> str:
        return self._format(value)[0]

    def _format(self, value: SymbolicValue) -> Tuple[str, bool]:
        """Text of ``value`` and whether it can be used as an operand without parentheses."""
        name = self.names.get(value)
        if name is not None:
            return name, True
        cached = self._cache.get(value)
        if cached is None:
            cached = self._describe(value)
            self._cache[value] = cached
        return cached

    def _operand(self, value: SymbolicValue) -> str:
        text, atomic = self._format(value)
        return text if atomic else f"({text})"

    def _describe(self, value: SymbolicValue) -> Tuple[str, bool]:
        if isinstance(value, Concrete):
            return constant(value.value), True

        op, kind, detail = value.op, value.provenance.kind, value.provenance.detail
        if kind == LOOP_CARRIED:
            return f"loop_{detail}", True
        if kind == UNKNOWN:
            return f"unknown_{str(detail).rsplit(':', 1)[-1]}", True
        if op == "calldataload":
            return self._calldata(value), True
        if kind == ENVIRONMENT:
            return self._environment(value), True
        if op in ("sload", "tload"):
            return idioms.storage_location(value.operands[0], self.render, transient=op == "tload"), True
        if op == "mload":
            return f"memory[{self.render(value.operands[0])}]", True
        if op == "sha3":
            if kind == DYNAMIC_ADDRESS:
                offset, size = value.operands
                return f"keccak256(memory[{idioms.memory_span(offset, size, self.render)}])", True
            return f"keccak256({', '.join(self.render(o) for o in value.operands)})", True
        if kind == CALL_RESULT:
            return self._call_result(value), True
        return self._derived(value)

    def _calldata(self, value: Expression) -> str:
        index = idioms.argument_index(value)
        if index is not None:
            arg = self.arguments.get(index)
            return arg.name if arg is not None else f"arg{index}"
        offset = value.operands[0]
        return f"msg.data[{idioms.memory_span(offset, Concrete(32), self.render)}]"

    def _environment(self, value: Expression) -> str:
        if not value.operands or value.op in ("msize", "gas"):
            return str(value.provenance.detail)
        argument = self.render(value.operands[0])
        if value.op in ADDRESS_QUERIES:
            if not _is_address(value.operands[0]):
                argument = f"address({argument})"
            return f"{argument}.{ADDRESS_QUERIES[value.op]}"
        return f"{value.op}({argument})"

    def _call_result(self, value: Expression) -> str:
        pc = value.provenance.detail
        if value.op in CALL_KINDS:
            return f"ext_call_{pc:x}.success"
        if value.op in ("create", "create2"):
            return f"new_contract_{pc:x}"
        offset = value.operands[0]
        if isinstance(pc, int) and isinstance(offset, Concrete):
            return f"ext_call_{pc:x}.ret[{offset.value // 32}]"
        return f"returndata[{idioms.memory_span(offset, Concrete(32), self.render)}]"

    def _derived(self, value: Expression) -> Tuple[str, bool]:
        op, operands = value.op, value.operands
        if idioms.is_selector_expression(value):
            return "msg.sig", True

        if op == "and":
            packed = idioms.match_packed_read(value)
            if packed is not None:
                word, lo, hi = packed
                return f"{self.render(word)}_{lo}_{hi}", True
            masked = idioms.mask_operand(value)
            if masked is not None:
                cast = _cast_name(masked[1])
                if cast is not None:
                    return f"{cast}({self.render(masked[0])})", True

        if op == "signextend" and isinstance(operands[0], Concrete) and operands[0].value < 32:
            return f"int{8 * (operands[0].value + 1)}({self.render(operands[1])})", True

        if op == "iszero":
            return self._negation(operands[0])

        if op == "not":
            return f"~{self._operand(operands[0])}", True

        if op in ("shl", "shr") and len(operands) == 2:
            shift, word = operands
            symbol = "<<" if op == "shl" else ">>"
            return f"{self._operand(word)} {symbol} {self._operand(shift)}", False

        if op in INFIX and len(operands) == 2:
            a, b = operands
            return f"{self._operand(a)} {INFIX[op]} {self._operand(b)}", False

        return f"{op}({', '.join(self.render(o) for o in operands)})", True

    def _negation(self, value: SymbolicValue) -> Tuple[str, bool]:
        if is_op(value, *NEGATED) and value not in self.names:
            a, b = value.operands
            return f"{self._operand(a)} {NEGATED[value.op]} {self._operand(b)}", False
        if is_op(value, "iszero"):
            inner = value.operands[0]
            if is_boolean(inner):
                return self._format(inner)
            return f"bool({self.render(inner)})", True
        if is_boolean(value):
            return f"!{self._operand(value)}", True
        return f"{self._operand(value)} == 0", False

    def condition(
        self, value: SymbolicValue, taken: bool = True, pc: Optional[int] = None
    ) -> Tuple[List[Assignment], str]:
        """Render a branch condition; ``taken=False`` renders its negation."""
        if not taken:
            if is_op(value, "iszero") and is_boolean(value.operands[0]):
                value = value.operands[0]
            else:
                value = Expression("iszero", (value,))
        return self.expression(value, pc)

    def expression(self, value: SymbolicValue, pc: Optional[int] = None) -> Tuple[List[Assignment], str]:
        """
        Render ``value`` within the length budget.

        Returns:
            ``(hoisted assignments, text)``. Sub-expressions used more than
            once are hoisted into ``var_N`` assignments when the text is too
            long; text still over budget is truncated with a warning.
        """
        text = self.render(value)
        if len(text) <= self.max_length:
            return [], text

        hoisted: List[Assignment] = []
        for node in self._shared_subexpressions(value):
            node_text = self.render(node)
            if len(node_text) < MIN_HOISTED_LENGTH:
                continue
            name = f"var_{self._hoisted}"
            self._hoisted += 1
            hoisted.append(Assignment(name, self.fit(node_text, pc), pc))
            self.names[node] = name
            self._cache.clear()

        text = self.render(value)
        if len(text) > self.max_length:
            text = self.fit(text, pc)
        return hoisted, text

    def _shared_subexpressions(self, value: SymbolicValue) -> List[Expression]:
        # Nodes referenced by more than one parent, innermost first
        order: Dict[SymbolicValue, int] = {}
        parents: Dict[SymbolicValue, int] = {}
        for index, node in enumerate(walk(value)):
            order.setdefault(node, index)
            if isinstance(node, Expression):
                for operand in set(node.operands):
                    if isinstance(operand, Expression):
                        parents[operand] = parents.get(operand, 0) + 1
        shared = [node for node, count in parents.items() if count > 1 and node not in self.names]
        return sorted(shared, key=lambda node: (node.depth, order.get(node, 0)))

    def fit(self, text: str, pc: Optional[int]) -> str:
        if len(text) <= self.max_length:
            return text
        logger.debug("Truncating expression", length=len(text), pc=pc)
        self.warnings.append(
            AnalysisWarning(
                WarningKind.BUDGET_EXCEEDED,
                f"expression of {len(text)} characters truncated",
                pc=pc,
                region=self.region,
            )
        )
        return text[: max(self.max_length - 3, 1)] + "..."


def _is_address(value: SymbolicValue) -> bool:
    if isinstance(value, Expression) and value.provenance.kind == ENVIRONMENT and value.op in ADDRESS_VALUES:
        return True
    masked = idioms.mask_operand(value)
    return masked is not None and masked[1] == idioms.ADDRESS_MASK


def _cast_name(mask: int) -> Optional[str]:
    if mask == idioms.ADDRESS_MASK:
        return "address"
    bits = idioms.low_mask_bits(mask)
    if bits is not None:
        return f"uint{bits}"
    size = idioms.high_mask_bytes(mask)
    if size:
        return f"bytes{size}"
    return None


# Statements


def _call_text(stmt: Call) -> str:
    arguments = ", ".join(stmt.arguments)
    if stmt.kind_name in ("create", "create2"):
        text = f"{stmt.kind_name}({stmt.value or 0}, {arguments})" if arguments else f"{stmt.kind_name}({stmt.value or 0})"
    else:
        function = f"Unresolved_{stmt.selector:08x}" if stmt.selector is not None else "call"
        receiver = stmt.target if stmt.kind_name == "call" else f"{stmt.kind_name}({stmt.target})"
        options = f"{{value: {stmt.value}}}" if stmt.value not in (None, "0") else ""
        text = f"{receiver}.{function}{options}({arguments})"
    return f"{stmt.result} = {text};" if stmt.result else f"{text};"


def format_statement(stmt: Statement, depth: int = 0) -> List[str]:
    pad = INDENT * depth
    if isinstance(stmt, Assignment):
        return [f"{pad}{stmt.target} = {stmt.value};"]
    if isinstance(stmt, Conditional):
        lines = [f"{pad}if ({stmt.condition}) {{"]
        lines.extend(format_statements(stmt.then_body, depth + 1))
        if stmt.else_body:
            lines.append(f"{pad}}} else {{")
            lines.extend(format_statements(stmt.else_body, depth + 1))
        lines.append(f"{pad}}}")
        return lines
    if isinstance(stmt, Loop):
        body = format_statements(stmt.body, depth + 1)
        if stmt.post_test:
            return [f"{pad}do {{", *body, f"{pad}}} while ({stmt.condition});"]
        return [f"{pad}while ({stmt.condition or 'true'}) {{", *body, f"{pad}}}"]
    if isinstance(stmt, Call):
        return [pad + _call_text(stmt)]
    if isinstance(stmt, Return):
        if not stmt.values:
            return [f"{pad}return;"]
        if len(stmt.values) == 1:
            return [f"{pad}return {stmt.values[0]};"]
        return [f"{pad}return ({', '.join(stmt.values)});"]
    if isinstance(stmt, Revert):
        if stmt.reason is not None:
            return [f"{pad}revert({stmt.reason});"]
        return [f"{pad}revert({', '.join(stmt.data)});"]
    if isinstance(stmt, Require):
        if stmt.reason is not None:
            return [f"{pad}require({stmt.condition}, {stmt.reason});"]
        return [f"{pad}require({stmt.condition});"]
    if isinstance(stmt, Emit):
        return [f"{pad}emit {stmt.event}({', '.join(stmt.arguments)});"]
    if isinstance(stmt, SelfDestruct):
        return [f"{pad}selfdestruct({stmt.beneficiary});"]
    if isinstance(stmt, Raw):
        # Labels carry no semicolon
        return [f"{pad}{stmt.text}" if stmt.text.endswith(":") else f"{pad}{stmt.text};"]
    raise TypeError(f"unknown statement {stmt!r}")


def format_statements(statements: Sequence[Statement], depth: int = 0) -> List[str]:
    lines: List[str] = []
    for stmt in statements:
        lines.extend(format_statement(stmt, depth))
    return lines


def render_region(region: FunctionRegion, depth: int = 1) -> List[str]:
    pad = INDENT * depth
    if region.is_fallback:
        header = f"{pad}fallback() external payable {{"
    else:
        parameters = ", ".join(f"{arg.type_hint} {arg.name}" for arg in region.arguments)
        header = f"{pad}function {region.name}({parameters}) public {{"
    lines = [header]
    for warning in region.warnings:
        lines.append(f"{pad}{INDENT}// {warning}")
    lines.extend(format_statements(region.statements, depth + 1))
    lines.append(f"{pad}}}")
    return lines


def render_source(result, contract_name: str = "DecompiledContract") -> str:
    """Print a ``DecompilationResult`` as Solidity-like pseudo-source."""
    lines = [f"contract {contract_name} {{"]
    for index, region in enumerate(result.regions):
        if index:
            lines.append("")
        lines.extend(render_region(region))
    lines.append("}")
    return "\n".join(lines) + "\n"
