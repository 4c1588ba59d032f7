"""
Pseudo-statements produced by the lifter.

Statements hold already-rendered text, so two lifts of the same graph compare
equal field by field.
"""
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Tuple


class Statement:
    """Base class; ``to_dict`` serializes the statement tree."""

    @property
    def kind(self) -> str:
        return type(self).__name__

    def children(self) -> Tuple["Statement", ...]:
        return ()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, tuple) and value and isinstance(value[0], Statement):
                value = [child.to_dict() for child in value]
            elif isinstance(value, tuple):
                value = list(value)
            data[f.name] = value
        return data


@dataclass(frozen=True)
class Assignment(Statement):
    target: str
    value: str
    pc: Optional[int] = None


@dataclass(frozen=True)
class Conditional(Statement):
    condition: str
    then_body: Tuple[Statement, ...] = ()
    else_body: Tuple[Statement, ...] = ()
    pc: Optional[int] = None

    def children(self):
        return self.then_body + self.else_body


@dataclass(frozen=True)
class Loop(Statement):
    condition: Optional[str]  # None renders as while (true)
    body: Tuple[Statement, ...] = ()
    post_test: bool = False
    pc: Optional[int] = None

    def children(self):
        return self.body


@dataclass(frozen=True)
class Call(Statement):
    kind_name: str  # call, staticcall, delegatecall, callcode, create, create2
    target: Optional[str]
    arguments: Tuple[str, ...] = ()
    value: Optional[str] = None
    selector: Optional[int] = None
    result: Optional[str] = None
    pc: Optional[int] = None


@dataclass(frozen=True)
class Return(Statement):
    values: Tuple[str, ...] = ()
    pc: Optional[int] = None


@dataclass(frozen=True)
class Revert(Statement):
    reason: Optional[str] = None
    data: Tuple[str, ...] = ()
    pc: Optional[int] = None


@dataclass(frozen=True)
class Require(Statement):
    condition: str
    reason: Optional[str] = None
    pc: Optional[int] = None


@dataclass(frozen=True)
class Emit(Statement):
    event: str
    arguments: Tuple[str, ...] = ()
    pc: Optional[int] = None


@dataclass(frozen=True)
class SelfDestruct(Statement):
    beneficiary: str
    pc: Optional[int] = None


@dataclass(frozen=True)
class Raw(Statement):
    text: str
    pc: Optional[int] = None


def count_statements(statements) -> int:
    total = 0
    pending = list(statements)
    while pending:
        stmt = pending.pop()
        total += 1
        pending.extend(stmt.children())
    return total
