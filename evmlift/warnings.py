from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from evmlift.exceptions import (
    BudgetExceeded,
    EvmLiftError,
    PathBudgetExhausted,
    PatternMismatch,
    UnresolvedControlFlow,
)


class WarningKind(Enum):
    PATH_FAULT = "path-fault"
    UNRESOLVED_CONTROL_FLOW = "unresolved-control-flow"
    BUDGET_EXCEEDED = "budget-exceeded"
    PATTERN_MISMATCH = "pattern-mismatch"


@dataclass(frozen=True)
class AnalysisWarning:
    """A recovered problem attached to a block (``pc``) and/or a region."""

    kind: WarningKind
    message: str
    pc: Optional[int] = None
    region: Optional[int] = None

    @classmethod
    def from_exception(
        cls, exc: EvmLiftError, pc: Optional[int] = None, region: Optional[int] = None
    ) -> "AnalysisWarning":
        if isinstance(exc, (BudgetExceeded, PathBudgetExhausted)):
            kind = WarningKind.BUDGET_EXCEEDED
        elif isinstance(exc, UnresolvedControlFlow):
            kind = WarningKind.UNRESOLVED_CONTROL_FLOW
        elif isinstance(exc, PatternMismatch):
            kind = WarningKind.PATTERN_MISMATCH
        else:
            kind = WarningKind.PATH_FAULT
        message = exc.message or type(exc).__name__
        return cls(kind=kind, message=message, pc=pc if pc is not None else exc.pc, region=region)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "pc": self.pc,
            "region": self.region,
        }

    def __str__(self) -> str:
        where = f" @ {self.pc:#x}" if self.pc is not None else ""
        return f"[{self.kind.value}]{where} {self.message}"
