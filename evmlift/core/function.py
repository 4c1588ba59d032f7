from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional, Tuple

from ..warnings import AnalysisWarning
from .statements import Statement


@dataclass(frozen=True)
class ArgumentInfo:
    index: int
    type_hint: str = "uint256"

    @property
    def name(self) -> str:
        return f"arg{self.index}"

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "name": self.name, "type": self.type_hint}


@dataclass(frozen=True)
class FunctionRegion:
    """An externally callable function (or the fallback) and its lifted body."""

    entry_pc: int
    selector: Optional[int]
    blocks: FrozenSet[int]
    arguments: Tuple[ArgumentInfo, ...] = ()
    statements: Tuple[Statement, ...] = ()
    warnings: Tuple[AnalysisWarning, ...] = ()
    # Blocks reachable from the entry but not dominated by it (shared code)
    shared_blocks: FrozenSet[int] = frozenset()

    @property
    def is_fallback(self) -> bool:
        return self.selector is None

    @property
    def name(self) -> str:
        if self.selector is None:
            return "fallback"
        return f"Unresolved_{self.selector:08x}"

    @property
    def parameter_count(self) -> int:
        return len(self.arguments)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "entry": self.entry_pc,
            "selector": None if self.selector is None else f"0x{self.selector:08x}",
            "parameter_count": self.parameter_count,
            "arguments": [arg.to_dict() for arg in self.arguments],
            "blocks": sorted(self.blocks),
            "statements": [stmt.to_dict() for stmt in self.statements],
            "warnings": [w.to_dict() for w in self.warnings],
        }
