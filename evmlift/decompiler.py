from typing import Any, Dict, Iterable, Optional, Union

import structlog

from .analysis.cfg_builder import CFGBuilder
from .analysis.jump_patterns import identify_jump_patterns
from .analysis.lifter import DecompilationResult, Lifter
from .config import AnalysisConfig
from .core.cfg import ControlFlowGraph
from .core.instruction import Instruction, validate_instructions
from .disassembler import instructions_from_bytecode
from .render import render_source

logger = structlog.get_logger()


class SmartContractDecompiler:
    """
    Bytecode (or an instruction stream) to CFG to pseudo-source.

    Each stage runs once on first use and its result is reused.
    """

    def __init__(
        self,
        bytecode: Union[str, bytes, None] = None,
        instructions: Optional[Iterable[Instruction]] = None,
        config: Optional[AnalysisConfig] = None,
    ):
        if instructions is None:
            if bytecode is None:
                raise ValueError("either bytecode or instructions is required")
            instructions = instructions_from_bytecode(bytecode)
        self.config = config or AnalysisConfig()
        self.instructions = validate_instructions(instructions)
        self._cfg: Optional[ControlFlowGraph] = None
        self._result: Optional[DecompilationResult] = None

    def build_cfg(self) -> ControlFlowGraph:
        if self._cfg is None:
            logger.info("Building CFG", instructions=len(self.instructions))
            self._cfg = CFGBuilder(self.instructions, self.config).build()
        return self._cfg

    def jump_patterns(self) -> Dict[int, Dict[str, Any]]:
        return identify_jump_patterns(self.build_cfg())

    def decompile(self) -> DecompilationResult:
        if self._result is None:
            self._result = Lifter(self.build_cfg(), self.config).lift()
        return self._result

    def source(self) -> str:
        return render_source(self.decompile())

    def to_dict(self) -> Dict[str, Any]:
        return {"cfg": self.build_cfg().to_dict(), "decompilation": self.decompile().to_dict()}


def decompile(bytecode: Union[str, bytes], config: Optional[AnalysisConfig] = None) -> DecompilationResult:
    """Decompile bytecode in one call."""
    return SmartContractDecompiler(bytecode, config=config).decompile()
