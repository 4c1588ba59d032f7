"""
EVM bytecode symbolic execution, CFG construction and decompilation.
"""

# Configuration and diagnostics
from .config import AnalysisConfig, load_config
from .exceptions import (
    EvmLiftError,
    MalformedInput,
    PathFault,
    UnresolvedControlFlow,
    BudgetExceeded,
    PatternMismatch,
)
from .warnings import AnalysisWarning, WarningKind
from .logs import configure_logging

# Input
from .core.instruction import Instruction, make_instruction, validate_instructions
from .disassembler import disassemble, instructions_from_bytecode, parse_bytecode

# Pipeline
from .analysis.cfg_builder import CFGBuilder
from .analysis.lifter import DecompilationResult, Lifter
from .core.cfg import ControlFlowGraph
from .decompiler import SmartContractDecompiler, decompile
from .render import render_source
from .serde import export_to_json, export_to_yaml


__all__ = [
    # Configuration
    "AnalysisConfig",
    "load_config",
    "configure_logging",
    # Errors
    "EvmLiftError",
    "MalformedInput",
    "PathFault",
    "UnresolvedControlFlow",
    "BudgetExceeded",
    "PatternMismatch",
    "AnalysisWarning",
    "WarningKind",
    # Input
    "Instruction",
    "make_instruction",
    "validate_instructions",
    "disassemble",
    "instructions_from_bytecode",
    "parse_bytecode",
    # Pipeline
    "CFGBuilder",
    "ControlFlowGraph",
    "Lifter",
    "DecompilationResult",
    "SmartContractDecompiler",
    "decompile",
    "render_source",
    "export_to_json",
    "export_to_yaml",
]
