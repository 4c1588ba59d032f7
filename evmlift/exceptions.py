"""
Exceptions raised while lifting EVM bytecode.

Only :class:`MalformedInput` reaches the caller of the decompiler. Every other
exception is raised inside the component that knows how to recover from it and
is turned into an :class:`~evmlift.warnings.AnalysisWarning` there.
"""

from typing import Optional


class EvmLiftError(Exception):
    """
    Base class for all evmlift exceptions.
    """

    def __init__(self, message: str = "", pc: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.pc = pc


class MalformedInput(EvmLiftError):
    """
    Raised when the instruction stream has gaps, overlaps or is otherwise not a
    contiguous cover of the bytecode. Aborts the whole build.
    """

    pass


class PathFault(EvmLiftError):
    """
    Base class for faults that end the current exploration path only.
    """

    pass


class StackUnderflow(PathFault):
    """
    Occurs when a pop is executed on an empty stack.
    """

    pass


class StackOverflow(PathFault):
    """
    Occurs when a push is executed on a stack at max capacity.
    """

    pass


class InvalidOpcode(PathFault):
    """
    Raised when an undefined opcode byte is executed.
    """

    pass


class InvalidJumpDestination(PathFault):
    """
    Occurs when a concrete jump target is not a ``JUMPDEST`` or lies outside
    the code.
    """

    pass


class PathBudgetExhausted(PathFault):
    """
    Raised when a path executes more instructions than the configured budget.
    """

    pass


class UnresolvedControlFlow(EvmLiftError):
    """
    Raised when a dynamic jump target cannot be reduced to concrete candidates.
    """

    pass


class BudgetExceeded(EvmLiftError):
    """
    Raised when an exploration or rendering limit is hit.
    """

    pass


class PatternMismatch(EvmLiftError):
    """
    Raised when an idiom recognizer does not match the structure it was given.
    """

    pass
