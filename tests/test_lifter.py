import pytest

from conftest import SINGLE_SELECTOR_HEX, assemble, build
from evmlift.analysis.lifter import Lifter
from evmlift.analysis.structurer import Structurer
from evmlift.config import AnalysisConfig
from evmlift.core.function import FunctionRegion
from evmlift.core.statements import (
    Assignment,
    Conditional,
    Loop,
    Raw,
    Require,
    Return,
    Revert,
    count_statements,
)
from evmlift.decompiler import SmartContractDecompiler, decompile
from evmlift.render import ExpressionRenderer
from evmlift.warnings import WarningKind

# if (arg0) { stor_0 = 1 } else { stor_0 = 2 }
IF_ELSE = (
    ("PUSH1", 4), "CALLDATALOAD", ("PUSH1", "@then"), "JUMPI",
    ("PUSH1", 2), ("PUSH1", 0), "SSTORE", ("PUSH1", "@join"), "JUMP",
    "then:", "JUMPDEST", ("PUSH1", 1), ("PUSH1", 0), "SSTORE",
    "join:", "JUMPDEST", "STOP",
)


def flatten(statements):
    for stmt in statements:
        yield stmt
        yield from flatten(stmt.children())


def test_single_selector_region_is_assignment_then_return(single_selector):
    instructions, _ = single_selector
    result = Lifter(build(instructions)).lift()

    assert len(result.regions) == 1
    region = result.regions[0]
    assert region.selector == 0xAABBCCDD
    assert region.statements == (
        Assignment("stor_0", "1", pc=region.statements[0].pc),
        Return(pc=region.statements[1].pc),
    )
    assert region.parameter_count == 0
    assert not region.warnings


def test_counted_loop_is_a_single_loop(counted_loop):
    instructions, _ = counted_loop
    result = Lifter(build(instructions)).lift()

    (region,) = result.regions
    statements = list(flatten(region.statements))
    loops = [s for s in statements if isinstance(s, Loop)]
    assert len(loops) == 1
    assert not any(isinstance(s, Conditional) for s in statements)
    (loop,) = loops
    assert loop.post_test
    assert "loop_" in loop.condition
    assert isinstance(region.statements[-1], Return)


def test_lifting_is_idempotent(two_selectors):
    instructions, _ = two_selectors
    cfg = build(instructions)
    assert Lifter(cfg).lift() == Lifter(cfg).lift()


def test_parallel_lifting_keeps_region_order(two_selectors):
    instructions, _ = two_selectors
    cfg = build(instructions)
    assert Lifter(cfg).lift(workers=1) == Lifter(cfg).lift(workers=4)


def test_two_selector_bodies(two_selectors):
    instructions, _ = two_selectors
    result = Lifter(build(instructions)).lift()

    first = result.region(0x11111111)
    second = result.region(0x22222222)
    assert [type(s) for s in first.statements] == [Assignment, Return]
    assert first.statements[0].target == "stor_0"
    assert first.statements[0].value == "42"
    assert second.statements[0] == Assignment("stor_1", "arg0", pc=second.statements[0].pc)
    assert second.parameter_count == 1
    assert second.arguments[0].type_hint == "uint256"
    assert result.fallback.statements == (Revert(None, (), pc=result.fallback.statements[0].pc),)


def test_revert_guard_becomes_require(require_guard):
    instructions, _ = require_guard
    result = Lifter(build(instructions)).lift()

    (region,) = result.regions
    assert [type(s) for s in region.statements] == [Require, Assignment, Return]
    assert region.statements[0].condition == "msg.value == 0"


def test_unresolved_jump_is_lifted_with_warning(unresolved_jump):
    instructions, _ = unresolved_jump
    result = Lifter(build(instructions)).lift()

    (region,) = result.regions
    (stmt,) = region.statements
    assert isinstance(stmt, Raw)
    assert "unresolved" in stmt.text
    assert WarningKind.UNRESOLVED_CONTROL_FLOW in [w.kind for w in region.warnings]
    assert all(w.region == region.entry_pc for w in region.warnings)


def test_if_else_joins_after_branches():
    instructions, _ = assemble(*IF_ELSE)
    (region,) = Lifter(build(instructions)).lift().regions

    conditional, ret = region.statements
    assert isinstance(conditional, Conditional)
    assert conditional.condition == "arg0"
    assert [s.value for s in conditional.then_body] == ["1"]
    assert [s.value for s in conditional.else_body] == ["2"]
    assert isinstance(ret, Return)


def test_statement_budget_truncates():
    instructions, _ = assemble(*IF_ELSE)
    config = AnalysisConfig(max_statements=1)
    (region,) = Lifter(build(instructions), config).lift().regions
    assert count_statements(region.statements) == 4
    assert Raw("...", pc=region.statements[-1].pc) in region.statements
    assert WarningKind.BUDGET_EXCEEDED in [w.kind for w in region.warnings]


def test_decompiler_from_bytecode():
    decompiler = SmartContractDecompiler(SINGLE_SELECTOR_HEX)
    assert len(decompiler.build_cfg().blocks) == 2
    assert decompiler.build_cfg() is decompiler.build_cfg()

    source = decompiler.source()
    assert "function Unresolved_aabbccdd() public {" in source
    assert "stor_0 = 1;" in source
    assert "return;" in source
    assert decompiler.jump_patterns()[0]["pattern"] == "selector_dispatch"


def test_decompile_shortcut_matches_class():
    assert decompile(SINGLE_SELECTOR_HEX) == SmartContractDecompiler(SINGLE_SELECTOR_HEX).decompile()


def test_decompiler_needs_input():
    with pytest.raises(ValueError):
        SmartContractDecompiler()


def test_block_budget_on_loop_still_lifts(counted_loop):
    instructions, labels = counted_loop
    cfg = build(instructions, max_blocks=2)
    assert cfg.budget_exceeded
    assert sorted(cfg.blocks) == [0, labels["loop"]]

    result = Lifter(cfg).lift()
    assert result.budget_exceeded
    assert len(result.regions) == 1
    # The missing exit block owns the budget warning, so no region does
    assert [w.kind for w in result.warnings] == [WarningKind.BUDGET_EXCEEDED]


def test_shared_helper_continues_in_each_caller(shared_helper):
    instructions, _ = shared_helper
    result = Lifter(build(instructions)).lift()

    first = result.region(0x11111111)
    second = result.region(0x22222222)
    assert [type(s) for s in first.statements] == [Assignment, Return]
    assert [type(s) for s in second.statements] == [Assignment, Return]
    assert first.statements[0].target == "stor_0"
    assert second.statements[0].target == "stor_1"
    assert first.statements[0].value == second.statements[0].value
    assert not first.warnings
    assert not second.warnings


def test_return_without_pushed_address_is_not_guessed(shared_helper):
    instructions, labels = shared_helper
    cfg = build(instructions)
    helper = labels["helper"]
    region = FunctionRegion(
        entry_pc=helper,
        selector=None,
        blocks=frozenset({helper, labels["ret1"], labels["ret2"]}),
    )
    structurer = Structurer(cfg, region, ExpressionRenderer())

    assert structurer.structure() == (Raw(f"goto {hex(labels['ret1'])} | {hex(labels['ret2'])}", pc=helper),)
    assert [w.kind for w in structurer.warnings] == [WarningKind.PATTERN_MISMATCH]
