import pytest

from conftest import assemble, build
from evmlift.analysis.cfg_builder import CFGBuilder, find_leaders, split_blocks
from evmlift.core.basic_block import EdgeKind, Terminator
from evmlift.core.instruction import Instruction, make_instruction
from evmlift.core.symbolic import LOOP_CARRIED, walk
from evmlift.exceptions import MalformedInput
from evmlift.warnings import WarningKind


def topology(cfg):
    blocks = sorted((b.start_pc, b.end_pc, b.terminator) for b in cfg.blocks.values())
    edges = [(e.source, e.target, e.kind) for e in cfg.edges]
    return blocks, edges


def test_single_selector_dispatch_builds_two_blocks(single_selector):
    instructions, labels = single_selector
    cfg = build(instructions)

    assert sorted(cfg.blocks) == [0, labels["handler"]]
    assert not cfg.budget_exceeded
    kinds = {(e.target, e.kind) for e in cfg.successors(0)}
    assert kinds == {
        (labels["handler"], EdgeKind.BRANCH_TRUE),
        (labels["handler"], EdgeKind.BRANCH_FALSE),
    }
    assert cfg.blocks[labels["handler"]].terminator is Terminator.RETURN


def test_blocks_are_contiguous(two_selectors):
    instructions, _ = two_selectors
    cfg = build(instructions)
    for block in cfg.blocks.values():
        assert block.instructions[0].pc == block.start_pc
        assert block.instructions[-1].pc == block.end_pc
        for prev, instr in zip(block.instructions, block.instructions[1:]):
            assert prev.next_pc == instr.pc
            assert not instr.is_jumpdest


def test_leaders_follow_jumps_and_jumpdests(two_selectors):
    instructions, labels = two_selectors
    leaders = find_leaders(instructions)
    assert {0, labels["second_check"], labels["fallback"], labels["first"], labels["second"]} <= leaders
    # The pc past the final STOP is a leader without a block
    assert set(split_blocks(instructions)) == leaders - {instructions[-1].next_pc}


def test_dispatcher_reaches_every_function(two_selectors):
    instructions, labels = two_selectors
    cfg = build(instructions)
    assert set(cfg.blocks) == {0, labels["second_check"], labels["fallback"], labels["first"], labels["second"]}
    assert cfg.blocks[labels["fallback"]].terminator is Terminator.REVERT
    assert cfg.reachable(0) == set(cfg.blocks)
    assert cfg.reachable(0, stop=[labels["second_check"]]) == {0, labels["first"]}
    assert not cfg.warnings


def test_parallel_build_matches_serial(two_selectors):
    instructions, _ = two_selectors
    serial = build(instructions, workers=1)
    parallel = build(instructions, workers=4)
    assert topology(serial) == topology(parallel)


def test_parallel_build_matches_serial_on_loop(counted_loop):
    instructions, _ = counted_loop
    assert topology(build(instructions, workers=1)) == topology(build(instructions, workers=3))


def test_counted_loop_has_back_edge(counted_loop):
    instructions, labels = counted_loop
    cfg = build(instructions)
    loop = labels["loop"]

    assert sorted(cfg.blocks) == [0, loop, labels["done"]]
    assert [(e.source, e.target, e.kind) for e in cfg.edges] == [
        (0, loop, EdgeKind.FALL_THROUGH),
        (loop, loop, EdgeKind.BRANCH_TRUE),
        (loop, labels["done"], EdgeKind.BRANCH_FALSE),
    ]
    summary = cfg.summary(loop)
    assert summary.generalized
    assert any(
        getattr(node, "provenance", None) is not None and node.provenance.kind == LOOP_CARRIED
        for node in walk(summary.condition)
    )


def test_unresolved_jump_is_recorded_not_raised(unresolved_jump):
    instructions, _ = unresolved_jump
    cfg = build(instructions)

    block = cfg.blocks[0]
    assert block.unresolved_jump
    assert block.terminator is Terminator.INVALID
    assert not cfg.successors(0)
    kinds = [w.kind for w in cfg.warnings]
    assert WarningKind.UNRESOLVED_CONTROL_FLOW in kinds


def test_block_budget_flags_partial_graph(two_selectors):
    instructions, _ = two_selectors
    cfg = build(instructions, max_blocks=2)
    assert cfg.budget_exceeded
    assert len(cfg.blocks) <= 2
    assert [w.kind for w in cfg.warnings] == [WarningKind.BUDGET_EXCEEDED]


def test_fork_depth_budget(two_selectors):
    instructions, labels = two_selectors
    cfg = build(instructions, max_fork_depth=1)
    assert cfg.budget_exceeded
    assert labels["first"] in cfg.blocks
    assert labels["fallback"] not in cfg.blocks


def test_path_fault_becomes_warning():
    instructions, _ = assemble(("PUSH1", 1), "ADD", "ADD", "STOP")
    cfg = build(instructions)
    assert list(cfg.blocks) == [0]
    (warning,) = cfg.warnings
    assert warning.kind is WarningKind.PATH_FAULT
    assert warning.pc == 2


def test_jump_to_non_jumpdest_is_path_fault():
    instructions, _ = assemble(("PUSH1", 3), "JUMP", "STOP", "STOP")
    cfg = build(instructions)
    assert not cfg.successors(0)
    assert [w.kind for w in cfg.warnings] == [WarningKind.PATH_FAULT]


def test_empty_program_gives_empty_graph():
    cfg = CFGBuilder([]).build()
    assert len(cfg) == 0
    assert cfg.to_dict()["blocks"] == []


def test_gap_in_instruction_stream_is_rejected():
    instructions = [make_instruction(0, 0x60, 1), Instruction(pc=3, opcode=0x00)]
    with pytest.raises(MalformedInput):
        CFGBuilder(instructions)


def test_graph_serializes(two_selectors):
    instructions, _ = two_selectors
    cfg = build(instructions)
    data = cfg.to_dict()
    assert data["entry"] == 0
    assert len(data["blocks"]) == len(cfg.blocks)
    assert len(data["edges"]) == len(cfg.edges)
    graph = cfg.to_networkx()
    assert graph.number_of_nodes() == len(cfg.blocks)
    assert graph.number_of_edges() == len(cfg.edges)


def test_path_instruction_budget_flags_partial_graph(counted_loop):
    instructions, labels = counted_loop
    cfg = build(instructions, max_path_instructions=5)
    assert cfg.budget_exceeded
    assert sorted(cfg.blocks) == [0, labels["loop"]]
    assert not cfg.successors(labels["loop"])
    assert [w.kind for w in cfg.warnings] == [WarningKind.BUDGET_EXCEEDED]


def test_unresolved_jump_in_second_context_is_reported():
    # The helper returns to a pushed label from the first caller and to a
    # calldata word from the second one
    instructions, labels = assemble(
        ("PUSH1", 0), "CALLDATALOAD", ("PUSH1", "@first"), "JUMPI",
        ("PUSH1", 4), "CALLDATALOAD", ("PUSH1", "@helper"), "JUMP",
        "first:", "JUMPDEST", ("PUSH1", "@done"), ("PUSH1", "@helper"), "JUMP",
        "helper:", "JUMPDEST", "JUMP",
        "done:", "JUMPDEST", "STOP",
    )
    cfg = build(instructions)
    helper = labels["helper"]

    assert cfg.blocks[helper].terminator is Terminator.JUMP
    assert [e.target for e in cfg.successors(helper)] == [labels["done"]]
    unresolved = [w for w in cfg.warnings if w.kind is WarningKind.UNRESOLVED_CONTROL_FLOW]
    assert [w.pc for w in unresolved] == [helper + 1]
