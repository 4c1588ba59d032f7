from conftest import assemble, build
from evmlift.analysis.function_boundary import (
    dominators,
    identify_function_blocks,
    infer_function_regions,
)


def test_single_selector_gives_one_region(single_selector):
    instructions, labels = single_selector
    regions = infer_function_regions(build(instructions))

    assert len(regions) == 1
    (region,) = regions
    assert region.selector == 0xAABBCCDD
    assert region.entry_pc == labels["handler"]
    assert region.blocks == {labels["handler"]}
    assert region.name == "Unresolved_aabbccdd"


def test_two_selectors_and_fallback(two_selectors):
    instructions, labels = two_selectors
    regions = infer_function_regions(build(instructions))

    assert [r.selector for r in regions] == [0x11111111, 0x22222222, None]
    first, second, fallback = regions
    assert first.blocks == {labels["first"]}
    assert second.blocks == {labels["second"]}
    assert fallback.is_fallback
    assert fallback.entry_pc == labels["fallback"]
    assert fallback.blocks == {labels["fallback"]}


def test_contract_without_dispatcher_is_one_fallback(counted_loop):
    instructions, labels = counted_loop
    cfg = build(instructions)
    (region,) = infer_function_regions(cfg)
    assert region.is_fallback
    assert region.entry_pc == 0
    assert region.blocks == set(cfg.blocks)


def test_function_walk_stops_at_boundary(two_selectors):
    instructions, labels = two_selectors
    cfg = build(instructions)
    assert identify_function_blocks(cfg, 0, [labels["second_check"]]) == {0, labels["first"]}
    # The entry itself is never part of its own boundary
    assert identify_function_blocks(cfg, labels["first"], [labels["first"]]) == {labels["first"]}


def test_dominators_of_dispatcher(two_selectors):
    instructions, labels = two_selectors
    idom = dominators(build(instructions))
    assert idom[labels["first"]] == 0
    assert idom[labels["second"]] == labels["second_check"]
    assert idom[labels["fallback"]] == labels["second_check"]


def test_shared_internal_function_is_marked():
    # Both selectors call the same internal helper
    instructions, labels = assemble(
        ("PUSH1", 0), "CALLDATALOAD", ("PUSH1", 0xE0), "SHR",
        "DUP1", ("PUSH4", 0x11111111), "EQ", ("PUSH1", "@first"), "JUMPI",
        "DUP1", ("PUSH4", 0x22222222), "EQ", ("PUSH1", "@second"), "JUMPI",
        ("PUSH1", 0), "DUP1", "REVERT",
        "first:", "JUMPDEST", ("PUSH1", "@done"), ("PUSH1", "@helper"), "JUMP",
        "second:", "JUMPDEST", ("PUSH1", "@done"), ("PUSH1", "@helper"), "JUMP",
        "helper:", "JUMPDEST", ("PUSH1", 1), ("PUSH1", 0), "SSTORE", "JUMP",
        "done:", "JUMPDEST", "STOP",
    )
    regions = infer_function_regions(build(instructions))
    first, second, _ = regions
    assert labels["helper"] in first.blocks
    assert labels["helper"] in second.blocks
    assert labels["helper"] in first.shared_blocks
    assert labels["first"] not in first.shared_blocks


def test_shared_helper_returns_only_to_own_caller(shared_helper):
    instructions, labels = shared_helper
    cfg = build(instructions)
    first, second, fallback = infer_function_regions(cfg)

    assert first.blocks == {labels["first"], labels["helper"], labels["ret1"]}
    assert second.blocks == {labels["second"], labels["helper"], labels["ret2"]}
    assert labels["helper"] in first.shared_blocks
    assert fallback.is_fallback
    # Without a caller pushing a return address every target is followed
    assert identify_function_blocks(cfg, labels["helper"], []) == {
        labels["helper"],
        labels["ret1"],
        labels["ret2"],
    }
