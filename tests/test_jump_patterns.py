from conftest import assemble, build
from evmlift.analysis.jump_patterns import (
    DispatchEntry,
    dispatcher_chain,
    find_dispatch_entries,
    identify_jump_patterns,
    is_calldata_size_check,
    is_selector_split,
    match_selector_comparison,
)
from evmlift.core.symbolic import CALLDATA, ENVIRONMENT, Concrete, fold, input_value

CALLDATA_WORD = input_value("calldataload", (Concrete(0),), CALLDATA, 0)
SELECTOR = fold("shr", Concrete(224), CALLDATA_WORD)


def test_match_eq_selector():
    assert match_selector_comparison(fold("eq", Concrete(0xAABBCCDD), SELECTOR)) == (0xAABBCCDD, True)
    assert match_selector_comparison(fold("eq", SELECTOR, Concrete(0xAABBCCDD))) == (0xAABBCCDD, True)


def test_match_negated_and_subtracted_selector():
    negated = fold("iszero", fold("eq", Concrete(0x12345678), SELECTOR))
    assert match_selector_comparison(negated) == (0x12345678, False)
    # Vyper style: sub(selector, C) is non-zero on a mismatch
    assert match_selector_comparison(fold("sub", SELECTOR, Concrete(0x12345678))) == (0x12345678, False)
    assert match_selector_comparison(fold("iszero", fold("xor", SELECTOR, Concrete(1)))) == (1, True)


def test_old_style_division_selector():
    legacy = fold("and", fold("div", CALLDATA_WORD, Concrete(1 << 224)), Concrete(0xFFFFFFFF))
    assert match_selector_comparison(fold("eq", legacy, Concrete(0x70A08231))) == (0x70A08231, True)


def test_non_selector_comparison_is_ignored():
    other = input_value("calldataload", (Concrete(4),), CALLDATA, 4)
    assert match_selector_comparison(fold("eq", other, Concrete(5))) is None
    # A constant wider than four bytes is not a selector
    assert match_selector_comparison(fold("eq", SELECTOR, Concrete(1 << 40))) is None


def test_split_and_size_checks():
    assert is_selector_split(fold("gt", Concrete(0x50000000), SELECTOR))
    assert not is_selector_split(fold("eq", Concrete(0x50000000), SELECTOR))
    size = input_value("calldatasize", (), ENVIRONMENT, "msg.data.length")
    assert is_calldata_size_check(fold("iszero", fold("lt", size, Concrete(4))))


def test_identify_dispatch_patterns(two_selectors):
    instructions, labels = two_selectors
    patterns = identify_jump_patterns(build(instructions))

    assert patterns[0]["pattern"] == "selector_dispatch"
    assert patterns[0]["metadata"]["selector"] == 0x11111111
    assert patterns[0]["metadata"]["entry"] == labels["first"]
    assert patterns[0]["confidence"] > 0.9
    second = patterns[labels["second_check"]]
    assert second["metadata"]["selector"] == 0x22222222
    assert second["metadata"]["entry"] == labels["second"]


def test_identify_direct_jump_pattern():
    instructions, labels = assemble(("PUSH1", "@target"), "JUMP", "target:", "JUMPDEST", "STOP")
    patterns = identify_jump_patterns(build(instructions))
    assert patterns[0]["pattern"] == "direct_jump"
    assert patterns[0]["metadata"]["target"] == labels["target"]


def test_identify_unresolved_jump(unresolved_jump):
    instructions, _ = unresolved_jump
    patterns = identify_jump_patterns(build(instructions))
    assert patterns[0]["pattern"] == "unresolved_jump"


def test_internal_return_has_several_targets():
    # Two call sites share one internal function returning through a stack address
    instructions, labels = assemble(
        ("PUSH1", "@ret1"), ("PUSH1", "@func"), "JUMP",
        "ret1:", "JUMPDEST", ("PUSH1", "@ret2"), ("PUSH1", "@func"), "JUMP",
        "ret2:", "JUMPDEST", "STOP",
        "func:", "JUMPDEST", "JUMP",
    )
    cfg = build(instructions)
    patterns = identify_jump_patterns(cfg)
    assert patterns[labels["func"]]["pattern"] == "internal_return"
    assert sorted(patterns[labels["func"]]["metadata"]["targets"]) == [labels["ret1"], labels["ret2"]]


def test_dispatch_entries_and_chain(two_selectors):
    instructions, labels = two_selectors
    cfg = build(instructions)
    entries = find_dispatch_entries(cfg)
    assert entries == [
        DispatchEntry(0x11111111, 0, labels["first"]),
        DispatchEntry(0x22222222, labels["second_check"], labels["second"]),
    ]
    assert dispatcher_chain(cfg, entries) == {0, labels["second_check"]}


def test_precomputed_patterns_are_reused(two_selectors):
    instructions, labels = two_selectors
    cfg = build(instructions)
    patterns = identify_jump_patterns(cfg)
    entries = find_dispatch_entries(cfg, patterns)
    assert entries == find_dispatch_entries(cfg)
    assert dispatcher_chain(cfg, entries, patterns) == {0, labels["second_check"]}
    # The given map is the only source of patterns
    assert find_dispatch_entries(cfg, {}) == []


def test_shared_helper_return_is_internal(shared_helper):
    instructions, labels = shared_helper
    patterns = identify_jump_patterns(build(instructions))
    helper = patterns[labels["helper"]]
    assert helper["pattern"] == "internal_return"
    assert helper["metadata"]["targets"] == [labels["ret1"], labels["ret2"]]
