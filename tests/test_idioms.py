import pytest
from eth_utils import keccak

from evmlift.analysis.idioms import (
    copy_loop_assignment,
    decode_revert,
    is_bookkeeping_write,
    match_packed_read,
    match_packed_write,
    storage_location,
)
from evmlift.core.effects import HaltRecord, MemoryWrite, StorageWrite
from evmlift.core.symbolic import (
    CALLDATA,
    ENVIRONMENT,
    STORAGE,
    Concrete,
    fold,
    input_value,
    loop_carried,
)
from evmlift.exceptions import PatternMismatch
from evmlift.render import ExpressionRenderer

CALLER = input_value("caller", (), ENVIRONMENT, "msg.sender")
SIZE = input_value("calldatasize", (), ENVIRONMENT, "msg.data.length")
ARG0 = input_value("calldataload", (Concrete(4),), CALLDATA, 4)
ARG1 = input_value("calldataload", (Concrete(36),), CALLDATA, 36)


def render(value):
    return ExpressionRenderer().render(value)


def word(value):
    return value.to_bytes(32, "big")


def test_storage_locations():
    assert storage_location(Concrete(5), render) == "stor_5"
    assert storage_location(Concrete(5), render, transient=True) == "tstor_5"
    nested = fold("sha3", ARG1, fold("sha3", CALLER, Concrete(2)))
    assert storage_location(nested, render) == "stor_2[msg.sender][arg1]"
    member = fold("add", fold("sha3", CALLER, Concrete(3)), Concrete(1))
    assert storage_location(member, render) == "stor_3[msg.sender].field1"


def test_dynamic_array_element():
    base = int.from_bytes(keccak(word(0)), "big")
    assert storage_location(fold("add", Concrete(base), ARG0), render) == "stor_0[arg0]"
    assert storage_location(Concrete(base), render) == "stor_0[0]"


def test_unrecognized_slot_is_spelled_out():
    assert storage_location(Concrete(1 << 200), render) == f"storage[{hex(1 << 200)}]"
    assert storage_location(ARG0, render) == "storage[arg0]"


def test_packed_read():
    slot_word = input_value("sload", (Concrete(0),), STORAGE, 0)
    field = fold("and", fold("shr", Concrete(160), slot_word), Concrete(0xFF))
    assert match_packed_read(field) == (slot_word, 20, 20)
    # Offset zero is a plain cast
    assert match_packed_read(fold("and", slot_word, Concrete(0xFF))) is None


def test_packed_write():
    old = input_value("sload", (Concrete(1),), STORAGE, 1)
    clear = ~(0xFF << 8) & ((1 << 256) - 1)
    inserted = fold("shl", Concrete(8), fold("and", ARG0, Concrete(0xFF)))
    write = StorageWrite(pc=0x10, slot=Concrete(1), value=fold("or", fold("and", old, Concrete(clear)), inserted))
    assert match_packed_write(write) == (1, 1, ARG0)
    assert match_packed_write(StorageWrite(pc=0x10, slot=Concrete(1), value=ARG0)) is None


def test_bookkeeping_writes():
    assert is_bookkeeping_write(MemoryWrite(0, Concrete(0x40), Concrete(0x80)), [])
    assert is_bookkeeping_write(MemoryWrite(0, Concrete(0xA0), ARG0), [(0x80, 0xC0)])
    assert not is_bookkeeping_write(MemoryWrite(0, Concrete(0xA0), ARG0), [])
    assert not is_bookkeeping_write(MemoryWrite(0, ARG0, ARG0), [])


def copy_loop():
    counter = loop_carried((Concrete(0), Concrete(32)), 0x20, "0")
    source = input_value("calldataload", (fold("add", Concrete(4), counter),), CALLDATA)
    write = MemoryWrite(pc=0x24, offset=fold("add", Concrete(128), counter), value=source)
    return counter, write


def test_copy_loop_collapses_to_slice_assignment():
    counter, write = copy_loop()
    condition = fold("lt", counter, SIZE)
    assert copy_loop_assignment(condition, True, [write], render) == (
        "memory[128:128 + msg.data.length]",
        "msg.data[4:4 + msg.data.length]",
    )
    # The exit test of the same loop gives the same slice
    negated = fold("iszero", condition)
    assert copy_loop_assignment(negated, False, [write], render) == copy_loop_assignment(
        condition, True, [write], render
    )


def test_copy_loop_rejects_other_shapes():
    counter, write = copy_loop()
    with pytest.raises(PatternMismatch):
        copy_loop_assignment(fold("eq", counter, SIZE), True, [write], render)
    with pytest.raises(PatternMismatch):
        copy_loop_assignment(fold("lt", ARG0, SIZE), True, [write], render)
    with pytest.raises(PatternMismatch):
        store = MemoryWrite(pc=0x24, offset=fold("add", Concrete(128), counter), value=ARG0)
        copy_loop_assignment(fold("lt", counter, SIZE), True, [store], render)


def test_decode_error_string():
    message = b"hello"
    raw = (0x08C379A0).to_bytes(4, "big") + word(32) + word(len(message)) + message.ljust(32, b"\0")
    assert decode_revert(HaltRecord(pc=0, opcode="REVERT", raw=raw)) == '"hello"'


def test_decode_panic():
    raw = (0x4E487B71).to_bytes(4, "big") + word(0x11)
    assert decode_revert(HaltRecord(pc=0, opcode="REVERT", raw=raw)) == "Panic(0x11)"


def test_unknown_revert_payloads():
    assert decode_revert(HaltRecord(pc=0, opcode="REVERT")) is None
    assert decode_revert(HaltRecord(pc=0, opcode="REVERT", raw=b"\x01\x02\x03\x04" + word(1))) is None
    # Error(string) with a length pointing past the payload
    raw = (0x08C379A0).to_bytes(4, "big") + word(32) + word(100) + b"short".ljust(32, b"\0")
    assert decode_revert(HaltRecord(pc=0, opcode="REVERT", raw=raw)) is None
