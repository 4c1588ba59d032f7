import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from hypothesis.strategies import composite

from evmlift.core.opcodes import HALTING_OPCODES, JUMP_OPCODES, Opcode, is_push, opcode_name, push_size
from evmlift.disassembler import disassemble, instructions_from_bytecode, parse_bytecode
from evmlift.exceptions import MalformedInput


def test_opcode_tables():
    assert push_size(Opcode.PUSH0) == 0
    assert push_size(Opcode.PUSH32) == 32
    assert push_size(Opcode.ADD) == 0
    assert is_push(Opcode.PUSH0) and not is_push(Opcode.DUP1)
    assert opcode_name(0xFE) == "INVALID"
    assert Opcode.REVERT in HALTING_OPCODES
    assert JUMP_OPCODES == {Opcode.JUMP, Opcode.JUMPI}


def test_parse_bytecode_accepts_hex_and_bytes():
    assert parse_bytecode("0x6001") == b"\x60\x01"
    assert parse_bytecode("60 01\n") == b"\x60\x01"
    assert parse_bytecode(b"\x60\x01") == b"\x60\x01"


def test_invalid_hex_is_rejected():
    with pytest.raises(MalformedInput):
        parse_bytecode("0xzz")


def test_simple_program():
    instructions = instructions_from_bytecode("0x6001600201")
    assert [(i.pc, i.name, i.operand) for i in instructions] == [
        (0, "PUSH1", 1),
        (2, "PUSH1", 2),
        (4, "ADD", None),
    ]


def test_truncated_push_reads_zeros():
    (push,) = instructions_from_bytecode("0x61ff")
    assert push.opcode == Opcode.PUSH2
    assert push.operand == 0xFF00
    assert push.size == 3


def test_undefined_byte_keeps_its_value():
    (instr,) = instructions_from_bytecode("0x0c")
    assert instr.opcode == 0x0C
    assert instr.name == "UNKNOWN_0c"
    assert instr.is_halting


def test_empty_code():
    assert instructions_from_bytecode("0x") == ()


def test_listing():
    assert disassemble("0x600100") == "0x0000: PUSH1 0x1\n0x0002: STOP"


@composite
def bytecode_sequence(draw):
    """Opcodes with complete push data."""
    elements = []
    for _ in range(draw(st.integers(min_value=0, max_value=100))):
        opcode = draw(st.integers(min_value=0x00, max_value=0xFF))
        elements.append(bytes((opcode,)))
        if Opcode.PUSH1 <= opcode <= Opcode.PUSH32:
            size = opcode - Opcode.PUSH1 + 1
            elements.append(draw(st.binary(min_size=size, max_size=size)))
    return b"".join(elements)


@settings(max_examples=200, deadline=None)
@given(code=st.binary(min_size=0, max_size=500))
def test_random_bytes_cover_the_code(code):
    instructions = instructions_from_bytecode(code)
    assert b"".join(i.to_bytes() for i in instructions)[: len(code)] == code
    if instructions:
        assert instructions[0].pc == 0
        assert instructions[-1].pc < len(code) <= instructions[-1].next_pc


@settings(max_examples=100, deadline=None)
@given(code=bytecode_sequence())
def test_well_formed_code_reencodes_exactly(code):
    instructions = instructions_from_bytecode(code.hex())
    assert b"".join(i.to_bytes() for i in instructions) == code
