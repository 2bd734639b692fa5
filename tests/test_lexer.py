from __future__ import annotations

import pytest

from lexer import (
    Add,
    BumpMinus,
    BumpPlus,
    CopyFrom,
    CopyTo,
    HRMParseError,
    InBox,
    Jump,
    JumpIfNeg,
    JumpIfZero,
    JumpTarget,
    Lexer,
    Located,
    Location,
    OutBox,
    Sub,
    lex,
    render_instruction,
)


def _kinds(src: str) -> list:
    return [instruction.value for instruction in lex(src)]


def _locations(src: str) -> list[tuple[int, int]]:
    return [(i.location.line, i.location.column) for i in lex(src)]


def test_every_opcode():
    src = """
    inbox
    outbox
    copyfrom 0
    copyto 1
    add 2
    sub 3
    bump_plus 4
    bump_minus 5
    jump a
    jump_if_zero b
    jump_if_neg c
    jump_target d
    """
    assert _kinds(src) == [
        InBox(),
        OutBox(),
        CopyFrom(0),
        CopyTo(1),
        Add(2),
        Sub(3),
        BumpPlus(4),
        BumpMinus(5),
        Jump("a"),
        JumpIfZero("b"),
        JumpIfNeg("c"),
        JumpTarget("d"),
    ]


def test_zero_argument_location_is_opcode():
    assert lex("inbox\noutbox\n") == [
        Located(InBox(), Location(1, 1)),
        Located(OutBox(), Location(2, 1)),
    ]


def test_argument_location_is_argument_chunk():
    assert _locations("copyfrom 3") == [(1, 10)]
    assert _locations("  add   12\n\tsub 0") == [(1, 9), (2, 6)]
    assert _locations("inbox\njump_target  loop") == [(1, 1), (2, 14)]


def test_missing_trailing_newline_and_crlf():
    assert _kinds("inbox outbox") == [InBox(), OutBox()]
    assert _locations("inbox\r\noutbox") == [(1, 1), (2, 1)]


def test_unknown_chunks_are_skipped():
    assert _kinds("hello inbox # outbox") == [InBox(), OutBox()]


def test_malformed_argument_consumes_only_opcode():
    program = lex("copyfrom inbox")
    assert program == [Located(InBox(), Location(1, 10))]


def test_malformed_cell_indexes_are_dropped():
    assert _kinds("copyfrom -1") == []
    assert _kinds("copyto +") == []
    assert _kinds("copyto ++1") == []
    assert _kinds("add x1") == []
    assert _kinds("sub 1.5") == []


def test_leading_plus_is_accepted():
    assert _kinds("copyto +1 add +0") == [CopyTo(1), Add(0)]


def test_leading_zeros_are_accepted():
    assert _kinds("copyfrom 007") == [CopyFrom(7)]
    assert _kinds("copyfrom " + "0" * 5000 + "3") == [CopyFrom(3)]


def test_oversized_cell_index_is_dropped():
    huge = "1" * 5000
    assert _kinds(f"copyfrom {huge}\ninbox") == [InBox()]
    assert _kinds("copyto 18446744073709551615") == [CopyTo(18446744073709551615)]
    assert _kinds("copyto 18446744073709551616") == []


def test_oversized_cell_index_in_strict_mode():
    with pytest.raises(HRMParseError) as exc:
        lex("inbox\ncopyfrom " + "9" * 5000, strict=True)
    assert exc.value.location == Location(2, 10)


def test_missing_argument_at_end():
    assert _kinds("inbox jump") == [InBox()]


def test_labels_are_any_chunk():
    assert _kinds("jump_target a: jump a:") == [JumpTarget("a:"), Jump("a:")]
    assert _kinds("jump jump_target") == [Jump("jump_target")]
    assert _kinds("jump_if_zero 7") == [JumpIfZero("7")]


def test_opcodes_are_case_sensitive():
    assert _kinds("INBOX Outbox") == []


def test_empty_source():
    assert lex("") == []
    assert lex(" \n\t\n") == []


def test_diagnostics_record_dropped_chunks():
    lexer = Lexer("copyfrom x inbox\nbogus\njump")
    program = lexer.tokenize()
    assert [i.value for i in program] == [InBox()]
    assert [(d.location.line, d.location.column) for d in lexer.diagnostics] == [
        (1, 10),
        (1, 10),
        (2, 1),
        (3, 1),
    ]
    assert "Invalid argument 'x'" in lexer.diagnostics[0].value
    assert "Unknown opcode 'x'" in lexer.diagnostics[1].value
    assert "Missing argument" in lexer.diagnostics[3].value


def test_strict_mode_raises_on_unknown_opcode():
    with pytest.raises(HRMParseError) as exc:
        lex("inbox\n  bogus", strict=True)
    assert exc.value.location == Location(2, 3)
    assert "line 2, column 3" in str(exc.value)


def test_strict_mode_raises_on_bad_argument():
    with pytest.raises(HRMParseError) as exc:
        lex("copyfrom x", strict=True)
    assert exc.value.location == Location(1, 10)


def test_strict_mode_accepts_valid_program():
    assert _kinds("inbox\ncopyto 0\n") == [i.value for i in lex("inbox\ncopyto 0\n", strict=True)]


def test_render_instruction():
    assert render_instruction(InBox()) == "inbox"
    assert render_instruction(CopyTo(4)) == "copyto 4"
    assert render_instruction(JumpIfNeg("done")) == "jump_if_neg done"
