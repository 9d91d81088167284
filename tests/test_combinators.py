import pytest

from arbor.arbor_combinators import (
    MISSING_TERM,
    Cursor,
    any_of,
    empty,
    forced_sequence,
    lazy,
    map_value,
    optional,
    regex,
    separated_list,
    sequence,
    series,
    terminal,
)
from arbor.arbor_datatypes import ArborSyntaxError

digits = regex(r"\d+")
comma = terminal(",")


def test_regex_and_terminal():
    parsed = digits(Cursor("123abc"))
    assert parsed.value == "123"
    assert parsed.rest.rest == "abc"
    assert digits(Cursor("abc")) is None
    assert comma(Cursor(",x")).value is True


def test_cursor_is_immutable():
    cursor = Cursor("abc")
    moved = cursor.advance(2)
    assert cursor.pos == 0
    assert moved.rest == "c"
    assert moved.advance(1).at_end


def test_empty_always_succeeds():
    cursor = Cursor("x")
    parsed = empty(cursor)
    assert parsed.value is None
    assert parsed.rest == cursor


def test_sequence_requires_every_parser():
    parser = sequence(digits, comma, digits)
    assert parser(Cursor("1,2")).value == ["1", True, "2"]
    assert parser(Cursor("1,x")) is None


def test_forced_sequence_raises_after_first_match():
    parser = forced_sequence(terminal(r"\("), digits, terminal(r"\)"), message="Expected ')'")
    assert parser(Cursor("x")) is None
    assert parser(Cursor("(1)")).value == [True, "1", True]
    with pytest.raises(ArborSyntaxError) as info:
        parser(Cursor("(1]"))
    assert "Expected ')'" in str(info.value)
    assert info.value.location.start == 2


def test_any_of_returns_first_success():
    parser = any_of(regex("ab"), regex("a"))
    assert parser(Cursor("abc")).value == "ab"
    assert parser(Cursor("ac")).value == "a"
    assert parser(Cursor("x")) is None


def test_optional():
    parser = optional(digits)
    assert parser(Cursor("1")).value == "1"
    missed = parser(Cursor("x"))
    assert missed.value is None
    assert missed.rest.pos == 0


def test_series_is_one_or_more():
    parser = series(regex("a"))
    assert parser(Cursor("aaab")).value == ["a", "a", "a"]
    assert parser(Cursor("b")) is None


def test_separated_list():
    parser = separated_list(digits, comma)
    assert parser(Cursor("1,2,3")).value == ["1", "2", "3"]
    assert parser(Cursor("")).value == []
    dangling = parser(Cursor("1,2,"))
    assert dangling.value == ["1", "2", MISSING_TERM]
    assert not MISSING_TERM


def test_separated_list_with_separators():
    parser = separated_list(digits, regex("[+-]"), return_separators=True)
    assert parser(Cursor("1+2-3")).value == ["1", "+", "2", "-", "3"]


def test_map_value_receives_positions():
    parser = map_value(digits, lambda value, start, end: (int(value), start.pos, end.pos))
    assert parser(Cursor("42")).value == (42, 0, 2)


def test_lazy_supports_recursion():
    # nested := "(" nested ")" | "x"
    nested = any_of(
        map_value(sequence(terminal(r"\("), lazy(lambda: nested), terminal(r"\)")),
                  lambda value, start, end: [value[1]]),
        regex("x"),
    )
    assert nested(Cursor("((x))")).value == [["x"]]
