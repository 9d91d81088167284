"""
A small parser-combinator toolkit.

A parser is a callable taking a `Cursor` and returning a `Parsed` result on
success or None on failure. Parsers never mutate the cursor; each result
carries the cursor positioned after the consumed input.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from arbor.arbor_datatypes import ArborSyntaxError, Location


@dataclass(frozen=True)
class Cursor:
    source: str
    pos: int = 0

    @property
    def rest(self) -> str:
        return self.source[self.pos:]

    @property
    def at_end(self) -> bool:
        return self.pos >= len(self.source)

    def advance(self, count: int) -> 'Cursor':
        return Cursor(self.source, self.pos + count)

    def location(self, end: Optional[int] = None) -> Location:
        return Location(self.source, self.pos, self.pos if end is None else end)


@dataclass(frozen=True)
class Parsed:
    value: Any
    rest: Cursor


Parser = Callable[[Cursor], Optional[Parsed]]


class _MissingTerm:
    """Marks a dangling separator at the end of a separated list."""

    def __repr__(self):
        return "MISSING_TERM"

    def __bool__(self):
        return False


MISSING_TERM = _MissingTerm()


def regex(pattern: Union[str, re.Pattern]) -> Parser:
    compiled = re.compile(pattern) if isinstance(pattern, str) else pattern

    def parse_regex(cursor: Cursor) -> Optional[Parsed]:
        match = compiled.match(cursor.source, cursor.pos)
        if match is None:
            return None
        return Parsed(match.group(0), Cursor(cursor.source, match.end()))

    return parse_regex


def terminal(pattern: Union[str, re.Pattern]) -> Parser:
    """Match a fixed token; the value is just True since the text is known."""
    parser = regex(pattern)

    def parse_terminal(cursor: Cursor) -> Optional[Parsed]:
        parsed = parser(cursor)
        if parsed is None:
            return None
        return Parsed(True, parsed.rest)

    return parse_terminal


def empty(cursor: Cursor) -> Parsed:
    return Parsed(None, cursor)


def sequence(*parsers: Parser) -> Parser:
    def parse_sequence(cursor: Cursor) -> Optional[Parsed]:
        values = []
        rest = cursor
        for parser in parsers:
            parsed = parser(rest)
            if parsed is None:
                return None
            values.append(parsed.value)
            rest = parsed.rest
        return Parsed(values, rest)

    return parse_sequence


def forced_sequence(*parsers: Parser, message: Optional[str] = None) -> Parser:
    """
    Like `sequence`, but once the first parser matches the rest are
    required: a later failure is a syntax error rather than a miss.
    """
    first, *required = parsers

    def parse_forced_sequence(cursor: Cursor) -> Optional[Parsed]:
        parsed = first(cursor)
        if parsed is None:
            return None
        values = [parsed.value]
        rest = parsed.rest
        for parser in required:
            parsed = parser(rest)
            if parsed is None:
                found = rest.rest[:1] or "end of input"
                raise ArborSyntaxError(
                    message or f"Unexpected {found!r}",
                    rest.location(min(rest.pos + 1, len(rest.source))),
                )
            values.append(parsed.value)
            rest = parsed.rest
        return Parsed(values, rest)

    return parse_forced_sequence


def any_of(*parsers: Parser) -> Parser:
    def parse_any(cursor: Cursor) -> Optional[Parsed]:
        for parser in parsers:
            parsed = parser(cursor)
            if parsed is not None:
                return parsed
        return None

    return parse_any


def optional(parser: Parser) -> Parser:
    def parse_optional(cursor: Cursor) -> Parsed:
        parsed = parser(cursor)
        if parsed is None:
            return Parsed(None, cursor)
        return parsed

    return parse_optional


def series(parser: Parser) -> Parser:
    """One or more consecutive matches."""
    def parse_series(cursor: Cursor) -> Optional[Parsed]:
        parsed = parser(cursor)
        if parsed is None:
            return None
        values = []
        rest = cursor
        while parsed is not None:
            values.append(parsed.value)
            if parsed.rest.pos == rest.pos:
                break
            rest = parsed.rest
            parsed = parser(rest)
        return Parsed(values, rest)

    return parse_series


def separated_list(term: Parser, separator: Parser, return_separators: bool = False) -> Parser:
    """
    Zero or more terms divided by separators. Always succeeds; a trailing
    separator appends MISSING_TERM so callers can decide whether to allow it.
    """
    def parse_separated_list(cursor: Cursor) -> Parsed:
        values = []
        parsed_term = term(cursor)
        rest = cursor
        while parsed_term is not None:
            values.append(parsed_term.value)
            rest = parsed_term.rest
            parsed_separator = separator(rest)
            if parsed_separator is None:
                break
            if return_separators:
                values.append(parsed_separator.value)
            rest = parsed_separator.rest
            parsed_term = term(rest)
            if parsed_term is None:
                values.append(MISSING_TERM)
                break
        return Parsed(values, rest)

    return parse_separated_list


def map_value(parser: Parser, fn: Callable[[Any, Cursor, Cursor], Any]) -> Parser:
    """Transform a parser's value; `fn` also receives the start and end cursors."""
    def parse_mapped(cursor: Cursor) -> Optional[Parsed]:
        parsed = parser(cursor)
        if parsed is None:
            return None
        return Parsed(fn(parsed.value, cursor, parsed.rest), parsed.rest)

    return parse_mapped


def lazy(factory: Callable[[], Parser]) -> Parser:
    """Defer building a parser until first use, for recursive grammars."""
    cache = []

    def parse_lazy(cursor: Cursor) -> Optional[Parsed]:
        if not cache:
            cache.append(factory())
        return cache[0](cursor)

    return parse_lazy
