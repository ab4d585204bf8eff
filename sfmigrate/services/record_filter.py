"""
In-memory evaluation of SOQL-style WHERE expressions.

Used for ``sourceRecordsFilter`` on endpoints that do not evaluate WHERE
themselves and for ``targetRecordsFilter`` on outgoing records. Supported:
AND / OR / NOT with parentheses, the comparison operators ``= != <> < > <=
>=``, ``IN`` / ``NOT IN`` lists, ``LIKE`` / ``NOT LIKE`` with ``%`` and ``_``
wildcards, and ``IS [NOT] NULL``. String comparisons ignore case. Literals
are quoted strings, numbers, unquoted dates and ``true`` / ``false`` /
``null``.
"""

import re
from typing import Any, Callable, List, Optional, Tuple

from ..exceptions import ConfigurationError
from ..models.record import Record
from .values import compare_values, values_equal

Predicate = Callable[[Record], bool]

_TOKEN_RE = re.compile(r"""
    \s*(?:
        (?P<string>'(?:[^'\\]|\\.)*')
      | (?P<date>\d{4}-\d{2}-\d{2}(?:T\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?)
      | (?P<number>[+-]?\d+(?:\.\d+)?)
      | (?P<op><>|!=|>=|<=|=|<|>)
      | (?P<punct>[(),])
      | (?P<word>[\w.$]+)
    )""", re.VERBOSE)

_KEYWORDS = ("AND", "OR", "NOT", "IN", "LIKE", "IS", "NULL")
_LITERAL_WORDS = {"TRUE": True, "FALSE": False, "NULL": None}


def _tokenize(expression: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    position = 0
    text = expression.rstrip()
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if not match or match.end() == position:
            raise ConfigurationError(f"Unexpected text in filter at '{text[position:].strip()}'")
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        position = match.end()
    return tokens


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _like_pattern(pattern: str) -> "re.Pattern":
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


def _equals(left: Any, right: Any) -> bool:
    return values_equal(left, right) or compare_values(left, right) == 0


def _compare(operator: str, left: Any, right: Any) -> bool:
    if operator == "=":
        return _equals(left, right)
    if operator in ("!=", "<>"):
        return not _equals(left, right)
    order = compare_values(left, right)
    if order is None:
        return False
    return {
        "<": order < 0,
        ">": order > 0,
        "<=": order <= 0,
        ">=": order >= 0,
    }[operator]


class _Parser:
    """Recursive-descent parser turning tokens into a predicate."""

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.position = 0

    def parse(self) -> Predicate:
        if not self.tokens:
            raise ConfigurationError("Filter expression is empty")
        predicate = self._or()
        if self.position < len(self.tokens):
            self._fail(f"unexpected '{self.tokens[self.position][1]}'")
        return predicate

    def _fail(self, message: str):
        raise ConfigurationError(f"Invalid filter '{self.expression}': {message}")

    def _peek(self) -> Tuple[str, str]:
        if self.position < len(self.tokens):
            return self.tokens[self.position]
        return ("end", "")

    def _next(self) -> Tuple[str, str]:
        token = self._peek()
        if token[0] == "end":
            self._fail("unexpected end of expression")
        self.position += 1
        return token

    def _accept_word(self, word: str) -> bool:
        kind, text = self._peek()
        if kind == "word" and text.upper() == word:
            self.position += 1
            return True
        return False

    def _expect_punct(self, char: str) -> None:
        kind, text = self._next()
        if kind != "punct" or text != char:
            self._fail(f"expected '{char}' but found '{text}'")

    def _or(self) -> Predicate:
        operands = [self._and()]
        while self._accept_word("OR"):
            operands.append(self._and())
        if len(operands) == 1:
            return operands[0]
        return lambda record: any(p(record) for p in operands)

    def _and(self) -> Predicate:
        operands = [self._not()]
        while self._accept_word("AND"):
            operands.append(self._not())
        if len(operands) == 1:
            return operands[0]
        return lambda record: all(p(record) for p in operands)

    def _not(self) -> Predicate:
        if self._accept_word("NOT"):
            inner = self._not()
            return lambda record: not inner(record)
        if self._peek() == ("punct", "("):
            self.position += 1
            inner = self._or()
            self._expect_punct(")")
            return inner
        return self._comparison()

    def _value(self) -> Any:
        kind, text = self._next()
        if kind == "string":
            return re.sub(r"\\(.)", r"\1", text[1:-1])
        if kind in ("number", "date"):
            return text
        if kind == "word" and text.upper() in _LITERAL_WORDS:
            return _LITERAL_WORDS[text.upper()]
        self._fail(f"expected a value but found '{text}'")

    def _values(self) -> List[Any]:
        self._expect_punct("(")
        values = [self._value()]
        while self._peek() == ("punct", ","):
            self.position += 1
            values.append(self._value())
        self._expect_punct(")")
        return values

    def _comparison(self) -> Predicate:
        kind, field_name = self._next()
        if kind != "word" or field_name.upper() in _KEYWORDS:
            self._fail(f"expected a field name but found '{field_name}'")

        if self._accept_word("IS"):
            negate = self._accept_word("NOT")
            if not self._accept_word("NULL"):
                self._fail("expected NULL after IS")
            return lambda record: _is_empty(record.get_value(field_name)) != negate

        negate = self._accept_word("NOT")
        if self._accept_word("IN"):
            values = self._values()
            return lambda record: any(_equals(record.get_value(field_name), v) for v in values) != negate
        if self._accept_word("LIKE"):
            pattern = _like_pattern(str(self._value() or ""))

            def like(record: Record) -> bool:
                value = record.get_value(field_name)
                matched = not _is_empty(value) and bool(pattern.fullmatch(str(value)))
                return matched != negate
            return like
        if negate:
            self._fail("expected IN or LIKE after NOT")

        kind, operator = self._next()
        if kind != "op":
            self._fail(f"expected an operator after '{field_name}' but found '{operator}'")
        value = self._value()
        return lambda record: _compare(operator, record.get_value(field_name), value)


def compile_filter(expression: str) -> Predicate:
    """
    Compile a filter expression into a predicate over records.

    Raises:
        ConfigurationError: if the expression cannot be parsed
    """
    return _Parser(expression).parse()


def filter_records(records: List[Record], expression: Optional[str]) -> List[Record]:
    """Return the records matching the expression; all of them when it is blank."""
    if not expression or not expression.strip():
        return list(records)
    predicate = compile_filter(expression)
    return [record for record in records if predicate(record)]
