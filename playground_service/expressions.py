"""
Condition expressions for ``condition`` actions.

Small tokenizer + recursive-descent evaluator. Supported:

    literals     10, 0.5, 'execute', "execute", true, false, null
    names        step_0.balance, step_2.parameters.amount, threshold
    comparison   == != > < >= <=   (=== and !== are accepted as aliases)
    boolean      && || !   and / or / not
    grouping     ( ... )

Names are looked up through the caller-supplied ``resolve_name``. When a
number is compared with a numeric string the string is coerced, so
``step_0.balance > 10`` works on the decimal-string balances executors emit.
Nothing is ever handed to ``eval``.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, List, Optional, Tuple

from .errors import ConditionSyntaxError

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<number>\d+(?:\.\d+)?)
      | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<op>===|!==|==|!=|>=|<=|&&|\|\||[<>!()\-])
      | (?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.(?:[A-Za-z_][A-Za-z0-9_]*|\d+))*)
    )""",
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None, "none": None}
_COMPARISONS = {"==", "!=", ">", "<", ">=", "<="}
_ALIASES = {"===": "==", "!==": "!=", "and": "&&", "or": "||", "not": "!"}

Token = Tuple[str, Any]


def tokenize(expression: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    text = expression.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise ConditionSyntaxError(f"unexpected character at position {pos} in '{expression}'")
        pos = m.end()
        if m.group("number") is not None:
            tokens.append(("num", Decimal(m.group("number"))))
        elif m.group("string") is not None:
            raw = m.group("string")[1:-1]
            tokens.append(("str", re.sub(r"\\(.)", r"\1", raw)))
        elif m.group("op") is not None:
            op = m.group("op")
            tokens.append(("op", _ALIASES.get(op, op)))
        else:
            name = m.group("name")
            lowered = name.lower()
            if lowered in _ALIASES:
                tokens.append(("op", _ALIASES[lowered]))
            elif lowered in _KEYWORDS:
                tokens.append(("lit", _KEYWORDS[lowered]))
            else:
                tokens.append(("name", name))
    return tokens


def _as_number(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            return None
    return None


def compare(op: str, left: Any, right: Any) -> bool:
    lnum, rnum = _as_number(left), _as_number(right)
    numeric = lnum is not None and rnum is not None and (
        not isinstance(left, str) or not isinstance(right, str)
    )
    if numeric:
        left, right = lnum, rnum
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    try:
        if op == ">":
            return left > right
        if op == "<":
            return left < right
        if op == ">=":
            return left >= right
        return left <= right
    except TypeError:
        raise ConditionSyntaxError(f"cannot compare {left!r} {op} {right!r}")


class _Parser:
    def __init__(self, tokens: List[Token], resolve_name: Callable[[str], Any], source: str):
        self.tokens = tokens
        self.pos = 0
        self.resolve_name = resolve_name
        self.source = source

    def peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> Token:
        tok = self.peek()
        if tok is None:
            raise ConditionSyntaxError(f"unexpected end of expression '{self.source}'")
        self.pos += 1
        return tok

    def at_op(self, *ops: str) -> bool:
        tok = self.peek()
        return tok is not None and tok[0] == "op" and tok[1] in ops

    def parse(self) -> Any:
        value = self.parse_or()
        if self.peek() is not None:
            raise ConditionSyntaxError(f"unexpected token '{self.peek()[1]}' in '{self.source}'")
        return value

    def parse_or(self) -> Any:
        value = self.parse_and()
        while self.at_op("||"):
            self.take()
            rhs = self.parse_and()
            value = bool(value) or bool(rhs)
        return value

    def parse_and(self) -> Any:
        value = self.parse_not()
        while self.at_op("&&"):
            self.take()
            rhs = self.parse_not()
            value = bool(value) and bool(rhs)
        return value

    def parse_not(self) -> Any:
        if self.at_op("!"):
            self.take()
            return not bool(self.parse_not())
        return self.parse_comparison()

    def parse_comparison(self) -> Any:
        left = self.parse_primary()
        tok = self.peek()
        if tok is not None and tok[0] == "op" and tok[1] in _COMPARISONS:
            self.take()
            right = self.parse_primary()
            return compare(tok[1], left, right)
        return left

    def parse_primary(self) -> Any:
        kind, value = self.take()
        if kind in ("num", "str", "lit"):
            return value
        if kind == "name":
            return self.resolve_name(value)
        if value == "-":
            operand = _as_number(self.parse_primary())
            if operand is None:
                raise ConditionSyntaxError(f"'-' applied to a non-number in '{self.source}'")
            return -operand
        if value == "(":
            inner = self.parse_or()
            if not self.at_op(")"):
                raise ConditionSyntaxError(f"missing ')' in '{self.source}'")
            self.take()
            return inner
        raise ConditionSyntaxError(f"unexpected token '{value}' in '{self.source}'")


def evaluate_condition(expression: str, resolve_name: Callable[[str], Any]) -> bool:
    """Evaluate ``expression`` to a bool.

    Raises ConditionSyntaxError for malformed input; whatever ``resolve_name``
    raises for unknown or unresolvable names propagates unchanged.
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ConditionSyntaxError("condition expression is empty")
    tokens = tokenize(expression)
    return bool(_Parser(tokens, resolve_name, expression).parse())
