# expressions.py
"""
A small evaluator for `${{ ... }}` expressions and `if:` conditions.

Grammar (lowest precedence first):

    or      := and ( '||' and )*
    and     := eq ( '&&' eq )*
    eq      := cmp ( ( '==' | '!=' ) cmp )*
    cmp     := unary ( ( '<' | '<=' | '>' | '>=' ) unary )*
    unary   := '!' unary | postfix
    postfix := primary ( '.' name | '[' or ']' )*
    primary := literal | name '(' args ')' | name | '(' or ')'

Names resolve against an explicit, read-only `ExpressionContext`
(github, env, steps, needs, secrets, inputs, job, runner, matrix). Property
lookups are case-insensitive and missing properties evaluate to null.
Comparisons between strings are case-insensitive; mixed types compare as
numbers.
"""
from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import ExpressionError

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<number>0x[0-9a-fA-F]+|-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
      | (?P<string>'(?:[^']|'')*')
      | (?P<op>==|!=|<=|>=|&&|\|\||[<>!().,\[\]])
      | (?P<name>[A-Za-z_][A-Za-z0-9_-]*)
    )
    """,
    re.VERBOSE,
)

_INTERPOLATION_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})

Node = Tuple[Any, ...]


# ----------------------------------------------------------------------
# Context
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class JobState:
    """What the status functions see: has anything failed, was the run cancelled."""
    failed: bool = False
    cancelled: bool = False


@dataclass(frozen=True)
class ExpressionContext:
    contexts: Mapping[str, Any] = field(default_factory=dict)
    state: JobState = JobState()

    def __post_init__(self) -> None:
        object.__setattr__(self, "contexts", MappingProxyType(dict(self.contexts)))


# ----------------------------------------------------------------------
# Value semantics
# ----------------------------------------------------------------------

def plain(value: Any) -> Any:
    """Convert read-only mappings/tuples back to dict/list (for JSON)."""
    if isinstance(value, Mapping):
        return {k: plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [plain(v) for v in value]
    return value


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(plain(value), indent=2)
    return str(value)


def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)):
        return not (value == 0 or (isinstance(value, float) and math.isnan(value)))
    if isinstance(value, str):
        return value != ""
    return True


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0.0
        try:
            if text.lower().startswith("0x"):
                return float(int(text, 16))
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def loose_equals(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.casefold() == b.casefold()
    compound = (Mapping, list, tuple)
    if isinstance(a, compound) or isinstance(b, compound):
        return a is b
    return _to_number(a) == _to_number(b)


def _compare(op: str, a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        x: Any = a.casefold()
        y: Any = b.casefold()
    else:
        x, y = _to_number(a), _to_number(b)
        if math.isnan(x) or math.isnan(y):
            return False
    if op == "<":
        return x < y
    if op == "<=":
        return x <= y
    if op == ">":
        return x > y
    return x >= y


def _property(obj: Any, name: Any) -> Any:
    if isinstance(obj, Mapping):
        if name in obj:
            return obj[name]
        if isinstance(name, str):
            folded = name.casefold()
            for key, value in obj.items():
                if isinstance(key, str) and key.casefold() == folded:
                    return value
        return None
    if isinstance(obj, (list, tuple)):
        number = _to_number(name)
        if math.isnan(number) or not number.is_integer():
            return None
        i = int(number)
        return obj[i] if 0 <= i < len(obj) else None
    return None


# ----------------------------------------------------------------------
# Functions
# ----------------------------------------------------------------------

def _fn_contains(search: Any, item: Any) -> bool:
    if isinstance(search, (list, tuple)):
        return any(loose_equals(x, item) for x in search)
    return to_string(item).casefold() in to_string(search).casefold()


def _fn_starts_with(s: Any, prefix: Any) -> bool:
    return to_string(s).casefold().startswith(to_string(prefix).casefold())


def _fn_ends_with(s: Any, suffix: Any) -> bool:
    return to_string(s).casefold().endswith(to_string(suffix).casefold())


def _fn_format(fmt: Any, *args: Any) -> str:
    text = to_string(fmt)

    def repl(m: re.Match) -> str:
        if m.group(0) == "{{":
            return "{"
        if m.group(0) == "}}":
            return "}"
        i = int(m.group(1))
        if i >= len(args):
            raise ExpressionError(expression=text, reason=f"format() has no argument {i}")
        return to_string(args[i])

    return re.sub(r"\{\{|\}\}|\{(\d+)\}", repl, text)


def _fn_join(items: Any, sep: Any = ",") -> str:
    if isinstance(items, (list, tuple)):
        return to_string(sep).join(to_string(x) for x in items)
    return to_string(items)


def _fn_from_json(text: Any) -> Any:
    try:
        return json.loads(to_string(text))
    except json.JSONDecodeError as e:
        raise ExpressionError(expression=to_string(text), reason=f"fromJSON: {e}") from e


_FUNCTIONS: Dict[str, Tuple[Callable[..., Any], int, int]] = {
    # name: (impl, min args, max args)
    "contains": (_fn_contains, 2, 2),
    "startswith": (_fn_starts_with, 2, 2),
    "endswith": (_fn_ends_with, 2, 2),
    "format": (_fn_format, 1, 64),
    "join": (_fn_join, 1, 2),
    "tojson": (lambda v: json.dumps(plain(v), indent=2), 1, 1),
    "fromjson": (_fn_from_json, 1, 1),
}


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------

def _tokenize(source: str) -> List[Tuple[str, str, int]]:
    tokens: List[Tuple[str, str, int]] = []
    pos = 0
    end = len(source.rstrip())
    while pos < end:
        m = _TOKEN_RE.match(source, pos)
        if not m or m.end() == pos:
            raise ExpressionError(expression=source, reason="unexpected character", position=pos)
        kind = m.lastgroup or ""
        tokens.append((kind, m.group(kind), m.start(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.pos = 0

    def error(self, reason: str) -> ExpressionError:
        at = self.tokens[self.pos][2] if self.pos < len(self.tokens) else len(self.source)
        return ExpressionError(expression=self.source, reason=reason, position=at)

    def peek(self) -> Optional[Tuple[str, str, int]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def accept(self, *ops: str) -> Optional[str]:
        tok = self.peek()
        if tok and tok[0] == "op" and tok[1] in ops:
            self.pos += 1
            return tok[1]
        return None

    def expect(self, op: str) -> None:
        if not self.accept(op):
            raise self.error(f"expected '{op}'")

    def parse(self) -> Node:
        if not self.tokens:
            raise self.error("empty expression")
        node = self.parse_or()
        if self.peek() is not None:
            raise self.error(f"unexpected token {self.peek()[1]!r}")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.accept("||"):
            node = ("or", node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_eq()
        while self.accept("&&"):
            node = ("and", node, self.parse_eq())
        return node

    def parse_eq(self) -> Node:
        node = self.parse_cmp()
        while True:
            op = self.accept("==", "!=")
            if not op:
                return node
            node = ("eq" if op == "==" else "ne", node, self.parse_cmp())

    def parse_cmp(self) -> Node:
        node = self.parse_unary()
        while True:
            op = self.accept("<", "<=", ">", ">=")
            if not op:
                return node
            node = ("cmp", op, node, self.parse_unary())

    def parse_unary(self) -> Node:
        if self.accept("!"):
            return ("not", self.parse_unary())
        return self.parse_postfix()

    def parse_postfix(self) -> Node:
        node = self.parse_primary()
        while True:
            if self.accept("."):
                tok = self.peek()
                if not tok or tok[0] not in ("name", "number"):
                    raise self.error("expected a property name after '.'")
                self.pos += 1
                node = ("prop", node, tok[1])
            elif self.accept("["):
                index = self.parse_or()
                self.expect("]")
                node = ("index", node, index)
            else:
                return node

    def parse_primary(self) -> Node:
        tok = self.peek()
        if tok is None:
            raise self.error("unexpected end of expression")
        kind, text, _ = tok

        if kind == "number":
            self.pos += 1
            return ("lit", _to_number(text))
        if kind == "string":
            self.pos += 1
            return ("lit", text[1:-1].replace("''", "'"))
        if kind == "op" and text == "(":
            self.pos += 1
            node = self.parse_or()
            self.expect(")")
            return node
        if kind == "name":
            self.pos += 1
            lowered = text.lower()
            if lowered == "true":
                return ("lit", True)
            if lowered == "false":
                return ("lit", False)
            if lowered == "null":
                return ("lit", None)
            if self.accept("("):
                args: List[Node] = []
                if not self.accept(")"):
                    args.append(self.parse_or())
                    while self.accept(","):
                        args.append(self.parse_or())
                    self.expect(")")
                return self._call(lowered, args)
            return ("ctx", text)
        raise self.error(f"unexpected token {text!r}")

    def _call(self, name: str, args: List[Node]) -> Node:
        if name in STATUS_FUNCTIONS:
            if args:
                raise self.error(f"{name}() takes no arguments")
            return ("status", name)
        if name not in _FUNCTIONS:
            raise self.error(f"unknown function {name}()")
        _impl, lo, hi = _FUNCTIONS[name]
        if not lo <= len(args) <= hi:
            raise self.error(f"{name}() takes {lo}..{hi} arguments, got {len(args)}")
        return ("call", name, tuple(args))


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

def _walk(node: Node, ctx: ExpressionContext) -> Any:
    tag = node[0]
    if tag == "lit":
        return node[1]
    if tag == "ctx":
        return _property(ctx.contexts, node[1])
    if tag == "prop":
        return _property(_walk(node[1], ctx), node[2])
    if tag == "index":
        return _property(_walk(node[1], ctx), _walk(node[2], ctx))
    if tag == "not":
        return not truthy(_walk(node[1], ctx))
    if tag == "and":
        left = _walk(node[1], ctx)
        return _walk(node[2], ctx) if truthy(left) else left
    if tag == "or":
        left = _walk(node[1], ctx)
        return left if truthy(left) else _walk(node[2], ctx)
    if tag == "eq":
        return loose_equals(_walk(node[1], ctx), _walk(node[2], ctx))
    if tag == "ne":
        return not loose_equals(_walk(node[1], ctx), _walk(node[2], ctx))
    if tag == "cmp":
        return _compare(node[1], _walk(node[2], ctx), _walk(node[3], ctx))
    if tag == "status":
        name = node[1]
        if name == "always":
            return True
        if name == "cancelled":
            return ctx.state.cancelled
        if name == "failure":
            return ctx.state.failed and not ctx.state.cancelled
        return not ctx.state.failed and not ctx.state.cancelled
    if tag == "call":
        impl = _FUNCTIONS[node[1]][0]
        return impl(*(_walk(arg, ctx) for arg in node[2]))
    raise ExpressionError(expression=repr(node), reason=f"unknown node {tag!r}")


def _iter_nodes(node: Node):
    yield node
    for part in node[1:]:
        if not isinstance(part, tuple) or not part:
            continue
        if isinstance(part[0], str):
            yield from _iter_nodes(part)
        else:
            # argument list of a call
            for arg in part:
                yield from _iter_nodes(arg)


@dataclass(frozen=True)
class Expression:
    source: str
    ast: Node

    @property
    def uses_status_function(self) -> bool:
        return any(n[0] == "status" for n in _iter_nodes(self.ast))

    def evaluate(self, ctx: ExpressionContext) -> Any:
        return _walk(self.ast, ctx)


def _unwrap(source: str) -> str:
    text = source.strip()
    m = _INTERPOLATION_RE.fullmatch(text)
    return m.group(1) if m else text


@lru_cache(maxsize=1024)
def compile_expression(source: str) -> Expression:
    text = _unwrap(source)
    return Expression(source=text, ast=_Parser(text).parse())


def evaluate(source: str, ctx: ExpressionContext) -> Any:
    return compile_expression(source).evaluate(ctx)


def evaluate_condition(source: Optional[str], ctx: ExpressionContext) -> bool:
    """
    Evaluate an `if:` condition.

    No condition means `success()`. A condition that calls none of the status
    functions is implicitly `success() && (<condition>)`.
    """
    if source is None or (isinstance(source, str) and not source.strip()):
        return not ctx.state.failed and not ctx.state.cancelled
    if isinstance(source, bool):
        return source and not ctx.state.failed and not ctx.state.cancelled
    expr = compile_expression(str(source))
    if not expr.uses_status_function and (ctx.state.failed or ctx.state.cancelled):
        return False
    return truthy(expr.evaluate(ctx))


def interpolate(text: Any, ctx: ExpressionContext) -> Any:
    """Replace every `${{ expr }}` in a string; non-strings pass through."""
    if not isinstance(text, str) or "${{" not in text:
        return text
    return _INTERPOLATION_RE.sub(lambda m: to_string(evaluate(m.group(1), ctx)), text)


def interpolate_mapping(values: Mapping[str, Any], ctx: ExpressionContext) -> Dict[str, Any]:
    return {k: interpolate(v, ctx) for k, v in values.items()}
