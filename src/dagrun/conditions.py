# conditions.py
"""
Job/step activation conditions.

A condition is a tiny boolean language over the RunContext:

    event == 'pull_request' && (contains(pr.title, 'Week') || contains(pr.labels, 'student'))
    branch == 'develop' || ref == 'refs/heads/main'
    needs.test.result == 'failed'
    failure()

`!` applies to the operand right after it, so `!a == b` is `(!a) == b`.
`not` binds looser than comparisons: `not a == b` is `!(a == b)`.

Conditions may be given as strings (parsed here) or built directly from the
node classes below. Evaluation is pure: same condition + same context (+ same
upstream results) always gives the same answer.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterable, Iterator, Mapping, Optional, Set, Tuple

from .errors import ConditionError
from .model import RunContext


CONTEXT_FIELDS = ("event", "ref", "branch", "tag", "sha", "actor", "pr.title", "pr.labels")

# name -> arity
FUNCTIONS = {
    "contains": 2,
    "startswith": 2,
    "endswith": 2,
    "success": 0,
    "failure": 0,
    "always": 0,
    "cancelled": 0,
}

# Upstream job results as seen by conditions (aggregated per job).
RESULT_VALUES = ("succeeded", "failed", "skipped", "cancelled")


@dataclass(frozen=True)
class _Scope:
    context: RunContext
    results: Mapping[str, str]


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

class Condition:
    """Base class for condition nodes."""

    def value(self, scope: _Scope) -> Any:
        raise NotImplementedError

    def children(self) -> Tuple["Condition", ...]:
        return ()

    def __and__(self, other: "Condition") -> "And":
        return And((self, other))

    def __or__(self, other: "Condition") -> "Or":
        return Or((self, other))

    def __invert__(self) -> "Not":
        return Not(self)


@dataclass(frozen=True)
class Literal(Condition):
    literal: Any

    def value(self, scope: _Scope) -> Any:
        return self.literal


@dataclass(frozen=True)
class Field(Condition):
    path: str

    def value(self, scope: _Scope) -> Any:
        ctx = scope.context
        if self.path == "pr.title":
            return ctx.pr_title or ""
        if self.path == "pr.labels":
            return list(ctx.pr_labels)
        if self.path.startswith("inputs."):
            return ctx.inputs.get(self.path[len("inputs."):], "")
        if self.path == "tag":
            return ctx.tag or ""
        return getattr(ctx, self.path)


@dataclass(frozen=True)
class JobResult(Condition):
    """Aggregated result of an upstream job: succeeded/failed/skipped/cancelled."""
    job: str

    def value(self, scope: _Scope) -> Any:
        return scope.results.get(self.job, "")


@dataclass(frozen=True)
class StatusCheck(Condition):
    """success() / failure() / always() / cancelled() over the direct dependencies."""
    kind: str

    def value(self, scope: _Scope) -> Any:
        results = scope.results.values()
        if self.kind == "always":
            return True
        if self.kind == "failure":
            return any(r == "failed" for r in results)
        if self.kind == "cancelled":
            return any(r == "cancelled" for r in results)
        return all(r in ("succeeded", "skipped") for r in results)


@dataclass(frozen=True)
class Equals(Condition):
    left: Condition
    right: Condition

    def value(self, scope: _Scope) -> Any:
        return self.left.value(scope) == self.right.value(scope)

    def children(self) -> Tuple[Condition, ...]:
        return (self.left, self.right)


@dataclass(frozen=True)
class Contains(Condition):
    """Substring test for strings, membership test for lists."""
    haystack: Condition
    needle: Condition

    def value(self, scope: _Scope) -> Any:
        hay = self.haystack.value(scope)
        needle = self.needle.value(scope)
        if isinstance(hay, (list, tuple)):
            return str(needle) in [str(h) for h in hay]
        return str(needle) in str(hay)

    def children(self) -> Tuple[Condition, ...]:
        return (self.haystack, self.needle)


@dataclass(frozen=True)
class StartsWith(Condition):
    subject: Condition
    prefix: Condition

    def value(self, scope: _Scope) -> Any:
        return str(self.subject.value(scope)).startswith(str(self.prefix.value(scope)))

    def children(self) -> Tuple[Condition, ...]:
        return (self.subject, self.prefix)


@dataclass(frozen=True)
class EndsWith(Condition):
    subject: Condition
    suffix: Condition

    def value(self, scope: _Scope) -> Any:
        return str(self.subject.value(scope)).endswith(str(self.suffix.value(scope)))

    def children(self) -> Tuple[Condition, ...]:
        return (self.subject, self.suffix)


@dataclass(frozen=True)
class And(Condition):
    terms: Tuple[Condition, ...]

    def value(self, scope: _Scope) -> Any:
        return all(_truthy(t.value(scope)) for t in self.terms)

    def children(self) -> Tuple[Condition, ...]:
        return self.terms


@dataclass(frozen=True)
class Or(Condition):
    terms: Tuple[Condition, ...]

    def value(self, scope: _Scope) -> Any:
        return any(_truthy(t.value(scope)) for t in self.terms)

    def children(self) -> Tuple[Condition, ...]:
        return self.terms


@dataclass(frozen=True)
class Not(Condition):
    term: Condition

    def value(self, scope: _Scope) -> Any:
        return not _truthy(self.term.value(scope))

    def children(self) -> Tuple[Condition, ...]:
        return (self.term,)


def _truthy(v: Any) -> bool:
    if isinstance(v, str):
        return v != "" and v.lower() != "false"
    return bool(v)


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<op>==|!=|&&|\|\||!|\(|\)|,)
      | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_][A-Za-z0-9_\-]*)*)
    )
    """,
    re.VERBOSE,
)


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    stripped = text.rstrip()
    while pos < len(stripped):
        m = _TOKEN_RE.match(stripped, pos)
        if not m or m.end() == pos:
            raise ConditionError(text, f"unexpected character at offset {pos}: {stripped[pos:pos + 10]!r}")
        kind = m.lastgroup or ""
        raw = m.group(kind)
        if kind == "string":
            raw = re.sub(r"\\(.)", r"\1", raw[1:-1])
        tokens.append((kind, raw))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    # helpers
    def _peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _accept(self, *values: str) -> bool:
        tok = self._peek()
        if tok and tok[0] in ("op", "name") and tok[1] in values:
            self.pos += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            tok = self._peek()
            found = tok[1] if tok else "end of expression"
            raise ConditionError(self.text, f"expected {value!r}, found {found!r}")

    def _fail(self, message: str) -> ConditionError:
        return ConditionError(self.text, message)

    # grammar
    def parse(self) -> Condition:
        if not self.tokens:
            raise self._fail("empty expression")
        node = self._or()
        if self._peek() is not None:
            raise self._fail(f"unexpected token {self._peek()[1]!r}")
        return node

    def _or(self) -> Condition:
        terms = [self._and()]
        while self._accept("||", "or"):
            terms.append(self._and())
        return terms[0] if len(terms) == 1 else Or(tuple(terms))

    def _and(self) -> Condition:
        terms = [self._unary()]
        while self._accept("&&", "and"):
            terms.append(self._unary())
        return terms[0] if len(terms) == 1 else And(tuple(terms))

    def _unary(self) -> Condition:
        if self._accept("not"):
            return Not(self._unary())
        return self._comparison()

    def _comparison(self) -> Condition:
        left = self._prefixed()
        if self._accept("=="):
            return Equals(left, self._prefixed())
        if self._accept("!="):
            return Not(Equals(left, self._prefixed()))
        return left

    def _prefixed(self) -> Condition:
        if self._accept("!"):
            return Not(self._prefixed())
        return self._operand()

    def _operand(self) -> Condition:
        tok = self._peek()
        if tok is None:
            raise self._fail("unexpected end of expression")
        kind, raw = tok

        if kind == "op" and raw == "(":
            self.pos += 1
            node = self._or()
            self._expect(")")
            return node
        if kind == "string":
            self.pos += 1
            return Literal(raw)
        if kind != "name":
            raise self._fail(f"unexpected token {raw!r}")

        self.pos += 1
        if raw in ("true", "false"):
            return Literal(raw == "true")
        nxt = self._peek()
        if nxt == ("op", "("):
            return self._call(raw)
        return field_node(raw, self.text)

    def _call(self, name: str) -> Condition:
        fname = name.lower()
        if fname not in FUNCTIONS:
            raise self._fail(f"unknown function {name!r}")
        self._expect("(")
        args: list[Condition] = []
        if not self._accept(")"):
            args.append(self._or())
            while self._accept(","):
                args.append(self._or())
            self._expect(")")
        if len(args) != FUNCTIONS[fname]:
            raise self._fail(f"{name}() takes {FUNCTIONS[fname]} argument(s), got {len(args)}")

        if fname == "contains":
            return Contains(args[0], args[1])
        if fname == "startswith":
            return StartsWith(args[0], args[1])
        if fname == "endswith":
            return EndsWith(args[0], args[1])
        return StatusCheck(fname)


def field_node(path: str, expression: str = "") -> Condition:
    """Turn a dotted reference into a Field/JobResult, rejecting unknown names."""
    if path in CONTEXT_FIELDS:
        return Field(path)
    parts = path.split(".")
    if parts[0] == "inputs" and len(parts) == 2:
        return Field(path)
    if parts[0] == "needs" and len(parts) == 3 and parts[2] == "result":
        return JobResult(parts[1])
    raise ConditionError(expression or path, f"unknown field {path!r}")


@lru_cache(maxsize=512)
def parse_condition(text: str) -> Condition:
    return _Parser(text).parse()


# ---------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------

def compile_condition(condition: Any) -> Optional[Condition]:
    """None / bool / str / Condition -> Condition (or None for 'always run')."""
    if condition is None:
        return None
    if isinstance(condition, Condition):
        return condition
    if isinstance(condition, bool):
        return Literal(condition)
    if isinstance(condition, str):
        if not condition.strip():
            return None
        return parse_condition(condition.strip())
    raise ConditionError(repr(condition), f"unsupported condition type {type(condition).__name__}")


def walk(node: Condition) -> Iterator[Condition]:
    yield node
    for child in node.children():
        yield from walk(child)


def referenced_jobs(node: Optional[Condition]) -> Set[str]:
    if node is None:
        return set()
    return {n.job for n in walk(node) if isinstance(n, JobResult)}


def is_status_aware(node: Optional[Condition]) -> bool:
    """True if the condition looks at upstream results (so it must wait for them)."""
    if node is None:
        return False
    return any(isinstance(n, (JobResult, StatusCheck)) for n in walk(node))


def validate(condition: Any, dependencies: Iterable[str], *, owner: str = "") -> Optional[Condition]:
    """
    Compile and check a condition at graph-build time.

    Raises ConditionError for syntax errors, unknown fields/functions, and
    needs.<job> references to jobs that are not direct dependencies.
    """
    node = compile_condition(condition)
    if node is None:
        return None
    expression = condition if isinstance(condition, str) else repr(condition)

    deps = set(dependencies)
    for n in walk(node):
        if isinstance(n, Field):
            field_node(n.path, expression)
        elif isinstance(n, StatusCheck) and n.kind not in FUNCTIONS:
            raise ConditionError(expression, f"unknown status check {n.kind!r}")
        elif isinstance(n, JobResult) and n.job not in deps:
            where = f" of job '{owner}'" if owner else ""
            raise ConditionError(
                expression,
                f"needs.{n.job}.result refers to a job that is not a dependency{where}",
            )
    return node


def evaluate(
    condition: Any,
    context: RunContext,
    results: Optional[Mapping[str, str]] = None,
) -> bool:
    """Evaluate `condition` against the run context (and upstream job results)."""
    node = compile_condition(condition)
    if node is None:
        return True
    return _truthy(node.value(_Scope(context=context, results=dict(results or {}))))
