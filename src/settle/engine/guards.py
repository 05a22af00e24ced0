"""
Settle Guard Expressions

Task guards (``when:``) compile to a small closed expression tree that is
evaluated against a host's immutable facts. Strings are parsed with the
Jinja2 expression parser; only equality, membership, ``is defined`` tests
and boolean combinators are accepted.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, FrozenSet, List, Mapping, Tuple, Union

from jinja2 import Environment, TemplateSyntaxError, nodes
from jinja2.parser import Parser

from settle.engine.errors import PlanError

_env = Environment()


class UndefinedFact(LookupError):
    """A guard referenced a fact the host does not have."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(name)


class Expr(ABC):
    """Base class for guard expression nodes."""

    @abstractmethod
    def evaluate(self, facts: Mapping[str, Any]) -> Any:
        """Value of the expression for one host."""
        pass

    def fact_keys(self) -> FrozenSet[str]:
        """Facts that must be defined for evaluation to succeed."""
        return frozenset()


@dataclass(frozen=True)
class Fact(Expr):
    name: str

    def evaluate(self, facts: Mapping[str, Any]) -> Any:
        if self.name not in facts:
            raise UndefinedFact(self.name)
        return facts[self.name]

    def fact_keys(self) -> FrozenSet[str]:
        return frozenset([self.name])

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Lookup(Expr):
    """Attribute or key access into a mapping fact (``facts.os_family``)."""

    base: Expr
    key: Any

    def evaluate(self, facts: Mapping[str, Any]) -> Any:
        container = self.base.evaluate(facts)
        if not isinstance(container, Mapping) or self.key not in container:
            raise UndefinedFact(f"{self.base}.{self.key}")
        return container[self.key]

    def fact_keys(self) -> FrozenSet[str]:
        return self.base.fact_keys()

    def __str__(self) -> str:
        return f"{self.base}.{self.key}"


@dataclass(frozen=True)
class Literal(Expr):
    value: Any

    def evaluate(self, facts: Mapping[str, Any]) -> Any:
        return self.value


@dataclass(frozen=True)
class Sequence(Expr):
    items: Tuple[Expr, ...]

    def evaluate(self, facts: Mapping[str, Any]) -> Any:
        return [item.evaluate(facts) for item in self.items]

    def fact_keys(self) -> FrozenSet[str]:
        return frozenset().union(*(i.fact_keys() for i in self.items))


@dataclass(frozen=True)
class Equals(Expr):
    left: Expr
    right: Expr
    negate: bool = False

    def evaluate(self, facts: Mapping[str, Any]) -> bool:
        result = self.left.evaluate(facts) == self.right.evaluate(facts)
        return not result if self.negate else result

    def fact_keys(self) -> FrozenSet[str]:
        return self.left.fact_keys() | self.right.fact_keys()


@dataclass(frozen=True)
class Member(Expr):
    item: Expr
    container: Expr
    negate: bool = False

    def evaluate(self, facts: Mapping[str, Any]) -> bool:
        container = self.container.evaluate(facts)
        try:
            result = self.item.evaluate(facts) in container
        except TypeError:
            result = False
        return not result if self.negate else result

    def fact_keys(self) -> FrozenSet[str]:
        return self.item.fact_keys() | self.container.fact_keys()


@dataclass(frozen=True)
class Defined(Expr):
    name: str
    negate: bool = False

    def evaluate(self, facts: Mapping[str, Any]) -> bool:
        result = self.name in facts
        return not result if self.negate else result


@dataclass(frozen=True)
class And(Expr):
    operands: Tuple[Expr, ...]

    def evaluate(self, facts: Mapping[str, Any]) -> bool:
        return all(bool(op.evaluate(facts)) for op in self.operands)

    def fact_keys(self) -> FrozenSet[str]:
        return frozenset().union(*(op.fact_keys() for op in self.operands))


@dataclass(frozen=True)
class Or(Expr):
    operands: Tuple[Expr, ...]

    def evaluate(self, facts: Mapping[str, Any]) -> bool:
        return any(bool(op.evaluate(facts)) for op in self.operands)

    def fact_keys(self) -> FrozenSet[str]:
        return frozenset().union(*(op.fact_keys() for op in self.operands))


@dataclass(frozen=True)
class Not(Expr):
    operand: Expr

    def evaluate(self, facts: Mapping[str, Any]) -> bool:
        return not self.operand.evaluate(facts)

    def fact_keys(self) -> FrozenSet[str]:
        return self.operand.fact_keys()


@dataclass(frozen=True)
class Guard:
    """A compiled guard: the source text plus its expression tree."""

    source: str
    expr: Expr

    def evaluate(self, facts: Mapping[str, Any]) -> bool:
        """
        Evaluate against a host's facts.

        Raises:
            PlanError: the guard references a fact the host does not define
        """
        try:
            return bool(self.expr.evaluate(facts))
        except UndefinedFact as e:
            raise PlanError(f"guard '{self.source}' references undefined fact '{e.name}'")

    def fact_keys(self) -> FrozenSet[str]:
        return self.expr.fact_keys()

    def __str__(self) -> str:
        return self.source


GuardSource = Union[str, bool, List[Union[str, bool]]]


def compile_guard(source: GuardSource) -> Guard:
    """
    Compile a ``when:`` value into a Guard.

    Args:
        source: expression string, bool, or list of those (implicit "and")

    Raises:
        PlanError: syntax error or unsupported construct
    """
    if isinstance(source, list):
        if not source:
            raise PlanError("empty guard list")
        parts = [compile_guard(item) for item in source]
        if len(parts) == 1:
            return parts[0]
        text = ' and '.join(f"({p.source})" for p in parts)
        return Guard(text, And(tuple(p.expr for p in parts)))

    if isinstance(source, bool):
        return Guard(str(source).lower(), Literal(source))

    if not isinstance(source, str) or not source.strip():
        raise PlanError(f"guard must be a non-empty string, got {source!r}")

    text = source.strip()
    if text.startswith('{{') and text.endswith('}}'):
        text = text[2:-2].strip()

    try:
        parser = Parser(_env, text, state='variable')
        node = parser.parse_expression()
        if not parser.stream.eos:
            raise TemplateSyntaxError(
                "unexpected text after expression", parser.stream.current.lineno
            )
    except TemplateSyntaxError as e:
        raise PlanError(f"invalid guard '{text}': {e.message}")

    return Guard(text, _translate(node, text))


_COMPARISONS = {
    'eq': lambda left, right: Equals(left, right),
    'ne': lambda left, right: Equals(left, right, negate=True),
    'in': lambda left, right: Member(left, right),
    'notin': lambda left, right: Member(left, right, negate=True),
}


def _translate(node: nodes.Node, source: str) -> Expr:
    """Translate a Jinja2 expression node into the closed guard tree."""
    if isinstance(node, nodes.Name):
        return Fact(node.name)

    if isinstance(node, nodes.Const):
        return Literal(node.value)

    if isinstance(node, nodes.Getattr):
        return Lookup(_translate(node.node, source), node.attr)

    if isinstance(node, nodes.Getitem) and isinstance(node.arg, nodes.Const):
        return Lookup(_translate(node.node, source), node.arg.value)

    if isinstance(node, (nodes.List, nodes.Tuple)):
        return Sequence(tuple(_translate(item, source) for item in node.items))

    if isinstance(node, nodes.And):
        return And((_translate(node.left, source), _translate(node.right, source)))

    if isinstance(node, nodes.Or):
        return Or((_translate(node.left, source), _translate(node.right, source)))

    if isinstance(node, nodes.Not):
        inner = node.node
        if isinstance(inner, nodes.Test) and inner.name == 'defined':
            defined = _translate(inner, source)
            return Defined(defined.name, negate=True)
        return Not(_translate(inner, source))

    if isinstance(node, nodes.Test):
        if node.name in ('defined', 'undefined') and isinstance(node.node, nodes.Name) \
                and not node.args:
            return Defined(node.node.name, negate=node.name == 'undefined')
        raise PlanError(f"unsupported test '{node.name}' in guard '{source}'")

    if isinstance(node, nodes.Compare):
        left = _translate(node.expr, source)
        operands = []
        for operand in node.ops:
            if operand.op not in _COMPARISONS:
                raise PlanError(f"unsupported operator '{operand.op}' in guard '{source}'")
            right = _translate(operand.expr, source)
            operands.append(_COMPARISONS[operand.op](left, right))
            left = right
        return operands[0] if len(operands) == 1 else And(tuple(operands))

    raise PlanError(f"unsupported expression '{type(node).__name__}' in guard '{source}'")
