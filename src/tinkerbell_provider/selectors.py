"""Label selectors: validation, matching and the textual selector grammar.

A Selector is an AND of Requirements. Two ways to build one:

- from a LabelSelector model (matchLabels + matchExpressions), as carried
  by hardware affinity terms;
- from text, e.g. ``"type=worker,rack in (r1,r2),!v1alpha1.tinkerbell.org/ownerName"``.

Both paths validate keys and values and raise SelectorError on anything
malformed; a broken constraint must never degrade to "no constraint".
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from .errors import SelectorError
from .models import LabelSelector

# Qualified label key: optional DNS-subdomain prefix plus a name segment
MAX_LABEL_KEY_PREFIX_LENGTH = 253
MAX_LABEL_NAME_LENGTH = 63
MAX_LABEL_VALUE_LENGTH = 63

_DNS_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_LABEL_NAME = re.compile(r"^[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$")
_LABEL_VALUE = re.compile(r"^(([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?$")

_SET_CLAUSE = re.compile(r"^(?P<key>[^\s=!(),]+)\s+(?P<op>in|notin)\s*\((?P<values>[^()]*)\)$")
_EQUALITY_CLAUSE = re.compile(r"^(?P<key>[^\s=!(),]+)\s*(?P<op>==|=|!=)\s*(?P<value>[^\s=!(),]*)$")
_NOT_EXISTS_CLAUSE = re.compile(r"^!\s*(?P<key>[^\s=!(),]+)$")
_EXISTS_CLAUSE = re.compile(r"^(?P<key>[^\s=!(),]+)$")


class Operator(str, Enum):
    """Selector operators; matchLabels entries compile to EQUALS."""

    EQUALS = "="
    NOT_EQUALS = "!="
    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"


_SET_OPERATORS = {Operator.EQUALS, Operator.NOT_EQUALS, Operator.IN, Operator.NOT_IN}
_EXPRESSION_OPERATORS = {
    "In": Operator.IN,
    "NotIn": Operator.NOT_IN,
    "Exists": Operator.EXISTS,
    "DoesNotExist": Operator.DOES_NOT_EXIST,
}


def validate_label_key(key: str) -> str | None:
    """Return a description of what is wrong with ``key``, or None if valid."""
    prefix, _, name = key.rpartition("/")
    if "/" in key:
        if not prefix or len(prefix) > MAX_LABEL_KEY_PREFIX_LENGTH:
            return f"prefix of {key!r} must be 1-{MAX_LABEL_KEY_PREFIX_LENGTH} characters"
        if not _DNS_SUBDOMAIN.match(prefix):
            return f"prefix of {key!r} must be a DNS subdomain"
    if not name or len(name) > MAX_LABEL_NAME_LENGTH:
        return f"name of {key!r} must be 1-{MAX_LABEL_NAME_LENGTH} characters"
    if not _LABEL_NAME.match(name):
        return f"name of {key!r} must be alphanumeric with '-', '_' or '.' inside"
    return None


def validate_label_value(value: str) -> str | None:
    if len(value) > MAX_LABEL_VALUE_LENGTH:
        return f"value {value!r} exceeds {MAX_LABEL_VALUE_LENGTH} characters"
    if not _LABEL_VALUE.match(value):
        return f"value {value!r} must be alphanumeric with '-', '_' or '.' inside"
    return None


@dataclass(frozen=True)
class Requirement:
    """One key/operator/values clause of a selector."""

    key: str
    operator: Operator
    values: tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        if self.operator is Operator.EXISTS:
            return self.key in labels
        if self.operator is Operator.DOES_NOT_EXIST:
            return self.key not in labels
        if self.operator in (Operator.EQUALS, Operator.IN):
            return self.key in labels and labels[self.key] in self.values
        # NOT_EQUALS / NOT_IN: an absent key satisfies the clause
        return self.key not in labels or labels[self.key] not in self.values

    def __str__(self) -> str:
        if self.operator is Operator.EXISTS:
            return self.key
        if self.operator is Operator.DOES_NOT_EXIST:
            return f"!{self.key}"
        if self.operator is Operator.EQUALS:
            return f"{self.key}={self.values[0]}"
        if self.operator is Operator.NOT_EQUALS:
            return f"{self.key}!={self.values[0]}"
        keyword = "in" if self.operator is Operator.IN else "notin"
        return f"{self.key} {keyword} ({','.join(self.values)})"


def requirement(key: str, operator: Operator, values: Iterable[str] = ()) -> Requirement:
    """Build a validated Requirement.

    Raises:
        SelectorError: If the key, any value, or the value count is invalid
            for the operator.
    """
    values = tuple(values)
    problem = validate_label_key(key)
    if problem:
        raise SelectorError(f"invalid label key: {problem}", key=key)

    if operator in _SET_OPERATORS:
        if not values:
            raise SelectorError(
                f"operator {operator.value} on {key!r} requires at least one value", key=key
            )
        if operator in (Operator.EQUALS, Operator.NOT_EQUALS) and len(values) != 1:
            raise SelectorError(
                f"operator {operator.value} on {key!r} requires exactly one value", key=key
            )
    elif values:
        raise SelectorError(
            f"operator {operator.value} on {key!r} does not take values", key=key
        )

    for value in values:
        problem = validate_label_value(value)
        if problem:
            raise SelectorError(f"invalid label value for {key!r}: {problem}", key=key)

    # Sorted values keep the text form stable
    return Requirement(key=key, operator=operator, values=tuple(sorted(values)))


@dataclass(frozen=True)
class Selector:
    """AND of requirements. The empty selector matches every label set."""

    requirements: tuple[Requirement, ...] = field(default_factory=tuple)

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        labels = labels or {}
        return all(req.matches(labels) for req in self.requirements)

    def with_requirement(self, req: Requirement) -> Selector:
        return Selector(requirements=(*self.requirements, req))

    @property
    def empty(self) -> bool:
        return not self.requirements

    def __str__(self) -> str:
        return ",".join(str(req) for req in self.requirements)

    @classmethod
    def everything(cls) -> Selector:
        return cls()

    @classmethod
    def from_labels(cls, labels: Mapping[str, str]) -> Selector:
        """Equality selector for every key/value pair in ``labels``."""
        return cls(
            requirements=tuple(
                requirement(key, Operator.EQUALS, [value]) for key, value in sorted(labels.items())
            )
        )

    @classmethod
    def from_label_selector(cls, label_selector: LabelSelector | None) -> Selector:
        """Compile a LabelSelector model.

        Raises:
            SelectorError: If any matchLabels entry or matchExpressions
                requirement is malformed.
        """
        if label_selector is None:
            return cls()

        try:
            reqs = [
                requirement(key, Operator.EQUALS, [value])
                for key, value in sorted(label_selector.match_labels.items())
            ]
            for expr in label_selector.match_expressions:
                operator = _EXPRESSION_OPERATORS.get(expr.operator)
                if operator is None:
                    raise SelectorError(
                        f"{expr.operator!r} is not a valid label selector operator",
                        key=expr.key,
                    )
                reqs.append(requirement(expr.key, operator, expr.values))
        except SelectorError as e:
            e.context.setdefault("selector", label_selector.model_dump(by_alias=True))
            raise

        return cls(requirements=tuple(reqs))

    @classmethod
    def parse(cls, text: str) -> Selector:
        """Parse the textual selector grammar.

        Supported clauses, comma-separated and AND-combined:
        ``k=v``, ``k==v``, ``k!=v``, ``k``, ``!k``, ``k in (a,b)``,
        ``k notin (a,b)``.

        Raises:
            SelectorError: On any clause that does not parse or validate.
        """
        if not text.strip():
            return cls()

        reqs: list[Requirement] = []
        for clause in _split_clauses(text):
            try:
                reqs.append(_parse_clause(clause))
            except SelectorError as e:
                e.context.setdefault("selector", text)
                raise
        return cls(requirements=tuple(reqs))


def _split_clauses(text: str) -> list[str]:
    """Split on commas that are not inside a parenthesised value list."""
    clauses: list[str] = []
    depth = 0
    current: list[str] = []
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise SelectorError(f"unbalanced ')' in selector {text!r}", selector=text)
        if char == "," and depth == 0:
            clauses.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    if depth != 0:
        raise SelectorError(f"unbalanced '(' in selector {text!r}", selector=text)
    clauses.append("".join(current).strip())

    if any(not clause for clause in clauses):
        raise SelectorError(f"empty clause in selector {text!r}", selector=text)
    return clauses


def _parse_clause(clause: str) -> Requirement:
    match = _SET_CLAUSE.match(clause)
    if match:
        operator = Operator.IN if match.group("op") == "in" else Operator.NOT_IN
        values = [v.strip() for v in match.group("values").split(",") if v.strip()]
        return requirement(match.group("key"), operator, values)

    match = _EQUALITY_CLAUSE.match(clause)
    if match:
        operator = Operator.NOT_EQUALS if match.group("op") == "!=" else Operator.EQUALS
        return requirement(match.group("key"), operator, [match.group("value")])

    match = _NOT_EXISTS_CLAUSE.match(clause)
    if match:
        return requirement(match.group("key"), Operator.DOES_NOT_EXIST)

    match = _EXISTS_CLAUSE.match(clause)
    if match:
        return requirement(match.group("key"), Operator.EXISTS)

    raise SelectorError(f"unable to parse selector clause {clause!r}", clause=clause)
