"""Trigger condition language for approval chains.

Conditions are stored as JSON on the chain (``conditions_json``) and parsed
into a small, closed expression tree when the chain is configured. Parsing
checks field names, operators and literal types, so evaluation against a
request context cannot fail at runtime.

Node shapes::

    {"all": [node, ...]}
    {"any": [node, ...]}
    {"not": node}
    {"field": "amount", "op": "gte", "value": 10000}

Example::

    {"all": [
        {"field": "currency", "op": "in", "value": ["USD", "EUR"]},
        {"not": {"field": "requester_role", "op": "eq", "value": "admin"}}
    ]}
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from tradeguard.core.errors import ValidationError
from tradeguard.core.roles import Role

from .context import ApprovalContext, OperationType, to_amount


class ConditionOperator(str, Enum):
    """Comparison operators."""

    EQUALS = "eq"
    NOT_EQUALS = "ne"
    GREATER_THAN = "gt"
    GREATER_THAN_OR_EQUAL = "gte"
    LESS_THAN = "lt"
    LESS_THAN_OR_EQUAL = "lte"
    IN = "in"
    NOT_IN = "not_in"


class FieldKind(str, Enum):
    NUMBER = "number"
    STRING = "string"
    ROLE = "role"
    OPERATION = "operation"


# Closed set of context fields a condition may reference
CONTEXT_FIELDS: Dict[str, FieldKind] = {
    "amount": FieldKind.NUMBER,
    "currency": FieldKind.STRING,
    "requester_role": FieldKind.ROLE,
    "requester_id": FieldKind.STRING,
    "entity_type": FieldKind.STRING,
    "operation_type": FieldKind.OPERATION,
}

ORDERING_OPERATORS = {
    ConditionOperator.GREATER_THAN,
    ConditionOperator.GREATER_THAN_OR_EQUAL,
    ConditionOperator.LESS_THAN,
    ConditionOperator.LESS_THAN_OR_EQUAL,
}
MEMBERSHIP_OPERATORS = {ConditionOperator.IN, ConditionOperator.NOT_IN}


@dataclass(frozen=True)
class Comparison:
    field: str
    op: ConditionOperator
    value: Any  # normalised literal, a tuple for membership operators

    def evaluate(self, context: ApprovalContext, operation_type: Optional[OperationType] = None) -> bool:
        actual = context.field_value(self.field, operation_type)
        if actual is None:
            return False

        op = self.op
        if op == ConditionOperator.EQUALS:
            return actual == self.value
        if op == ConditionOperator.NOT_EQUALS:
            return actual != self.value
        if op == ConditionOperator.IN:
            return actual in self.value
        if op == ConditionOperator.NOT_IN:
            return actual not in self.value
        if op == ConditionOperator.GREATER_THAN:
            return actual > self.value
        if op == ConditionOperator.GREATER_THAN_OR_EQUAL:
            return actual >= self.value
        if op == ConditionOperator.LESS_THAN:
            return actual < self.value
        return actual <= self.value

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if isinstance(value, tuple):
            value = [_literal_to_json(v) for v in value]
        else:
            value = _literal_to_json(value)
        return {"field": self.field, "op": self.op.value, "value": value}


@dataclass(frozen=True)
class AllOf:
    children: Tuple["Condition", ...]

    def evaluate(self, context: ApprovalContext, operation_type: Optional[OperationType] = None) -> bool:
        return all(child.evaluate(context, operation_type) for child in self.children)

    def to_dict(self) -> Dict[str, Any]:
        return {"all": [child.to_dict() for child in self.children]}


@dataclass(frozen=True)
class AnyOf:
    children: Tuple["Condition", ...]

    def evaluate(self, context: ApprovalContext, operation_type: Optional[OperationType] = None) -> bool:
        return any(child.evaluate(context, operation_type) for child in self.children)

    def to_dict(self) -> Dict[str, Any]:
        return {"any": [child.to_dict() for child in self.children]}


@dataclass(frozen=True)
class Not:
    child: "Condition"

    def evaluate(self, context: ApprovalContext, operation_type: Optional[OperationType] = None) -> bool:
        return not self.child.evaluate(context, operation_type)

    def to_dict(self) -> Dict[str, Any]:
        return {"not": self.child.to_dict()}


Condition = Union[Comparison, AllOf, AnyOf, Not]


def _literal_to_json(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value) if value != value.to_integral_value() else int(value)
    return value


def _parse_literal(field: str, kind: FieldKind, value: Any) -> Any:
    if kind == FieldKind.NUMBER:
        if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
            raise ValidationError(f"Condition on {field!r} needs a numeric value, got {value!r}")
        return to_amount(value)
    if kind == FieldKind.ROLE:
        return Role.parse(value).value
    if kind == FieldKind.OPERATION:
        return OperationType.parse(value).value
    if not isinstance(value, str):
        raise ValidationError(f"Condition on {field!r} needs a string value, got {value!r}")
    return value.upper() if field == "currency" else value


def _parse_comparison(node: Dict[str, Any], path: str) -> Comparison:
    unexpected = set(node) - {"field", "op", "value"}
    if unexpected:
        raise ValidationError(f"Unexpected keys at {path}: {sorted(unexpected)}")

    field = node.get("field")
    if field not in CONTEXT_FIELDS:
        raise ValidationError(
            f"Unknown condition field at {path}: {field!r}",
            details={"allowed": sorted(CONTEXT_FIELDS)},
        )
    try:
        op = ConditionOperator(node.get("op"))
    except ValueError:
        raise ValidationError(
            f"Unknown condition operator at {path}: {node.get('op')!r}",
            details={"allowed": [o.value for o in ConditionOperator]},
        ) from None
    if "value" not in node:
        raise ValidationError(f"Condition at {path} has no value")

    kind = CONTEXT_FIELDS[field]
    raw = node["value"]

    if op in ORDERING_OPERATORS and kind != FieldKind.NUMBER:
        raise ValidationError(f"Operator {op.value!r} at {path} needs a numeric field, {field!r} is {kind.value}")

    if op in MEMBERSHIP_OPERATORS:
        if not isinstance(raw, list) or not raw:
            raise ValidationError(f"Operator {op.value!r} at {path} needs a non-empty list value")
        value = tuple(_parse_literal(field, kind, item) for item in raw)
    else:
        if isinstance(raw, (list, dict)):
            raise ValidationError(f"Operator {op.value!r} at {path} needs a scalar value")
        value = _parse_literal(field, kind, raw)

    return Comparison(field=field, op=op, value=value)


def _parse_node(node: Any, path: str) -> Condition:
    if not isinstance(node, dict):
        raise ValidationError(f"Condition at {path} must be an object, got {type(node).__name__}")

    for combinator, cls in (("all", AllOf), ("any", AnyOf)):
        if combinator in node:
            if len(node) != 1:
                raise ValidationError(f"'{combinator}' at {path} must be the only key")
            children = node[combinator]
            if not isinstance(children, list) or not children:
                raise ValidationError(f"'{combinator}' at {path} needs a non-empty list")
            return cls(tuple(_parse_node(child, f"{path}.{combinator}[{i}]") for i, child in enumerate(children)))

    if "not" in node:
        if len(node) != 1:
            raise ValidationError(f"'not' at {path} must be the only key")
        return Not(_parse_node(node["not"], f"{path}.not"))

    return _parse_comparison(node, path)


def parse_condition(data: Optional[Dict[str, Any]]) -> Optional[Condition]:
    """
    Parse and type-check a JSON condition.

    Returns None for an absent or empty condition (always true).

    Raises:
        ValidationError: If the condition is malformed
    """
    if data is None or data == {}:
        return None
    return _parse_node(data, "$")


def evaluate_condition(
    condition: Optional[Condition],
    context: ApprovalContext,
    operation_type: Optional[OperationType] = None,
) -> bool:
    """Evaluate a parsed condition. A missing condition is always true."""
    if condition is None:
        return True
    return condition.evaluate(context, operation_type)


def referenced_fields(condition: Optional[Condition]) -> List[str]:
    """Field names a condition reads, in first-seen order."""
    if condition is None:
        return []
    if isinstance(condition, Comparison):
        return [condition.field]
    children = (condition.child,) if isinstance(condition, Not) else condition.children
    seen: List[str] = []
    for child in children:
        for name in referenced_fields(child):
            if name not in seen:
                seen.append(name)
    return seen
