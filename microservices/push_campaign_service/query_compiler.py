"""
Segment Query Compiler

Lowers a condition tree into a FilterExpression over the subscriber
collection. A FilterExpression is always scoped to one merchant and, unless
asked otherwise, to push-eligible subscribers; the condition part is a small
immutable AST rendered two ways:

- SqlRenderer: PostgreSQL WHERE fragment with positional $n parameters
- matches(): in-memory evaluation against a Subscriber

Combinator defaults: an empty AND matches everything, an empty OR matches
nothing.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from .attribute_registry import AttributeDefinition, AttributeRegistry, parse_datetime
from .models import (
    AttributeType,
    Combinator,
    Condition,
    ConditionGroup,
    ConditionNode,
    ConditionOperator,
    Subscriber,
)
from .protocols import ValidationError

logger = logging.getLogger(__name__)

Op = ConditionOperator


# ====================
# Filter AST
# ====================


@dataclass(frozen=True)
class Predicate:
    attribute: AttributeDefinition
    operator: ConditionOperator
    value: Any = None


@dataclass(frozen=True)
class And:
    children: Tuple["Node", ...]


@dataclass(frozen=True)
class Or:
    children: Tuple["Node", ...]


@dataclass(frozen=True)
class Not:
    child: "Node"


@dataclass(frozen=True)
class MatchAll:
    pass


@dataclass(frozen=True)
class MatchNone:
    pass


@dataclass(frozen=True)
class MemberOf:
    """Restricts to an explicit id set (static segments)"""
    subscriber_ids: FrozenSet[str]


Node = Union[Predicate, And, Or, Not, MatchAll, MatchNone, MemberOf]


@dataclass(frozen=True)
class FilterExpression:
    """Merchant-scoped filter over the subscriber collection"""
    merchant_id: str
    condition: Node
    eligible_only: bool = True


def all_of(children: Iterable[Node]) -> Node:
    """AND with explicit identities: no children is MatchAll"""
    kept: List[Node] = []
    for child in children:
        if isinstance(child, MatchNone):
            return MatchNone()
        if isinstance(child, MatchAll):
            continue
        kept.append(child)
    if not kept:
        return MatchAll()
    if len(kept) == 1:
        return kept[0]
    return And(tuple(kept))


def any_of(children: Iterable[Node]) -> Node:
    """OR with explicit identities: no children is MatchNone"""
    kept: List[Node] = []
    for child in children:
        if isinstance(child, MatchAll):
            return MatchAll()
        if isinstance(child, MatchNone):
            continue
        kept.append(child)
    if not kept:
        return MatchNone()
    if len(kept) == 1:
        return kept[0]
    return Or(tuple(kept))


def negate(node: Node) -> Node:
    if isinstance(node, MatchAll):
        return MatchNone()
    if isinstance(node, MatchNone):
        return MatchAll()
    if isinstance(node, Not):
        return node.child
    return Not(node)


# ====================
# Compiler
# ====================


class QueryCompiler:
    """Compiles condition trees against an attribute registry"""

    def __init__(
        self,
        max_depth: int = 5,
        max_conditions: int = 50,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.max_depth = max_depth
        self.max_conditions = max_conditions
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def check_limits(self, node: Optional[ConditionNode], field: str = "root_condition") -> None:
        """Reject trees deeper or larger than the configured limits"""
        if node is None:
            return
        conditions = 0
        groups = 0
        stack: List[Tuple[ConditionNode, int]] = [(node, 0)]
        while stack:
            current, depth = stack.pop()
            if isinstance(current, Condition):
                conditions += 1
                if conditions > self.max_conditions:
                    raise ValidationError(
                        f"Condition tree has more than {self.max_conditions} conditions", field
                    )
                continue
            depth += 1
            groups += 1
            if depth > self.max_depth:
                raise ValidationError(
                    f"Condition tree is nested deeper than {self.max_depth} levels", field
                )
            if groups > self.max_conditions:
                raise ValidationError(
                    f"Condition tree has more than {self.max_conditions} groups", field
                )
            stack.extend((child, depth) for child in current.children)

    def compile(
        self,
        node: Optional[ConditionNode],
        merchant_id: str,
        registry: AttributeRegistry,
        field: str = "root_condition",
    ) -> FilterExpression:
        """Compile a tree into a merchant-scoped filter over eligible subscribers"""
        if registry.merchant_id != merchant_id:
            raise ValidationError("Attribute registry belongs to another merchant", "merchant_id")
        self.check_limits(node, field)
        return FilterExpression(merchant_id=merchant_id, condition=self.lower(node, registry, field))

    def lower(self, node: Optional[ConditionNode], registry: AttributeRegistry, field: str = "root_condition") -> Node:
        """Lower a condition tree to a filter AST node (no merchant scope)"""
        if node is None:
            return MatchAll()

        if isinstance(node, Condition):
            return self._lower_condition(node, registry, field)

        children = [
            self.lower(child, registry, f"{field}.children[{i}]")
            for i, child in enumerate(node.children)
        ]
        combined = all_of(children) if node.combinator == Combinator.AND else any_of(children)
        return negate(combined) if node.negate else combined

    def _lower_condition(self, condition: Condition, registry: AttributeRegistry, field: str) -> Node:
        definition = registry.resolve(condition.attribute, f"{field}.attribute")
        operator = condition.operator
        registry.check_operator(definition, operator, f"{field}.operator")
        value = registry.coerce_value(definition, operator, condition.value, f"{field}.value")

        if definition.attribute_type == AttributeType.BOOLEAN and operator == Op.EQUALS:
            operator = Op.IS_TRUE if value else Op.IS_FALSE
            value = None

        if operator in (Op.WITHIN_DAYS, Op.MORE_THAN_DAYS_AGO):
            value = self._clock() - timedelta(days=value)

        return Predicate(attribute=definition, operator=operator, value=value)


# ====================
# SQL rendering
# ====================


def _like_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# Safe casts for custom attribute text, created by the schema migration.
# Both return NULL where the in-memory matcher finds no value.
CAST_FUNCTIONS_SCHEMA = "push_campaign"

_ISO_DATE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")

_COMPARISONS = {
    Op.EQUALS: "=",
    Op.GREATER_THAN: ">",
    Op.LESS_THAN: "<",
    Op.GREATER_OR_EQUAL: ">=",
    Op.LESS_OR_EQUAL: "<=",
    Op.BEFORE: "<",
    Op.AFTER: ">",
    Op.WITHIN_DAYS: ">=",
    Op.MORE_THAN_DAYS_AGO: "<",
}


class SqlRenderer:
    """Renders a FilterExpression into a WHERE fragment and its parameters"""

    def __init__(self, alias: str = "", start_index: int = 1, functions_schema: str = CAST_FUNCTIONS_SCHEMA):
        self.prefix = f"{alias}." if alias else ""
        self.functions_schema = functions_schema
        self.params: List[Any] = []
        self._start_index = start_index
        self._keys: Dict[str, str] = {}

    def render(self, expression: FilterExpression) -> Tuple[str, List[Any]]:
        clauses = [f"{self._col('merchant_id')} = {self._param(expression.merchant_id)}"]
        if expression.eligible_only:
            clauses.extend([
                f"{self._col('is_active')} = TRUE",
                f"{self._col('push_token')} IS NOT NULL",
                f"{self._col('push_token')} <> ''",
                f"{self._col('unsubscribed_at')} IS NULL",
            ])
        condition = self._node(expression.condition)
        if condition != "TRUE":
            clauses.append(condition)
        return " AND ".join(clauses), self.params

    # helpers

    def _col(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def _param(self, value: Any) -> str:
        self.params.append(value)
        return f"${self._start_index + len(self.params) - 1}"

    def _key(self, name: str) -> str:
        if name not in self._keys:
            self._keys[name] = self._param(name)
        return self._keys[name]

    def _node(self, node: Node) -> str:
        if isinstance(node, MatchAll):
            return "TRUE"
        if isinstance(node, MatchNone):
            return "FALSE"
        if isinstance(node, And):
            return "(" + " AND ".join(self._node(child) for child in node.children) + ")"
        if isinstance(node, Or):
            return "(" + " OR ".join(self._node(child) for child in node.children) + ")"
        if isinstance(node, Not):
            return f"(NOT {self._node(node.child)})"
        if isinstance(node, MemberOf):
            return f"{self._col('subscriber_id')} = ANY({self._param(sorted(node.subscriber_ids))}::text[])"
        return f"COALESCE(({self._predicate(node)}), FALSE)"

    def _raw(self, attribute: AttributeDefinition) -> str:
        if not attribute.custom:
            return self._col(attribute.field)
        return f"({self._col('custom_attributes')} ->> {self._key(attribute.field)})"

    def _typed(self, attribute: AttributeDefinition) -> str:
        raw = self._raw(attribute)
        if not attribute.custom:
            if attribute.attribute_type == AttributeType.NUMBER:
                return f"({raw})::numeric"
            return raw
        if attribute.attribute_type == AttributeType.NUMBER:
            return f"{self.functions_schema}.try_numeric({raw})"
        if attribute.attribute_type == AttributeType.DATE:
            return f"{self.functions_schema}.try_timestamptz({raw})"
        if attribute.attribute_type == AttributeType.BOOLEAN:
            return f"(CASE WHEN lower({raw}) IN ('true', 'false') THEN lower({raw})::boolean END)"
        return raw

    def _elements(self, attribute: AttributeDefinition) -> str:
        if not attribute.custom:
            return f"unnest({self._col(attribute.field)}) AS el(v)"
        document = self._col("custom_attributes")
        key = self._key(attribute.field)
        return (
            f"jsonb_array_elements_text(CASE WHEN jsonb_typeof({document} -> {key}) = 'array' "
            f"THEN {document} -> {key} ELSE '[]'::jsonb END) AS el(v)"
        )

    def _predicate(self, predicate: Predicate) -> str:
        attribute_type = predicate.attribute.attribute_type
        if attribute_type == AttributeType.MULTIPLE_CHOICE:
            return self._list_predicate(predicate)
        if attribute_type == AttributeType.NUMBER:
            return self._ordered_predicate(predicate, "numeric")
        if attribute_type == AttributeType.DATE:
            return self._ordered_predicate(predicate, "timestamptz")
        if attribute_type == AttributeType.BOOLEAN:
            return self._bool_predicate(predicate)
        return self._text_predicate(predicate)

    def _text_predicate(self, predicate: Predicate) -> str:
        op, value = predicate.operator, predicate.value
        expr = self._raw(predicate.attribute)
        lowered = f"lower({expr})"

        if op == Op.EQUALS:
            return f"{lowered} = {self._param(value)}"
        if op == Op.NOT_EQUALS:
            return f"{expr} IS NULL OR {lowered} <> {self._param(value)}"
        if op in (Op.CONTAINS, Op.NOT_CONTAINS, Op.STARTS_WITH, Op.ENDS_WITH):
            escaped = _like_escape(value)
            pattern = {
                Op.CONTAINS: f"%{escaped}%",
                Op.NOT_CONTAINS: f"%{escaped}%",
                Op.STARTS_WITH: f"{escaped}%",
                Op.ENDS_WITH: f"%{escaped}",
            }[op]
            like = f"{lowered} LIKE {self._param(pattern)} ESCAPE '\\'"
            if op == Op.NOT_CONTAINS:
                return f"{expr} IS NULL OR NOT ({like})"
            return like
        if op == Op.IN:
            return f"{lowered} = ANY({self._param(list(value))}::text[])"
        if op == Op.NOT_IN:
            return f"{expr} IS NULL OR NOT ({lowered} = ANY({self._param(list(value))}::text[]))"
        if op == Op.IS_SET:
            return f"{expr} IS NOT NULL AND {expr} <> ''"
        if op == Op.IS_NOT_SET:
            return f"{expr} IS NULL OR {expr} = ''"
        raise ValidationError(f"Operator '{op.value}' cannot be rendered for text")

    def _ordered_predicate(self, predicate: Predicate, sql_type: str) -> str:
        op, value = predicate.operator, predicate.value
        expr = self._typed(predicate.attribute)

        if op in _COMPARISONS:
            return f"{expr} {_COMPARISONS[op]} {self._param(value)}::{sql_type}"
        if op == Op.NOT_EQUALS:
            return f"{expr} IS NULL OR {expr} <> {self._param(value)}::{sql_type}"
        if op == Op.BETWEEN:
            low, high = value
            return f"{expr} BETWEEN {self._param(low)}::{sql_type} AND {self._param(high)}::{sql_type}"
        if op == Op.IN:
            return f"{expr} = ANY({self._param(list(value))}::{sql_type}[])"
        if op == Op.NOT_IN:
            return f"{expr} IS NULL OR NOT ({expr} = ANY({self._param(list(value))}::{sql_type}[]))"
        if op == Op.IS_SET:
            return f"{expr} IS NOT NULL"
        if op == Op.IS_NOT_SET:
            return f"{expr} IS NULL"
        raise ValidationError(f"Operator '{op.value}' cannot be rendered for {sql_type}")

    def _bool_predicate(self, predicate: Predicate) -> str:
        op = predicate.operator
        expr = self._typed(predicate.attribute)
        if op == Op.IS_TRUE:
            return f"{expr} IS TRUE"
        if op == Op.IS_FALSE:
            return f"{expr} IS NOT TRUE"
        if op == Op.IS_SET:
            return f"{expr} IS NOT NULL"
        if op == Op.IS_NOT_SET:
            return f"{expr} IS NULL"
        raise ValidationError(f"Operator '{op.value}' cannot be rendered for boolean")

    def _list_predicate(self, predicate: Predicate) -> str:
        op, value = predicate.operator, predicate.value
        source = self._elements(predicate.attribute)

        if op in (Op.CONTAINS, Op.NOT_CONTAINS):
            exists = f"EXISTS (SELECT 1 FROM {source} WHERE lower(el.v) = {self._param(value)})"
        elif op in (Op.IN, Op.NOT_IN):
            exists = f"EXISTS (SELECT 1 FROM {source} WHERE lower(el.v) = ANY({self._param(list(value))}::text[]))"
        elif op in (Op.IS_SET, Op.IS_NOT_SET):
            exists = f"EXISTS (SELECT 1 FROM {source})"
        else:
            raise ValidationError(f"Operator '{op.value}' cannot be rendered for lists")

        if op in (Op.NOT_CONTAINS, Op.NOT_IN, Op.IS_NOT_SET):
            return f"NOT {exists}"
        return exists


def render_sql(
    expression: FilterExpression,
    alias: str = "",
    start_index: int = 1,
    functions_schema: str = CAST_FUNCTIONS_SCHEMA,
) -> Tuple[str, List[Any]]:
    """Render a FilterExpression into (where_sql, params)"""
    return SqlRenderer(alias=alias, start_index=start_index, functions_schema=functions_schema).render(expression)


# ====================
# In-memory evaluation
# ====================


def _attribute_value(attribute: AttributeDefinition, subscriber: Subscriber) -> Any:
    if attribute.custom:
        return subscriber.custom_attributes.get(attribute.field)
    value = getattr(subscriber, attribute.field, None)
    return getattr(value, "value", value)


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).lower()


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str) and not _ISO_DATE.match(value.strip()):
        return None
    try:
        return parse_datetime(value)
    except ValidationError:
        return None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    return None


def _as_list(value: Any) -> List[str]:
    if not isinstance(value, (list, tuple, set)):
        return []
    return [str(item).lower() for item in value]


def _match_predicate(predicate: Predicate, subscriber: Subscriber) -> bool:
    op, expected = predicate.operator, predicate.value
    attribute_type = predicate.attribute.attribute_type
    raw = _attribute_value(predicate.attribute, subscriber)

    if attribute_type == AttributeType.MULTIPLE_CHOICE:
        items = _as_list(raw)
        if op == Op.CONTAINS:
            return expected in items
        if op == Op.NOT_CONTAINS:
            return expected not in items
        if op == Op.IN:
            return any(item in expected for item in items)
        if op == Op.NOT_IN:
            return not any(item in expected for item in items)
        if op == Op.IS_SET:
            return len(items) > 0
        if op == Op.IS_NOT_SET:
            return len(items) == 0
        return False

    if attribute_type == AttributeType.BOOLEAN:
        flag = _as_bool(raw)
        if op == Op.IS_TRUE:
            return flag is True
        if op == Op.IS_FALSE:
            return flag is not True
        if op == Op.IS_SET:
            return flag is not None
        if op == Op.IS_NOT_SET:
            return flag is None
        return False

    if attribute_type in (AttributeType.NUMBER, AttributeType.DATE):
        actual = _as_decimal(raw) if attribute_type == AttributeType.NUMBER else _as_datetime(raw)
        if op == Op.IS_SET:
            return actual is not None
        if op == Op.IS_NOT_SET:
            return actual is None
        if op == Op.NOT_EQUALS:
            return actual is None or actual != expected
        if op == Op.NOT_IN:
            return actual is None or actual not in expected
        if actual is None:
            return False
        if op == Op.EQUALS:
            return actual == expected
        if op in (Op.GREATER_THAN, Op.AFTER):
            return actual > expected
        if op in (Op.LESS_THAN, Op.BEFORE, Op.MORE_THAN_DAYS_AGO):
            return actual < expected
        if op in (Op.GREATER_OR_EQUAL, Op.WITHIN_DAYS):
            return actual >= expected
        if op == Op.LESS_OR_EQUAL:
            return actual <= expected
        if op == Op.BETWEEN:
            return expected[0] <= actual <= expected[1]
        if op == Op.IN:
            return actual in expected
        return False

    text = _as_text(raw)
    if op == Op.IS_SET:
        return bool(text)
    if op == Op.IS_NOT_SET:
        return not text
    if op == Op.NOT_EQUALS:
        return text is None or text != expected
    if op == Op.NOT_CONTAINS:
        return text is None or expected not in text
    if op == Op.NOT_IN:
        return text is None or text not in expected
    if text is None:
        return False
    if op == Op.EQUALS:
        return text == expected
    if op == Op.CONTAINS:
        return expected in text
    if op == Op.STARTS_WITH:
        return text.startswith(expected)
    if op == Op.ENDS_WITH:
        return text.endswith(expected)
    if op == Op.IN:
        return text in expected
    return False


def _match_node(node: Node, subscriber: Subscriber) -> bool:
    if isinstance(node, MatchAll):
        return True
    if isinstance(node, MatchNone):
        return False
    if isinstance(node, And):
        return all(_match_node(child, subscriber) for child in node.children)
    if isinstance(node, Or):
        return any(_match_node(child, subscriber) for child in node.children)
    if isinstance(node, Not):
        return not _match_node(node.child, subscriber)
    if isinstance(node, MemberOf):
        return subscriber.subscriber_id in node.subscriber_ids
    return _match_predicate(node, subscriber)


def matches(expression: FilterExpression, subscriber: Subscriber) -> bool:
    """Evaluate a FilterExpression against one subscriber"""
    if subscriber.merchant_id != expression.merchant_id:
        return False
    if expression.eligible_only and not subscriber.is_push_eligible:
        return False
    return _match_node(expression.condition, subscriber)


__all__ = [
    "Predicate",
    "And",
    "Or",
    "Not",
    "MatchAll",
    "MatchNone",
    "MemberOf",
    "Node",
    "FilterExpression",
    "all_of",
    "any_of",
    "negate",
    "QueryCompiler",
    "SqlRenderer",
    "render_sql",
    "matches",
]
