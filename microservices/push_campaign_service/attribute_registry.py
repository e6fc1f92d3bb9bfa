"""
Subscriber Attribute Registry

Merchant-scoped lookup of the attributes a condition may reference:
built-in subscriber fields plus the merchant's custom attributes.
Each attribute carries a declared type; operators and values are
checked against that type before a condition tree is compiled.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .models import (
    AttributeType,
    ConditionOperator,
    CustomAttribute,
    RelativeDate,
)
from .protocols import UnknownAttributeError, ValidationError

logger = logging.getLogger(__name__)

Op = ConditionOperator


@dataclass(frozen=True)
class AttributeDefinition:
    """Attribute a condition can target"""

    name: str
    attribute_type: AttributeType
    field: str
    custom: bool = False
    options: Tuple[str, ...] = ()

    @property
    def is_list(self) -> bool:
        return self.attribute_type == AttributeType.MULTIPLE_CHOICE


def _builtin(name: str, attribute_type: AttributeType, field: str, options: Tuple[str, ...] = ()) -> AttributeDefinition:
    return AttributeDefinition(name=name, attribute_type=attribute_type, field=field, options=options)


BUILTIN_ATTRIBUTES: Dict[str, AttributeDefinition] = {
    d.name: d
    for d in (
        _builtin("email", AttributeType.EMAIL, "email"),
        _builtin("tags", AttributeType.MULTIPLE_CHOICE, "tags"),
        _builtin("channel", AttributeType.CATEGORY, "channel", ("web", "android", "ios")),
        _builtin("lastActiveAt", AttributeType.DATE, "last_active_at"),
        _builtin("totalSpend", AttributeType.NUMBER, "total_spend"),
        _builtin("orderCount", AttributeType.NUMBER, "order_count"),
        _builtin("locationCountry", AttributeType.TEXT, "location_country"),
        _builtin("locationRegion", AttributeType.TEXT, "location_region"),
        _builtin("locationCity", AttributeType.TEXT, "location_city"),
        _builtin("deviceType", AttributeType.TEXT, "device_type"),
        _builtin("browser", AttributeType.TEXT, "browser"),
        _builtin("operatingSystem", AttributeType.TEXT, "operating_system"),
        _builtin("language", AttributeType.TEXT, "language"),
        _builtin("isMobile", AttributeType.BOOLEAN, "is_mobile"),
        _builtin("source", AttributeType.TEXT, "source"),
        _builtin("status", AttributeType.TEXT, "status"),
        _builtin("subscribedAt", AttributeType.DATE, "subscribed_at"),
    )
}

_TEXT_OPERATORS = frozenset({
    Op.EQUALS, Op.NOT_EQUALS, Op.CONTAINS, Op.NOT_CONTAINS, Op.STARTS_WITH,
    Op.ENDS_WITH, Op.IN, Op.NOT_IN, Op.IS_SET, Op.IS_NOT_SET,
})

OPERATOR_COMPATIBILITY: Dict[AttributeType, FrozenSet[ConditionOperator]] = {
    AttributeType.TEXT: _TEXT_OPERATORS,
    AttributeType.EMAIL: _TEXT_OPERATORS,
    AttributeType.URL: _TEXT_OPERATORS,
    AttributeType.CATEGORY: frozenset({
        Op.EQUALS, Op.NOT_EQUALS, Op.IN, Op.NOT_IN, Op.IS_SET, Op.IS_NOT_SET,
    }),
    AttributeType.NUMBER: frozenset({
        Op.EQUALS, Op.NOT_EQUALS, Op.GREATER_THAN, Op.LESS_THAN, Op.GREATER_OR_EQUAL,
        Op.LESS_OR_EQUAL, Op.BETWEEN, Op.IN, Op.NOT_IN, Op.IS_SET, Op.IS_NOT_SET,
    }),
    AttributeType.DATE: frozenset({
        Op.BEFORE, Op.AFTER, Op.BETWEEN, Op.WITHIN_DAYS, Op.MORE_THAN_DAYS_AGO,
        Op.IS_SET, Op.IS_NOT_SET,
    }),
    AttributeType.BOOLEAN: frozenset({
        Op.IS_TRUE, Op.IS_FALSE, Op.EQUALS, Op.IS_SET, Op.IS_NOT_SET,
    }),
    AttributeType.MULTIPLE_CHOICE: frozenset({
        Op.CONTAINS, Op.NOT_CONTAINS, Op.IN, Op.NOT_IN, Op.IS_SET, Op.IS_NOT_SET,
    }),
}

VALUELESS_OPERATORS = frozenset({Op.IS_SET, Op.IS_NOT_SET, Op.IS_TRUE, Op.IS_FALSE})
LIST_OPERATORS = frozenset({Op.IN, Op.NOT_IN})


def normalize_name(name: str) -> str:
    """Case and separator insensitive key: lastActiveAt == last_active_at"""
    return name.replace("_", "").replace("-", "").lower()


_BUILTIN_BY_KEY: Dict[str, AttributeDefinition] = {
    normalize_name(d.name): d for d in BUILTIN_ATTRIBUTES.values()
}


def is_builtin_name(name: str) -> bool:
    return normalize_name(name) in _BUILTIN_BY_KEY


class AttributeRegistry:
    """Attribute lookup and value coercion for one merchant"""

    def __init__(self, merchant_id: str, custom_attributes: Iterable[CustomAttribute] = ()):
        self.merchant_id = merchant_id
        self._custom: Dict[str, AttributeDefinition] = {}
        for attribute in custom_attributes:
            if attribute.merchant_id != merchant_id or attribute.deleted_at is not None:
                continue
            self._custom[attribute.name] = AttributeDefinition(
                name=attribute.name,
                attribute_type=attribute.attribute_type,
                field=attribute.name,
                custom=True,
                options=tuple(attribute.options),
            )

    @property
    def custom_names(self) -> List[str]:
        return sorted(self._custom)

    def resolve(self, name: str, field: Optional[str] = None) -> AttributeDefinition:
        """Find the definition for an attribute name; built-ins win over custom"""
        builtin = _BUILTIN_BY_KEY.get(normalize_name(name))
        if builtin is not None:
            return builtin
        custom = self._custom.get(name)
        if custom is not None:
            return custom
        raise UnknownAttributeError(name, field)

    def check_operator(self, definition: AttributeDefinition, operator: ConditionOperator, field: Optional[str] = None) -> None:
        allowed = OPERATOR_COMPATIBILITY[definition.attribute_type]
        if operator not in allowed:
            raise ValidationError(
                f"Operator '{operator.value}' is not valid for {definition.attribute_type.value} attribute '{definition.name}'",
                field,
            )

    # ====================
    # Value coercion
    # ====================

    def coerce_value(
        self,
        definition: AttributeDefinition,
        operator: ConditionOperator,
        value: Any,
        field: Optional[str] = None,
    ) -> Any:
        """
        Normalize a condition value for the attribute type.

        Returns lower-cased strings for text-like types, Decimal for numbers,
        aware datetimes for absolute dates, an int day count for relative
        dates and None for valueless operators. Lists are returned as tuples.
        """
        if operator in VALUELESS_OPERATORS:
            return None

        attribute_type = definition.attribute_type

        if operator in LIST_OPERATORS:
            if not isinstance(value, (list, tuple)) or len(value) == 0:
                raise ValidationError(f"Operator '{operator.value}' requires a non-empty list", field)
            return tuple(self._coerce_scalar(definition, item, field) for item in value)

        if operator == Op.BETWEEN:
            if not isinstance(value, (list, tuple)) or len(value) != 2:
                raise ValidationError("Operator 'between' requires [low, high]", field)
            low = self._coerce_scalar(definition, value[0], field)
            high = self._coerce_scalar(definition, value[1], field)
            if low > high:
                raise ValidationError("Between range low bound exceeds high bound", field)
            return (low, high)

        if operator in (Op.WITHIN_DAYS, Op.MORE_THAN_DAYS_AGO):
            return self._coerce_relative_days(value, field)

        if attribute_type == AttributeType.BOOLEAN:
            return self._coerce_bool(value, field)

        return self._coerce_scalar(definition, value, field)

    def _coerce_scalar(self, definition: AttributeDefinition, value: Any, field: Optional[str]) -> Any:
        attribute_type = definition.attribute_type

        if value is None or isinstance(value, (dict, list, tuple)):
            raise ValidationError(f"A single value is required for attribute '{definition.name}'", field)

        if attribute_type == AttributeType.NUMBER:
            if isinstance(value, bool):
                raise ValidationError(f"Numeric value required for attribute '{definition.name}'", field)
            try:
                number = Decimal(str(value).strip())
            except (InvalidOperation, ValueError):
                raise ValidationError(f"Numeric value required for attribute '{definition.name}'", field)
            if not number.is_finite():
                raise ValidationError(f"Numeric value required for attribute '{definition.name}'", field)
            return number

        if attribute_type == AttributeType.DATE:
            return parse_datetime(value, field)

        if attribute_type == AttributeType.BOOLEAN:
            return self._coerce_bool(value, field)

        if isinstance(value, bool):
            raise ValidationError(f"Text value required for attribute '{definition.name}'", field)
        text = str(value).strip().lower()
        if not text:
            raise ValidationError(f"Value is required for attribute '{definition.name}'", field)
        if attribute_type == AttributeType.CATEGORY and definition.options:
            allowed = {option.lower() for option in definition.options}
            if text not in allowed:
                raise ValidationError(
                    f"'{value}' is not an option of attribute '{definition.name}'",
                    field,
                )
        return text

    @staticmethod
    def _coerce_bool(value: Any, field: Optional[str]) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
        raise ValidationError("Boolean value required", field)

    @staticmethod
    def _coerce_relative_days(value: Any, field: Optional[str]) -> int:
        if isinstance(value, bool):
            raise ValidationError("Relative date requires a day count", field)
        if isinstance(value, int):
            days = value
        elif isinstance(value, str) and value.strip().isdigit():
            days = int(value.strip())
        elif isinstance(value, (dict, RelativeDate)):
            try:
                relative = value if isinstance(value, RelativeDate) else RelativeDate(**value)
            except Exception:
                raise ValidationError("Relative date requires {amount, unit}", field)
            days = relative.to_days()
        else:
            raise ValidationError("Relative date requires a day count", field)
        if days < 0:
            raise ValidationError("Relative date must not be negative", field)
        return days


def parse_datetime(value: Any, field: Optional[str] = None) -> datetime:
    """Parse an ISO date/datetime (or date/datetime object) into an aware UTC datetime"""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid date: {value}", field)
    else:
        raise ValidationError(f"Invalid date: {value}", field)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


__all__ = [
    "AttributeDefinition",
    "AttributeRegistry",
    "BUILTIN_ATTRIBUTES",
    "OPERATOR_COMPATIBILITY",
    "VALUELESS_OPERATORS",
    "LIST_OPERATORS",
    "normalize_name",
    "is_builtin_name",
    "parse_datetime",
]
