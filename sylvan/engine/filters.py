"""
sylvan.engine.filters — Filter criteria → SQLAlchemy WHERE clause
===================================================================

Admin filter presets store a list of criteria::

    [{"field": "status", "operator": "equals", "value": "ACTIVE"},
     {"field": "total_points", "operator": "gt", "value": 100, "logic": "OR"},
     {"field": "username", "operator": "contains", "value": "eth", "logic": "OR"}]

Criteria tagged ``OR`` form one ``OR`` group which is ANDed with every
other criterion.  The example above becomes
``status = 'ACTIVE' AND (total_points > 100 OR username ILIKE '%eth%')``.

Only columns named in ``allowed_fields`` may be filtered on.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, DateTime, and_, or_, true

VALID_FILTER_OPERATORS = ("equals", "contains", "gt", "lt", "between", "in")


@dataclass(frozen=True, slots=True)
class FilterCriteria:
    field: str
    operator: str
    value: Any
    logic: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> FilterCriteria:
        return cls(
            field=data.get("field") or "",
            operator=data.get("operator") or "",
            value=data.get("value"),
            logic=data.get("logic"),
        )

    def to_dict(self) -> dict:
        data = {"field": self.field, "operator": self.operator, "value": self.value}
        if self.logic:
            data["logic"] = self.logic
        return data


def validate_filter_criteria(criteria: list[FilterCriteria]) -> list[str]:
    """Return problems with 1-based criterion numbers; empty means valid."""
    errors: list[str] = []
    for i, criterion in enumerate(criteria, start=1):
        if not criterion.field:
            errors.append(f"Criterion {i}: field is required")
        if not criterion.operator:
            errors.append(f"Criterion {i}: operator is required")
        elif criterion.operator not in VALID_FILTER_OPERATORS:
            errors.append(f"Criterion {i}: unknown operator '{criterion.operator}'")
        if criterion.value is None:
            errors.append(f"Criterion {i}: value is required")
        if criterion.operator == "between" and (
            not isinstance(criterion.value, list) or len(criterion.value) != 2
        ):
            errors.append(f"Criterion {i}: 'between' operator requires an array of two values")
        if criterion.operator == "in" and not isinstance(criterion.value, list):
            errors.append(f"Criterion {i}: 'in' operator requires an array of values")
        if criterion.logic and criterion.logic not in ("AND", "OR"):
            errors.append(f"Criterion {i}: logic must be either 'AND' or 'OR'")
    return errors


def _coerce(column: Any, value: Any) -> Any:
    """JSON carries timestamps as ISO strings; DateTime columns need datetimes."""
    if isinstance(column.type, DateTime) and isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


def _build_condition(model: type, criterion: FilterCriteria) -> ColumnElement[bool]:
    column = getattr(model, criterion.field)
    value = criterion.value

    match criterion.operator:
        case "equals":
            return column == _coerce(column, value)
        case "contains":
            return column.ilike(f"%{value}%")
        case "gt":
            return column > _coerce(column, value)
        case "lt":
            return column < _coerce(column, value)
        case "between":
            low, high = value
            return and_(column >= _coerce(column, low), column <= _coerce(column, high))
        case "in":
            return column.in_([_coerce(column, v) for v in value])
    raise ValueError(f"Unknown filter operator: {criterion.operator}")


def build_filter(
    model: type,
    criteria: list[FilterCriteria],
    allowed_fields: frozenset[str] | set[str],
) -> ColumnElement[bool]:
    """Translate *criteria* into a boolean expression over *model*.

    Raises ``ValueError`` for invalid criteria or fields outside
    *allowed_fields*.
    """
    if not criteria:
        return true()

    errors = validate_filter_criteria(criteria)
    if errors:
        raise ValueError("; ".join(errors))

    for criterion in criteria:
        if criterion.field not in allowed_fields:
            raise ValueError(f"Field '{criterion.field}' cannot be filtered on")

    and_terms = [_build_condition(model, c) for c in criteria if c.logic != "OR"]
    or_terms = [_build_condition(model, c) for c in criteria if c.logic == "OR"]

    if or_terms:
        and_terms.append(or_(*or_terms) if len(or_terms) > 1 else or_terms[0])
    return and_(*and_terms) if len(and_terms) > 1 else and_terms[0]
