"""Compile campaign audience filter trees into SQLAlchemy predicates.

A filter tree is either a single condition or a group of conditions joined
with ``and``/``or``. Every field name goes through a per-audience allowlist,
so only known columns ever reach the query and every value is sent as a
bound parameter.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, or_
from sqlalchemy.sql.elements import ColumnElement

from backoffice.core.errors import ValidationError
from backoffice.models.audience import Author, Lead
from backoffice.schemas.campaign import FilterCondition, FilterGroup, FilterNode

AudienceName = Literal["users", "leads"]


@dataclass(frozen=True)
class FilterField:
    column: Any
    kind: Literal["string", "datetime"] = "string"


USER_FILTER_FIELDS: dict[str, FilterField] = {
    "createdAt": FilterField(Author.created_at, "datetime"),
    "lastLoginAt": FilterField(Author.last_login_at, "datetime"),
    "preferredLocale": FilterField(Author.preferred_locale),
    # Shared name with leads so one tree can target both sources.
    "language": FilterField(Author.preferred_locale),
    "notificationPreference": FilterField(Author.notification_preference),
    "gender": FilterField(Author.gender),
    "literaryAge": FilterField(Author.literary_age),
}

LEAD_FILTER_FIELDS: dict[str, FilterField] = {
    "language": FilterField(Lead.language),
    "preferredLocale": FilterField(Lead.language),
    "emailStatus": FilterField(Lead.email_status),
    "lastEmailSentAt": FilterField(Lead.last_email_sent_at, "datetime"),
}

AUDIENCE_FILTER_FIELDS: dict[str, dict[str, FilterField]] = {
    "users": USER_FILTER_FIELDS,
    "leads": LEAD_FILTER_FIELDS,
}

_OPERATOR_LABELS = {
    "eq": "=",
    "ne": "!=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "between": "between",
    "in": "in",
    "not_in": "not in",
}

_filter_adapter: TypeAdapter[FilterNode] = TypeAdapter(FilterNode)


def parse_filter_tree(tree: Any) -> FilterNode | None:
    """Validate raw JSON into the filter AST. Empty input yields ``None``."""
    if tree is None:
        return None
    if isinstance(tree, (FilterCondition, FilterGroup)):
        return tree
    if isinstance(tree, dict) and not tree:
        return None
    try:
        return _filter_adapter.validate_python(tree)
    except PydanticValidationError as exc:
        details = [
            {
                "field": ".".join(["filter_tree", *[str(part) for part in err.get("loc", ())]]),
                "message": err.get("msg", "Invalid value"),
                "type": err.get("type"),
            }
            for err in exc.errors()
        ]
        raise ValidationError("Malformed filter tree", details=details) from None


def compile_filter(
    tree: Any,
    audience: AudienceName,
    *,
    reject_unknown_fields: bool = False,
) -> ColumnElement[bool] | None:
    """Return the predicate for ``tree`` against ``audience``, or ``None`` when nothing applies.

    Conditions on fields outside the audience allowlist are dropped unless
    ``reject_unknown_fields`` is set, in which case they raise ``ValidationError``.
    """
    fields = AUDIENCE_FILTER_FIELDS.get(audience)
    if fields is None:
        raise ValidationError(f"Unknown audience '{audience}'", field="audience_source")
    node = parse_filter_tree(tree)
    if node is None:
        return None
    return _compile_node(node, fields, path="filter_tree", reject_unknown_fields=reject_unknown_fields)


def _compile_node(
    node: FilterNode,
    fields: dict[str, FilterField],
    *,
    path: str,
    reject_unknown_fields: bool,
) -> ColumnElement[bool] | None:
    if isinstance(node, FilterGroup):
        parts: list[ColumnElement[bool]] = []
        for index, child in enumerate(node.conditions):
            compiled = _compile_node(
                child,
                fields,
                path=f"{path}.conditions.{index}",
                reject_unknown_fields=reject_unknown_fields,
            )
            if compiled is not None:
                parts.append(compiled)
        if not parts:
            return None
        if len(parts) == 1:
            return parts[0]
        return and_(*parts) if node.logic == "and" else or_(*parts)
    return _compile_condition(node, fields, path=path, reject_unknown_fields=reject_unknown_fields)


def _compile_condition(
    condition: FilterCondition,
    fields: dict[str, FilterField],
    *,
    path: str,
    reject_unknown_fields: bool,
) -> ColumnElement[bool] | None:
    field_def = fields.get(condition.field)
    if field_def is None:
        if reject_unknown_fields:
            raise ValidationError(f"Unknown filter field '{condition.field}'", field=f"{path}.field")
        return None

    column = field_def.column
    operator = condition.operator
    value = condition.value
    value_path = f"{path}.value"

    if operator == "is_null":
        return column.is_(None) if value is True or value is None else column.is_not(None)

    if operator == "between":
        if not isinstance(value, list) or len(value) != 2:
            return None
        low, high = (_coerce_value(item, field_def, path=value_path) for item in value)
        return column.between(low, high)

    if operator in {"in", "not_in"}:
        if not isinstance(value, list):
            return None
        values = [_coerce_value(item, field_def, path=value_path) for item in value]
        return column.in_(values) if operator == "in" else column.not_in(values)

    if value is None:
        if operator == "eq":
            return column.is_(None)
        if operator == "ne":
            return column.is_not(None)
        raise ValidationError(f"Operator '{operator}' requires a value", field=value_path)

    coerced = _coerce_value(value, field_def, path=value_path)
    if operator == "eq":
        return column == coerced
    if operator == "ne":
        return column != coerced
    if operator == "gt":
        return column > coerced
    if operator == "gte":
        return column >= coerced
    if operator == "lt":
        return column < coerced
    return column <= coerced


def _coerce_value(value: Any, field_def: FilterField, *, path: str) -> Any:
    if isinstance(value, (dict, list)):
        raise ValidationError("Filter value must be a scalar", field=path)
    if field_def.kind == "datetime":
        return _parse_datetime(value, path=path)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_datetime(value: Any, *, path: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            raise ValidationError(f"Invalid date value '{value}'", field=path) from None
    else:
        raise ValidationError("Date filters expect an ISO-8601 string", field=path)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def describe_filter(tree: Any) -> str | None:
    """Human-readable rendering of a filter tree for list and detail views."""
    node = parse_filter_tree(tree)
    if node is None:
        return None
    return _describe_node(node, top_level=True)


def _describe_node(node: FilterNode, *, top_level: bool = False) -> str | None:
    if isinstance(node, FilterGroup):
        parts = [part for part in (_describe_node(child) for child in node.conditions) if part]
        if not parts:
            return None
        if len(parts) == 1:
            return parts[0]
        joined = f" {node.logic.upper()} ".join(parts)
        return joined if top_level else f"({joined})"

    if node.operator == "is_null":
        suffix = "is empty" if node.value is True or node.value is None else "is set"
        return f"{node.field} {suffix}"
    if node.operator == "between" and isinstance(node.value, list) and len(node.value) == 2:
        return f"{node.field} between {node.value[0]!r} and {node.value[1]!r}"
    label = _OPERATOR_LABELS.get(node.operator, node.operator)
    return f"{node.field} {label} {node.value!r}"
