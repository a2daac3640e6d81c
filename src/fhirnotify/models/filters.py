"""Notification filter tree.

A filter is one of:

- ``FieldFilter``: predicates on queryable fields, implicitly AND-ed together
- ``AndFilter``: all children must match
- ``NotFilter``: the single child must not match
- ``OrFilter``: defined so callers can express it, rejected by the compiler
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Union

from fhirnotify.models.enums import NotificationStatus, NotificationType, StringLookupMode


@dataclass(frozen=True)
class DateRange:
    """Inclusive timestamp bounds; either side may be open."""

    start: datetime | None = None
    end: datetime | None = None


@dataclass(frozen=True)
class StringLookup:
    value: str
    lookup: StringLookupMode = StringLookupMode.EXACT
    case_sensitive: bool | None = None


StringValue = Union[str, StringLookup]


@dataclass(frozen=True)
class FieldFilter:
    status: NotificationStatus | list[NotificationStatus] | None = None
    notification_type: NotificationType | list[NotificationType] | None = None
    adapter_used: str | list[str] | None = None
    user_id: str | list[str] | None = None
    body_template: StringValue | None = None
    subject_template: StringValue | None = None
    context_name: StringValue | None = None
    send_after_range: DateRange | None = None
    created_at_range: DateRange | None = None
    sent_at_range: DateRange | None = None

    def present_fields(self) -> list[str]:
        """Names of the predicates this filter actually sets."""
        return [f.name for f in fields(self) if getattr(self, f.name) is not None]


@dataclass(frozen=True)
class AndFilter:
    children: list[NotificationFilter] = field(default_factory=list)


@dataclass(frozen=True)
class OrFilter:
    children: list[NotificationFilter] = field(default_factory=list)


@dataclass(frozen=True)
class NotFilter:
    child: NotificationFilter


NotificationFilter = Union[FieldFilter, AndFilter, OrFilter, NotFilter]

FILTER_FIELDS: tuple[str, ...] = tuple(f.name for f in fields(FieldFilter))

_CAMEL_TO_FIELD = {
    "status": "status",
    "notificationType": "notification_type",
    "adapterUsed": "adapter_used",
    "userId": "user_id",
    "bodyTemplate": "body_template",
    "subjectTemplate": "subject_template",
    "contextName": "context_name",
    "sendAfterRange": "send_after_range",
    "createdAtRange": "created_at_range",
    "sentAtRange": "sent_at_range",
}


def filter_from_dict(data: dict[str, Any]) -> NotificationFilter:
    """Build a filter tree from its JSON shape.

    Accepts ``{"and": [...]}``, ``{"or": [...]}``, ``{"not": {...}}`` or a
    field mapping keyed by camelCase or snake_case names. Date ranges use
    ``{"from": ..., "to": ...}`` and string lookups use
    ``{"lookup": ..., "value": ..., "caseSensitive": ...}``.
    """
    if "and" in data:
        return AndFilter([filter_from_dict(child) for child in data["and"]])
    if "or" in data:
        return OrFilter([filter_from_dict(child) for child in data["or"]])
    if "not" in data:
        return NotFilter(filter_from_dict(data["not"]))

    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        name = _CAMEL_TO_FIELD.get(key, key)
        if name not in FILTER_FIELDS:
            raise ValueError(f"Unknown filter field: {key}")
        kwargs[name] = _coerce_field(name, value)
    return FieldFilter(**kwargs)


def _coerce_field(name: str, value: Any) -> Any:
    if name.endswith("_range"):
        return DateRange(
            start=_parse_datetime(value.get("from")),
            end=_parse_datetime(value.get("to")),
        )
    if name == "status":
        return [NotificationStatus(v) for v in value] if isinstance(value, list) else NotificationStatus(value)
    if name == "notification_type":
        return [NotificationType(v) for v in value] if isinstance(value, list) else NotificationType(value)
    if isinstance(value, dict) and "lookup" in value and "value" in value:
        return StringLookup(
            value=value["value"],
            lookup=StringLookupMode(value["lookup"]),
            case_sensitive=value.get("caseSensitive", value.get("case_sensitive")),
        )
    return value


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
